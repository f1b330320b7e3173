#!/usr/bin/env python3
"""
Production runner for the Meet in the Middle API.

Serves ``meetpoint.app`` with waitress. When SSL_CERTFILE and SSL_KEYFILE are
set, HTTPS is served directly through Werkzeug instead.

Environment:
  HOST, PORT (default 0.0.0.0:8000), WSGI_THREADS (default 8)
  TRUST_PROXY_HEADERS (default on), PROXY_FIX_HOPS (default 1)
  SSL_CERTFILE, SSL_KEYFILE, SSL_CA_FILE
"""

import logging
import os
import ssl
from pathlib import Path

from dotenv import load_dotenv
from waitress import serve
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.serving import run_simple

load_dotenv(dotenv_path=Path(__file__).resolve().parent / '.env')

from meetpoint.app import app  # noqa: E402

logger = logging.getLogger('run_prod')

FALSEY = ('0', 'false', 'no', 'off')


def _env_int(name, default):
    try:
        return int(os.getenv(name, default))
    except ValueError:
        logger.warning(f"Ignoring invalid {name}, using {default}")
        return default


def wsgi_application(flask_app):
    """Wrap in ProxyFix unless TRUST_PROXY_HEADERS is off."""
    if os.getenv('TRUST_PROXY_HEADERS', '1').lower() in FALSEY:
        return flask_app
    hops = _env_int('PROXY_FIX_HOPS', 1)
    return ProxyFix(flask_app, x_for=hops, x_proto=hops, x_host=hops, x_port=hops, x_prefix=hops)


def tls_context():
    cert, key = os.getenv('SSL_CERTFILE'), os.getenv('SSL_KEYFILE')
    if not (cert and key):
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    if os.getenv('SSL_CA_FILE'):
        context.load_verify_locations(os.getenv('SSL_CA_FILE'))
    context.load_cert_chain(certfile=cert, keyfile=key)
    return context


def main():
    host = os.getenv('HOST', '0.0.0.0')
    port = _env_int('PORT', 8000)
    settings = app.extensions['meetpoint']['settings']
    if not settings.has_google_key:
        logger.warning("GOOGLE_MAPS_API_KEY is not configured; meeting point routes will answer 500")

    application = wsgi_application(app)
    context = tls_context()
    scheme = 'https' if context else 'http'
    logger.info(f"Starting Meet in the Middle API on {scheme}://{host}:{port} "
                f"(matrix provider: {settings.matrix_provider})")

    if context is not None:
        run_simple(hostname=host, port=port, application=application, ssl_context=context, threaded=True)
    else:
        serve(application, host=host, port=port, threads=_env_int('WSGI_THREADS', 8))


if __name__ == '__main__':
    main()
