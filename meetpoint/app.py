from flask import Flask, request, jsonify, g
from flask_cors import CORS
from dotenv import load_dotenv
from functools import wraps
import os
import logging
import json
from time import perf_counter

from meetpoint.config import Settings
from meetpoint.engine import MeetingPointOptions, MeetingPointService
from meetpoint.errors import ErrorCode, HTTP_STATUS, InputError, QuotaExceeded
from meetpoint.rate_limit import ANONYMOUS, RateLimiter

# Load environment variables
load_dotenv()


def configure_logging():
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.getenv('LOG_FILE', 'app.log')),
            logging.StreamHandler()
        ]
    )


configure_logging()
logger = logging.getLogger(__name__)


def status_for(result):
    """HTTP status for a service envelope."""
    if result.get('success'):
        return 200
    code = result.get('error_code')
    try:
        return HTTP_STATUS[ErrorCode(code)]
    except ValueError:
        return 500


def client_identifier():
    """Account id from the auth collaborator, else the first forwarded hop or the peer address."""
    account = request.headers.get('X-Account-Id', '').strip()
    if account:
        return f"account:{account}"
    forwarded = request.headers.get('X-Forwarded-For', '')
    ip = forwarded.split(',')[0].strip() if forwarded else None
    return f"ip:{ip or request.remote_addr or 'unknown'}"


def anonymous_tier(req):
    return ANONYMOUS


def header_tier(req):
    """Tier label set by a trusted auth proxy in X-Caller-Tier."""
    return req.headers.get('X-Caller-Tier') or ANONYMOUS


def create_app(service=None, settings=None, limiter=None, tier_resolver=None):
    """
    Build the Flask app.

    ``service`` defaults to a MeetingPointService built from the environment;
    when the Google Maps key is missing the API still starts but engine routes
    answer 500, like before.

    ``tier_resolver(request)`` returns the caller's rate-limit tier. By default
    every caller is anonymous; X-Caller-Tier is honored only when
    TRUST_CALLER_TIER_HEADER is set.
    """
    settings = settings or Settings.from_env()
    limiter = limiter or RateLimiter.from_settings(settings)
    if tier_resolver is None:
        tier_resolver = header_tier if settings.trust_caller_tier_header else anonymous_tier

    if service is None:
        logger.info(f"API Key found: {'Yes' if settings.has_google_key else 'No'}")
        if not settings.has_google_key:
            logger.warning("GOOGLE_MAPS_API_KEY not found or not configured in environment variables")
        else:
            try:
                logger.info("Initializing meeting point service...")
                service = MeetingPointService.from_settings(settings)
                logger.info("Meeting point service initialized successfully")
            except ValueError as e:
                logger.error(f"Error initializing meeting point service: {e}")
                service = None

    app = Flask(__name__)
    CORS(app, expose_headers=['X-Process-Time-ms', 'X-Compute-Time-ms', 'X-RateLimit-Limit',
                              'X-RateLimit-Remaining', 'X-RateLimit-Reset', 'Retry-After'])
    app.extensions['meetpoint'] = {'service': service, 'limiter': limiter, 'settings': settings}

    # Per-request timing: record start time and log duration on completion
    @app.before_request
    def _start_timer():
        g._start_time = perf_counter()

    @app.after_request
    def _log_request_duration(response):
        admission = getattr(g, '_admission', None)
        if admission is not None:
            response.headers.update(admission.headers())

        start = getattr(g, '_start_time', None)
        if start is not None:
            duration_ms = (perf_counter() - start) * 1000.0
            # Include response time header for easy debugging/measurement
            response.headers['X-Process-Time-ms'] = f"{duration_ms:.1f}"
            logger.info(
                "request completed: method=%s path=%s status=%s duration_ms=%.1f remote_addr=%s",
                request.method,
                request.full_path if request.query_string else request.path,
                response.status_code,
                duration_ms,
                request.remote_addr,
            )
        return response

    @app.teardown_request
    def _teardown_request_log(error=None):
        # If an unhandled exception occurred, ensure we still log duration
        if error is not None:
            start = getattr(g, '_start_time', None)
            duration_ms = (perf_counter() - start) * 1000.0 if start is not None else None
            logger.error(
                "request error: method=%s path=%s duration_ms=%s error=%s",
                request.method,
                request.path,
                f"{duration_ms:.1f}" if duration_ms is not None else 'unknown',
                repr(error),
            )

    def rate_limited(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            tier = tier_resolver(request)
            admission = limiter.admit(client_identifier(), tier)
            g._admission = admission
            if not admission.allowed:
                logger.warning(f"Rate limit exceeded for {client_identifier()} (tier={admission.tier})")
                error = QuotaExceeded(
                    f"Rate limit exceeded. Try again in {admission.retry_after} seconds.",
                    reset_at=admission.reset_at,
                    retry_after=admission.retry_after,
                    tier=admission.tier,
                )
                return jsonify({
                    'success': False,
                    'error': error.message,
                    'error_code': error.code.value,
                    'details': error.details,
                }), error.http_status
            return view(*args, **kwargs)
        return wrapper

    def engine_unavailable():
        logger.error("Google Maps API key not configured - cannot process request")
        return jsonify({'error': 'Google Maps API key not configured'}), 500

    def input_error(e):
        return jsonify({
            'success': False,
            'error': e.message,
            'error_code': e.code.value,
            'details': e.details,
        }), e.http_status

    @app.route('/', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'message': 'Meet in the Middle API is running!',
            'endpoints': {
                'meeting_point': '/api/meeting-point',
                'find_middle_point': '/api/find-middle-point',
                'geocode': '/api/geocode',
                'travel_matrix': '/api/travel-matrix',
                'searches': '/api/searches',
                'config': '/api/config',
                'health': '/'
            },
            'engine_configured': service is not None,
            'cache': service.stats()['cache'] if service else None,
            'status': 'healthy'
        })

    @app.route('/api/geocode', methods=['POST'])
    @rate_limited
    def geocode_address():
        """
        Geocode a single address
        Expected JSON: {"address": "123 Main St, City, State"}
        """
        logger.info("=== GEOCODE REQUEST ===")
        if not service:
            return engine_unavailable()

        try:
            data = request.get_json(silent=True)
            logger.info(f"Geocode request data: {json.dumps(data) if data else 'None'}")

            if not data or 'address' not in data:
                logger.error("Address not provided in request")
                return jsonify({'error': 'Address is required'}), 400

            result = service.geocode(data['address'])
            if result['success']:
                location = result['data']
                logger.info(f"Geocoding successful - lat: {location.get('lat')}, lng: {location.get('lng')}")
            return jsonify(result), status_for(result)

        except Exception as e:
            logger.error(f"Exception in geocode_address: {str(e)}", exc_info=True)
            return jsonify({'error': f'Server error: {str(e)}'}), 500

    def run_meeting_point(origins, data):
        try:
            options = MeetingPointOptions.from_dict(data)
        except InputError as e:
            logger.error(f"Invalid options: {e.message}")
            return input_error(e)

        _algo_start = perf_counter()
        result = service.find_meeting_point(origins, options)
        _compute_ms = (perf_counter() - _algo_start) * 1000.0
        logger.info("Time to find meeting point = %.1f ms (origins=%d)", _compute_ms, len(origins))

        if result['success']:
            midpoint = result['data']['midpoint']
            logger.info(f"Meeting point coordinates: lat={midpoint.get('lat')}, lng={midpoint.get('lng')}")
            for warning in result['data']['warnings']:
                logger.warning(f"Degraded result: {warning['message']}")
        else:
            logger.error(f"Meeting point search failed: {result.get('error', 'Unknown error')}")

        response = jsonify(result)
        response.headers['X-Compute-Time-ms'] = f"{_compute_ms:.1f}"
        return response, status_for(result)

    @app.route('/api/meeting-point', methods=['POST'])
    @rate_limited
    def meeting_point():
        """
        Fair meeting point for two or more origins
        Expected JSON: {
            "origins": ["123 Main St, City", {"lat": 40.71, "lng": -74.0}],
            "mode": "driving",        // optional
            "search_radius": 1500,    // optional, 100-10000 meters
            "categories": ["cafe"],   // optional
            "max_results": 10,        // optional
            "weights": {"fairness": 0.7, "efficiency": 0.3, "quality": 0.0},  // optional
            "unreachable_policy": "exclude"  // optional, exclude | penalize
        }
        """
        logger.info("=== MEETING POINT REQUEST ===")
        if not service:
            return engine_unavailable()

        try:
            data = request.get_json(silent=True)
            if not data:
                logger.error("No JSON data provided in request")
                return jsonify({'error': 'JSON data is required'}), 400
            origins = data.get('origins')
            if not isinstance(origins, list):
                return jsonify({'error': 'origins must be a list of addresses or coordinates'}), 400
            return run_meeting_point(origins, data)

        except Exception as e:
            logger.error(f"Exception in meeting_point: {str(e)}", exc_info=True)
            return jsonify({'error': f'Server error: {str(e)}'}), 500

    @app.route('/api/find-middle-point', methods=['POST'])
    @rate_limited
    def find_middle_point():
        """
        Find the optimal middle point between two addresses
        Expected JSON: {
            "address1": "123 Main St, City, State",
            "address2": "456 Oak Ave, City, State",
            "search_radius": 2000  // optional
        }
        """
        logger.info("=== FIND MIDDLE POINT REQUEST ===")
        if not service:
            return engine_unavailable()

        try:
            data = request.get_json(silent=True)
            if not data:
                logger.error("No JSON data provided in request")
                return jsonify({'error': 'JSON data is required'}), 400

            address1 = data.get('address1')
            address2 = data.get('address2')
            logger.info(f"  - Address 1: {address1}")
            logger.info(f"  - Address 2: {address2}")
            if not address1 or not address2:
                logger.error("Missing required addresses")
                return jsonify({'error': 'Both address1 and address2 are required'}), 400

            return run_meeting_point([address1, address2], data)

        except Exception as e:
            logger.error(f"Exception in find_middle_point: {str(e)}", exc_info=True)
            return jsonify({'error': f'Server error: {str(e)}'}), 500

    @app.route('/api/travel-matrix', methods=['POST'])
    @rate_limited
    def travel_matrix():
        """
        Travel times from every origin to every destination
        Expected JSON: {
            "origins": [{"lat": 40.7128, "lng": -74.0060}, "Brooklyn, NY"],
            "destinations": [{"lat": 40.7589, "lng": -73.9851}],
            "mode": "transit"  // optional
        }
        """
        if not service:
            return engine_unavailable()

        try:
            data = request.get_json(silent=True)
            if not data:
                return jsonify({'error': 'JSON data is required'}), 400

            origins = data.get('origins')
            destinations = data.get('destinations')
            if not origins or not destinations:
                return jsonify({'error': 'Both origins and destinations are required'}), 400

            result = service.travel_matrix(origins, destinations, data.get('mode'))
            return jsonify(result), status_for(result)

        except Exception as e:
            logger.error(f"Exception in travel_matrix: {str(e)}", exc_info=True)
            return jsonify({'error': f'Server error: {str(e)}'}), 500

    @app.route('/api/searches', methods=['GET'])
    def recent_searches():
        """Most recent successful searches, newest first"""
        if not service:
            return engine_unavailable()
        limit = request.args.get('limit', default=10, type=int)
        if limit is None or limit < 1:
            return jsonify({'error': 'limit must be a positive integer'}), 400
        return jsonify({
            'success': True,
            'data': service.recent_searches(min(limit, 100))
        })

    @app.route('/api/config', methods=['GET'])
    def get_config():
        """
        Get frontend configuration including Google Maps API key
        """
        return jsonify({
            'success': True,
            'data': {
                'googleMapsApiKey': settings.google_maps_api_key if settings.has_google_key else None,
                'apiBaseUrl': request.host_url.rstrip('/'),
                'matrixProvider': settings.matrix_provider,
                'defaultMode': settings.default_mode,
                'defaultSearchRadius': settings.search_radius,
                'maxOrigins': settings.max_origins,
                'categories': list(settings.categories),
            }
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Endpoint not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({'error': 'Internal server error'}), 500

    return app


app = create_app()


if __name__ == '__main__':
    settings = app.extensions['meetpoint']['settings']
    if not settings.has_google_key:
        print("\n" + "="*50)
        print("SETUP REQUIRED:")
        print("="*50)
        print("1. Get a Google Maps API key from: https://console.cloud.google.com/")
        print("2. Enable the following APIs:")
        print("   - Geocoding API")
        print("   - Distance Matrix API")
        print("   - Places API")
        print("3. Edit the .env file and replace 'your_api_key_here' with your actual API key")
        print("4. Restart the app")
        print("="*50)
        print("API will start but most features will be disabled without a valid key\n")
    else:
        print("Starting Meet in the Middle API...")

    app.run(host=os.getenv('HOST', '0.0.0.0'), port=int(os.getenv('PORT', 5001)), debug=True,
            use_reloader=False)
