#!/usr/bin/env python3
"""
Smoke check for a running Meet in the Middle API.

Usage:
  python3 test_setup.py            # against http://localhost:5001
  API_BASE_URL=https://host python3 test_setup.py
"""

import os
import sys
import time

import requests

BASE_URL = os.getenv('API_BASE_URL', 'http://localhost:5001').rstrip('/')

NYC_ORIGINS = ["Times Square, New York, NY", "Brooklyn Bridge, New York, NY"]


def call(method, path, payload=None, timeout=10):
    return requests.request(method, f'{BASE_URL}{path}', json=payload, timeout=timeout)


def check_health():
    body = call('GET', '/', timeout=5).json()
    if body.get('status') != 'healthy':
        return False, f"unexpected status {body.get('status')!r}"
    if not body.get('engine_configured'):
        return True, "healthy, but the engine is not configured (missing GOOGLE_MAPS_API_KEY?)"
    return True, "healthy"


def check_geocode():
    response = call('POST', '/api/geocode', {'address': NYC_ORIGINS[0]})
    body = response.json()
    if response.status_code != 200 or not body.get('success'):
        return False, f"HTTP {response.status_code}: {body.get('error', 'unknown error')}"
    return True, f"{body['data']['lat']:.5f}, {body['data']['lng']:.5f}"


def check_meeting_point():
    response = call('POST', '/api/meeting-point',
                    {'origins': NYC_ORIGINS, 'mode': 'driving', 'search_radius': 1500}, timeout=60)
    body = response.json()
    if response.status_code != 200 or not body.get('success'):
        return False, f"HTTP {response.status_code}: {body.get('error', 'unknown error')}"
    data = body['data']
    for warning in data['warnings']:
        print(f"   ⚠️  {warning['message']}")
    midpoint = data['midpoint']
    return True, (f"midpoint {midpoint['lat']:.5f}, {midpoint['lng']:.5f}; {len(data['ranked_pois'])} places; "
                  f"compute {response.headers.get('X-Compute-Time-ms')} ms")


def check_rate_limit_headers():
    response = call('POST', '/api/geocode', {'address': "Union Square, New York, NY"})
    limit = response.headers.get('X-RateLimit-Limit')
    if limit is None:
        return False, "X-RateLimit-* headers missing"
    return True, f"limit {limit}, remaining {response.headers.get('X-RateLimit-Remaining')}"


CHECKS = [
    ("API health", check_health),
    ("Geocoding", check_geocode),
    ("Meeting point", check_meeting_point),
    ("Rate limit headers", check_rate_limit_headers),
]


def main():
    print(f"🧪 Checking Meet in the Middle API at {BASE_URL}")
    print("=" * 50)

    passed = 0
    for name, check in CHECKS:
        try:
            ok, detail = check()
        except requests.exceptions.ConnectionError:
            ok, detail = False, "cannot connect"
        except (requests.exceptions.RequestException, ValueError, KeyError) as e:
            ok, detail = False, f"error: {e}"
        print(f"{'✅' if ok else '❌'} {name}: {detail}")
        passed += ok
        time.sleep(1)

    print("=" * 50)
    print(f"📊 {passed}/{len(CHECKS)} checks passed")
    return passed == len(CHECKS)


if __name__ == '__main__':
    sys.exit(0 if main() else 1)
