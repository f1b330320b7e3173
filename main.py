#!/usr/bin/env python3
"""
Main entry point for the Meet in the Middle API (development server)
"""

import os

from meetpoint.app import app

if __name__ == '__main__':
    # One engine background loop per process, so no reloader
    app.run(debug=True, host=os.getenv('HOST', '0.0.0.0'), port=int(os.getenv('PORT', 5001)), use_reloader=False)
