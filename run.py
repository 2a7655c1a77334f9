#!/usr/bin/env python3
"""
Entry point for the session client service.

Usage:
    python run.py

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    LOG_LEVEL: Root log level (default: INFO)
    REMOTE_URL, REMOTE_API_KEY: Remote data service endpoint and anon key
    DEVICE_VENDOR_ID: Required. Stable per-install id used to fingerprint this device
"""
import logging
import os

from session_client.app import create_app, shutdown_services


def run_session_client():
    """Run the session client service."""
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print(f"Starting session client on port {port}...")
    try:
        app.run(host='0.0.0.0', port=port, debug=debug, use_reloader=False)
    finally:
        shutdown_services(app)


if __name__ == '__main__':
    run_session_client()
