#!/usr/bin/env python3
"""
Database management script for deployment.
Run this during the build/deployment pipeline to create the local store tables.
"""
import os
import sys

# Add current directory to path so we can import session_client
sys.path.append(os.getcwd())

from session_client.app import create_app, shutdown_services
from session_client.models import db


def deploy():
    """Run deployment tasks."""
    print("Creating local store tables...")
    app = create_app()
    try:
        with app.app_context():
            db.create_all()
        print("✓ Local store tables ready.")
    except Exception as e:
        print(f"Error creating tables: {e}")
        sys.exit(1)
    finally:
        shutdown_services(app)


if __name__ == '__main__':
    deploy()
