#!/usr/bin/env python3
"""
Build script for Render deployment.
This script creates the ledger tables in the configured database.
"""
import logging
import os

from app import create_app
from app_models import db

logger = logging.getLogger('build')


def initialize_database(config_name=None):
    """Initialize database for production deployment."""
    app = create_app(config_name or os.environ.get('FLASK_CONFIG', 'production'))
    with app.app_context():
        logger.info("Creating database tables on %s", db.engine.url.render_as_string(hide_password=True))
        db.create_all()
        logger.info("Database initialization completed successfully")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(message)s')
    initialize_database()
