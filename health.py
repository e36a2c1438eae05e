from flask import Blueprint, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app_models import db

health_bp = Blueprint('health', __name__)

VERSION = '1.0.0'


@health_bp.route('/health')
def health_check():
    """Health check endpoint for Render"""
    try:
        db.session.execute(text('SELECT 1'))
        database = 'ok'
    except SQLAlchemyError:
        db.session.rollback()
        database = 'unavailable'

    status_code = 200 if database == 'ok' else 503
    return jsonify({
        'status': 'ok' if status_code == 200 else 'degraded',
        'service': 'fee-ledger',
        'database': database,
        'version': VERSION,
    }), status_code
