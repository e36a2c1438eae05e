import logging
import os
from datetime import date
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from app_models import db
from config import config_by_name
from errors import LedgerError
from fee_api import fee_api, get_ledger
from health import health_bp
from security import init_security

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def configure_logging(app):
    """Send ledger and app logs to stderr, plus a rotating file when LOG_FILE is set."""
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    handlers = [logging.StreamHandler()]
    log_file = app.config.get('LOG_FILE')
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=1024 * 1024, backupCount=5))

    for name in ('ledger', 'ledger_store'):
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers.clear()
        for handler in handlers:
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.propagate = False

    app.logger.setLevel(level)
    for handler in handlers[1:]:
        app.logger.addHandler(handler)


def register_error_handlers(app):
    @app.errorhandler(LedgerError)
    def handle_ledger_error(e):
        app.logger.warning("%s %s rejected: %s (%s)", request.method, request.path, e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        code = (e.name or 'error').upper().replace(' ', '_')
        return jsonify({'error': e.description, 'code': code}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        db.session.rollback()
        app.logger.exception("Unhandled error: %s", e)
        return jsonify({'error': 'Internal server error', 'code': 'INTERNAL_ERROR'}), 500


def register_commands(app):
    @app.cli.command('init-db')
    def init_db():
        """Create the ledger tables."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command('mark-overdue')
    @click.option('--today', type=click.DateTime(formats=['%Y-%m-%d']), default=None,
                  help='Treat this date (YYYY-MM-DD) as today.')
    def mark_overdue(today):
        """Flag invoices and installments whose due date has passed."""
        day = today.date() if today else date.today()
        invoices, installments = get_ledger().mark_overdue(today=day)
        click.echo(f"Marked {invoices} invoice(s) and {installments} installment(s) overdue.")


def create_app(config_name=None):
    config_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_class = config_by_name[config_name]

    app = Flask(__name__, instance_path=os.path.join(os.path.dirname(os.path.abspath(__file__)), 'instance'))
    app.config.from_object(config_class)
    config_class.init_app(app)

    configure_logging(app)
    db.init_app(app)
    init_security(app)

    app.register_blueprint(health_bp)
    app.register_blueprint(fee_api)
    register_error_handlers(app)
    register_commands(app)

    app.logger.info("Fee ledger started with %s config", config_name)
    return app


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(host='127.0.0.1', port=int(os.environ.get('PORT', 5001)), debug=app.config['DEBUG'])
