"""
Configuration for the fee ledger service.

Values come from the environment; a ``.env`` file in the working directory is
loaded first for local development.
"""
import os

from dotenv import load_dotenv

load_dotenv()


def database_url_from_env():
    """DATABASE_URL with Render/Heroku's ``postgres://`` scheme corrected for SQLAlchemy."""
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key')
    DEBUG = False
    TESTING = False

    # Database
    SQLALCHEMY_DATABASE_URI = None  # Resolved in init_app
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')

    # Ledger
    LEDGER_INSTALLMENT_UNIT = os.environ.get('LEDGER_INSTALLMENT_UNIT', '1')  # Whole currency units
    LEDGER_PAGE_SIZE = 10
    LEDGER_MAX_PAGE_SIZE = 100

    @classmethod
    def init_app(cls, app):
        database_url = database_url_from_env()
        if database_url:
            app.config['SQLALCHEMY_DATABASE_URI'] = database_url
        elif not app.config.get('SQLALCHEMY_DATABASE_URI'):
            # SQLite for local development, placing the DB in the 'instance' folder
            os.makedirs(app.instance_path, exist_ok=True)
            app.config['SQLALCHEMY_DATABASE_URI'] = f"sqlite:///{os.path.join(app.instance_path, 'feeledger.db')}"


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_FILE = None

    @classmethod
    def init_app(cls, app):
        pass


class ProductionConfig(Config):
    PREFERRED_URL_SCHEME = 'https'

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_timeout': 30,
        'pool_recycle': 1800,  # Recycle connections after 30 minutes
        'max_overflow': 2,
        'pool_pre_ping': True,
    }

    @classmethod
    def init_app(cls, app):
        super().init_app(app)
        app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', os.urandom(24))

        # Render terminates TLS at its proxy
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


config_by_name = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
