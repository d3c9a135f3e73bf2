"""
Adhan Relay - masjid prayer-time audio broadcasts
Main Flask application entry point
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_login import LoginManager
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import config
from models import db
from utils.errors import ApiError
from utils.job_queue import job_queue
from utils.jobs import register_job_handlers
from utils.permissions import load_user_from_token, read_access_token
from utils.rate_limits import limiter


def create_app(config_name=None, log_file=None):
    """Application factory pattern"""

    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    # Initialize extensions
    db.init_app(app)

    # CORS configuration
    CORS(app, resources={
        r"/api/*": {
            "origins": app.config['CORS_ORIGINS'],
            "methods": ["GET", "POST", "PUT", "PATCH", "DELETE"],
            "allow_headers": ["Content-Type", "Authorization"],
            "supports_credentials": True
        }
    })

    # Rate limiting; per-route limits are declared on the blueprints
    app.config.setdefault('RATELIMIT_STORAGE_URI', app.config['RATELIMIT_STORAGE_URL'])
    limiter.init_app(app)

    # Login manager: stateless, one access token per request
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.request_loader
    def load_user_from_request(request):
        return load_user_from_token(read_access_token())

    # Delayed job queue shared with the worker process
    job_queue.init_app(app)
    register_job_handlers(job_queue)

    # Setup logging
    setup_logging(app, log_file)

    # Register blueprints
    from routes.api_routes import api_bp
    from routes.broadcast_routes import broadcast_bp
    from routes.schedule_routes import schedule_bp

    app.register_blueprint(api_bp, url_prefix='/api/v1')
    app.register_blueprint(broadcast_bp, url_prefix='/api/v1/broadcasts')
    app.register_blueprint(schedule_bp, url_prefix='/api/v1/schedules')

    # Error handlers
    @app.errorhandler(ApiError)
    def api_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error(f"{error.code}: {error.message} {error.details or ''}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({
            'statusCode': error.code,
            'message': error.description,
            'code': error.name.lower().replace(' ', '_'),
            'details': None
        }), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception(f"Unhandled error: {error}")
        return jsonify({
            'statusCode': 500,
            'message': 'Internal server error',
            'code': 'internal_error',
            'details': None
        }), 500

    return app


def setup_logging(app, log_file=None):
    """Configure application logging"""

    if not app.debug and not app.testing:
        # Create logs directory if it doesn't exist
        if not os.path.exists(app.config['LOG_FOLDER']):
            os.mkdir(app.config['LOG_FOLDER'])

        # Application log handler
        file_handler = RotatingFileHandler(
            log_file or app.config['APP_LOG_FILE'],
            maxBytes=10240000,  # 10MB
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)
        logging.getLogger('utils').addHandler(file_handler)
        logging.getLogger('utils').setLevel(logging.INFO)

        app.logger.setLevel(logging.INFO)
        app.logger.info('Adhan Relay startup')


if __name__ == '__main__':
    app = create_app()

    # Create database tables if they don't exist
    with app.app_context():
        db.create_all()

    app.run(
        host=app.config['FLASK_HOST'],
        port=app.config['FLASK_PORT'],
        debug=app.config['DEBUG']
    )
