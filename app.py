# app.py
"""
Flask Application Factory for the Newsletter Delivery Pipeline

Hosts the provider webhook receiver, the tracking endpoints embedded in
outgoing mail, the operator API and campaign reporting. Dispatch itself runs
in Celery workers (tasks/email_sender.py) against the same database.
"""

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import redis
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from api.analytics import analytics_bp
from api.campaigns import campaigns_bp
from api.tracking import tracking_bp
from api.webhooks import webhooks_bp
from config.settings import get_config
from core.database import create_db_engine, create_session_factory, init_schema
from core.errors import CampaignNotFound, InvalidTransition, PipelineError, ResolutionError
from middleware.security import security_headers
from services.pipeline import PipelineServices

HANDLER_NAME = 'pipeline'


def setup_logging(app: Flask) -> None:
    """
    Configure process-wide logging

    A journal-friendly console handler always, plus a rotating file handler
    when LOG_FILE is set. Re-running the factory replaces earlier handlers.
    """
    journal_formatter = logging.Formatter(
        fmt='%(name)s[%(process)d]: %(levelname)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        if handler.get_name() == HANDLER_NAME:
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.set_name(HANDLER_NAME)
    console_handler.setFormatter(journal_formatter)
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    log_file = app.config.get('LOG_FILE')
    if log_file:
        Path(log_file).parent.mkdir(exist_ok=True, parents=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        file_handler.set_name(HANDLER_NAME)
        file_handler.setFormatter(detailed_formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

    # Suppress verbose third-party logs in production
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def configure_database(app: Flask, config):
    """Create the engine and session factory for request handlers"""
    engine = create_db_engine(
        config.DATABASE_URL,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        slow_query_threshold=config.SLOW_QUERY_THRESHOLD,
    )
    if app.config.get('TESTING') or app.debug:
        init_schema(engine)
        app.logger.info("Database tables created")
    return create_session_factory(engine)


def create_cache(config) -> Optional[redis.Redis]:
    if not config.REDIS_URL:
        return None
    return redis.Redis.from_url(
        config.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(tracking_bp)
    app.register_blueprint(campaigns_bp, url_prefix='/api/campaigns')
    app.register_blueprint(analytics_bp, url_prefix='/api/analytics')
    app.logger.info("Application blueprints registered")


def configure_error_handlers(app: Flask) -> None:
    """
    Map pipeline errors and HTTP errors to JSON bodies
    """
    @app.errorhandler(CampaignNotFound)
    def campaign_not_found(error):
        return jsonify({
            'error': 'Not Found',
            'message': str(error),
            'status_code': 404
        }), 404

    @app.errorhandler(InvalidTransition)
    def invalid_transition(error):
        app.logger.info(f"Rejected transition: {error}")
        return jsonify({
            'error': 'Conflict',
            'message': str(error),
            'current_status': error.current,
            'status_code': 409
        }), 409

    @app.errorhandler(ResolutionError)
    def resolution_failed(error):
        return jsonify({
            'error': 'Unprocessable Entity',
            'message': str(error),
            'status_code': 422
        }), 422

    @app.errorhandler(PipelineError)
    def pipeline_error(error):
        return jsonify({
            'error': 'Bad Request',
            'message': str(error),
            'status_code': 400
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'Not Found',
            'message': 'The requested resource was not found',
            'status_code': 404
        }), 404

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return jsonify({
                'error': e.name,
                'message': e.description,
                'status_code': e.code
            }), e.code

        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred',
            'status_code': 500
        }), 500


def configure_health_checks(app: Flask) -> None:
    """
    Configure health check endpoints for monitoring and load balancing
    """
    @app.route('/health')
    def health_check():
        """Basic health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0')
        })

    @app.route('/health/detailed')
    def detailed_health_check():
        """Detailed health check with component status"""
        services = app.extensions['pipeline']
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'components': {}
        }

        session = services.session_factory()
        try:
            session.execute(text('SELECT 1'))
            health_status['components']['database'] = 'healthy'
        except Exception as e:
            health_status['components']['database'] = f'unhealthy: {str(e)}'
            health_status['status'] = 'unhealthy'
        finally:
            session.close()

        cache = services.statistics.cache
        if cache is not None:
            try:
                cache.ping()
                health_status['components']['redis'] = 'healthy'
            except redis.RedisError as e:
                health_status['components']['redis'] = f'unhealthy: {str(e)}'
                health_status['status'] = 'degraded'

        status_code = 200 if health_status['status'] == 'healthy' else 503
        return jsonify(health_status), status_code


def configure_request_middleware(app: Flask) -> None:
    """
    Configure request/response middleware for security and monitoring
    """
    @app.before_request
    def before_request():
        g.start_time = datetime.utcnow()

    @app.after_request
    def after_request(response):
        """Execute after each request"""
        response = security_headers(response)

        if hasattr(g, 'start_time'):
            duration = (datetime.utcnow() - g.start_time).total_seconds() * 1000
            if duration > app.config.get('SLOW_REQUEST_THRESHOLD', 1000):
                app.logger.warning(f"Slow request ({duration:.0f}ms): {request.method} {request.path}")

        return response


def create_app(config: Union[str, Any] = None, session_factory=None, cache=None) -> Flask:
    """
    Flask application factory

    Args:
        config: Environment name ('development', 'testing', 'production')
            or a configuration class
        session_factory: Pre-built SQLAlchemy session factory (tests share one)
        cache: Redis-like client for the statistics cache

    Returns:
        Configured Flask application instance
    """
    config_object = get_config(config) if config is None or isinstance(config, str) else config

    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config['START_TIME'] = datetime.utcnow()

    if config_object.__name__ == 'ProductionConfig':
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    setup_logging(app)
    app.logger.info(f"Starting newsletter pipeline with {config_object.__name__}")
    if not (app.debug or app.testing):
        for setting in ('WEBHOOK_SECRET', 'OPERATOR_API_KEY'):
            if not app.config.get(setting):
                app.logger.warning(f"{setting} is not set, its endpoints will answer 503")

    if session_factory is None:
        session_factory = configure_database(app, config_object)
    if cache is None:
        cache = create_cache(config_object)

    app.extensions['pipeline'] = PipelineServices.build(session_factory, config_object, cache=cache)

    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app)
    configure_request_middleware(app)

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    create_app('development').run(host='0.0.0.0', port=5000, debug=True)
