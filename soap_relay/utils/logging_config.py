"""
Logging Configuration for the SOAP mTLS Relay

This module configures structured JSON logging for the relay, with separate
loggers for security events (access gate denials), application events and
access logs. All logs are formatted for SIEM compatibility.

Envelopes, PFX passwords and key material are never passed to a logger.
"""

import logging
import logging.config
import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Dict, Any
from flask import request, g, jsonify

SERVICE_NAME = 'soap-mtls-relay'

_RESERVED_RECORD_KEYS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'getMessage', 'taskName',
}


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs in JSON format suitable for SIEM ingestion.
    """

    def format(self, record):
        """Format log record as JSON."""

        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'service': SERVICE_NAME,
            'version': '1.0',
        }

        if hasattr(record, 'process') and record.process:
            log_entry['process_id'] = record.process
        if hasattr(record, 'thread') and record.thread:
            log_entry['thread_id'] = record.thread

        # Add request context if available
        try:
            if request:
                log_entry['request_context'] = {
                    'method': request.method,
                    'path': request.path,
                    'remote_addr': request.remote_addr,
                    'user_agent': request.headers.get('User-Agent', ''),
                }
                if hasattr(g, 'request_id'):
                    log_entry['request_id'] = g.request_id
        except RuntimeError:
            # Outside of request context
            pass

        if record.exc_info and record.exc_info != (None, None, None):
            try:
                exc_type, exc_value, exc_traceback = record.exc_info
                log_entry['exception'] = {
                    'type': exc_type.__name__ if exc_type else None,
                    'message': str(exc_value) if exc_value else None,
                    'traceback': self.formatException(record.exc_info) if exc_traceback else None
                }
            except (AttributeError, TypeError, ValueError):
                log_entry['exception'] = {
                    'type': 'UnknownException',
                    'message': 'Exception information not available',
                    'traceback': None
                }

        # Fields passed through ``extra=``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class SecurityEventFilter(logging.Filter):
    """Filter that only allows security events through."""

    def filter(self, record):
        return record.name == 'security_events'


class ApplicationEventFilter(logging.Filter):
    """Filter that allows application events but excludes security events."""

    def filter(self, record):
        return record.name != 'security_events' and not record.name.startswith('gunicorn')


class AccessLogFilter(logging.Filter):
    """Filter for access logs."""

    def filter(self, record):
        return record.name.startswith('gunicorn.access')


def _log_level_for(app_config: Dict[str, Any] = None) -> str:
    if app_config:
        if app_config.get('ENVIRONMENT') == 'development':
            return 'DEBUG'
        if app_config.get('ENVIRONMENT') == 'production':
            return 'WARNING'
    return 'INFO'


def setup_logging(app_config: Dict[str, Any] = None) -> None:
    """
    Set up structured logging configuration.

    Args:
        app_config: Flask app configuration dict
    """

    # Skip custom logging setup during testing to preserve caplog functionality
    if app_config and app_config.get('TESTING'):
        return

    log_level = _log_level_for(app_config)

    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'json': {
                '()': JSONFormatter,
            },
            'simple': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            }
        },
        'filters': {
            'security_events': {
                '()': SecurityEventFilter,
            },
            'application_events': {
                '()': ApplicationEventFilter,
            },
            'access_logs': {
                '()': AccessLogFilter,
            }
        },
        'handlers': {
            'security_events': {
                'class': 'logging.StreamHandler',
                'stream': sys.stdout,
                'formatter': 'json',
                'filters': ['security_events'],
                'level': 'INFO',
            },
            'application_events': {
                'class': 'logging.StreamHandler',
                'stream': sys.stdout,
                'formatter': 'json',
                'filters': ['application_events'],
                'level': log_level,
            },
            'access_logs': {
                'class': 'logging.StreamHandler',
                'stream': sys.stdout,
                'formatter': 'json',
                'filters': ['access_logs'],
                'level': 'INFO',
            },
            'console': {
                'class': 'logging.StreamHandler',
                'stream': sys.stdout,
                'formatter': 'simple',
                'level': 'ERROR',
            }
        },
        'loggers': {
            'security_events': {
                'handlers': ['security_events'],
                'level': 'INFO',
                'propagate': False,
            },
            'flask.app': {
                'handlers': ['application_events'],
                'level': log_level,
                'propagate': False,
            },
            'soap_relay': {
                'handlers': ['application_events'],
                'level': log_level,
                'propagate': False,
            },
            'gunicorn.access': {
                'handlers': ['access_logs'],
                'level': 'INFO',
                'propagate': False,
            },
            'gunicorn.error': {
                'handlers': ['application_events'],
                'level': 'INFO',
                'propagate': False,
            },
            'werkzeug': {
                'handlers': ['application_events'],
                'level': 'WARNING',
                'propagate': False,
            }
        },
        'root': {
            'handlers': ['console'],
            'level': 'ERROR',
        }
    }

    # In development, also log to console with simple format
    if app_config and app_config.get('ENVIRONMENT') == 'development':
        config['handlers']['console']['level'] = 'DEBUG'
        config['loggers']['flask.app']['handlers'].append('console')
        config['loggers']['soap_relay']['handlers'].append('console')

    logging.config.dictConfig(config)


def add_request_id_middleware(app):
    """
    Add middleware to generate and track request IDs for correlation.
    """

    @app.before_request
    def before_request():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())

    @app.after_request
    def after_request(response):
        if hasattr(g, 'request_id'):
            response.headers['X-Request-ID'] = g.request_id
        return response


def configure_logging(app):
    """
    Configure logging for the Flask application.

    Args:
        app: Flask application instance
    """

    # Skip logging setup during testing to preserve caplog functionality
    if app.config.get('TESTING'):
        return

    setup_logging(app.config)
    add_request_id_middleware(app)

    settings = app.extensions['soap_relay']
    app.logger.info("SOAP relay startup", extra={
        'event_type': 'system_startup',
        'environment': app.config.get('ENVIRONMENT', 'unknown'),
        'tls_version': settings.tls_version,
        'verify_server_certificate': settings.verify_server_certificate,
        'access_gate_enabled': bool(settings.proxy_secret),
    })
    if not settings.verify_server_certificate:
        app.logger.warning("Remote server certificate verification is disabled (RELAY_VERIFY_SERVER_CERTIFICATE)")

    @app.errorhandler(500)
    def log_internal_error(error):
        app.logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify(error="An internal error occurred"), 500

    @app.errorhandler(404)
    def log_not_found(error):
        if request and request.path:
            app.logger.warning(f"404 Not Found: {request.method} {request.path}")
        return jsonify(error="Not Found"), 404

    app.logger.info("Logging configured successfully")
