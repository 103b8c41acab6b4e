import os
from flask import Flask, send_from_directory, Blueprint, jsonify
from flask_swagger_ui import get_swaggerui_blueprint
from werkzeug.exceptions import RequestEntityTooLarge

from soap_relay.utils.mtls_relay import RelaySettings

SERVICE_VERSION = '1.0.0'


def create_app(config_overrides=None):
    """
    Creates the Flask application for the SOAP mTLS Relay.

    Relay settings are read once here and shared, read-only, by every request.
    """
    app = Flask(__name__)
    app.config.from_object('soap_relay.config.Config')
    if config_overrides:
        app.config.update(config_overrides)

    app.extensions['soap_relay'] = RelaySettings.from_config(app.config)

    bp = Blueprint('health', __name__)

    @bp.route('/')
    def liveness():
        return 'SOAP Relay OK', 200, {'Content-Type': 'text/plain; charset=utf-8'}

    @bp.route('/health')
    def health_check():
        return jsonify({
            'ok': True,
            'status': 'healthy',
            'service': 'soap-relay',
            'version': SERVICE_VERSION
        }), 200

    app.register_blueprint(bp)

    from .routes import api_bp
    from .routes.api.v1 import relay_soap_request
    app.register_blueprint(api_bp)
    # Unversioned path kept for existing callers
    app.add_url_rule('/soap', endpoint='soap', view_func=relay_soap_request, methods=['POST'])

    @app.errorhandler(RequestEntityTooLarge)
    def request_too_large(error):
        app.logger.warning(f"Request body exceeds {app.config.get('MAX_CONTENT_LENGTH')} bytes")
        return jsonify(error="Request body too large"), 413

    SWAGGER_URL = '/api/docs'
    API_URL = '/swagger.yaml'

    swaggerui_blueprint = get_swaggerui_blueprint(
        SWAGGER_URL,
        API_URL,
        config={
            'app_name': "SOAP mTLS Relay API"
        }
    )

    app.register_blueprint(swaggerui_blueprint, url_prefix=SWAGGER_URL)

    @app.route(API_URL)
    def swagger_spec():
        return send_from_directory(os.path.dirname(os.path.abspath(__file__)), 'swagger.yaml')

    # Configure structured logging
    from soap_relay.utils.logging_config import configure_logging
    configure_logging(app)

    return app
