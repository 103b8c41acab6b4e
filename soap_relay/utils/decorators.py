"""
Defines decorators for the relay service.
"""

import hmac
import logging
from functools import wraps
from flask import request, jsonify, current_app

security_logger = logging.getLogger('security_events')

PROXY_SECRET_HEADER = 'X-Proxy-Secret'


def proxy_secret_required(f):
    """
    Decorator to gate routes behind the deployment's shared secret.
    Expects the secret in the 'X-Proxy-Secret' header. When no secret is
    configured the gate is open.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected_secret = current_app.extensions['soap_relay'].proxy_secret
        if expected_secret:
            sent_secret = request.headers.get(PROXY_SECRET_HEADER, '')
            if not hmac.compare_digest(sent_secret.encode('utf-8'), expected_secret.encode('utf-8')):
                security_logger.warning("Relay access denied", extra={
                    'event_type': 'access_denied',
                    'path': request.path,
                    'remote_addr': request.remote_addr,
                    'header_present': bool(sent_secret),
                })
                return jsonify(error="Unauthorized"), 401

        return f(*args, **kwargs)

    return decorated_function
