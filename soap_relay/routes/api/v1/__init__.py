from flask import Blueprint, jsonify, request, current_app

from soap_relay.utils.decorators import proxy_secret_required
from soap_relay.utils.errors import BundleError, RelayError
from soap_relay.utils.mtls_relay import MutualTlsRelay
from soap_relay.utils.pkcs12_bundle import decompose_bundle
from soap_relay.utils.relay_request import parse_relay_request

bp = Blueprint('v1', __name__, url_prefix='/v1')


@bp.route('/soap', methods=['POST'])
@proxy_secret_required
def relay_soap_request():
    """
    Relays a SOAP envelope to a remote web service over mTLS, presenting the
    client certificate from the PKCS#12 bundle supplied in the request.
    Answers with the remote status code and a JSON body carrying the remote
    status, headers and body.
    """
    # 1. Validate the incoming request body
    try:
        relay_request = parse_relay_request(request.get_json(silent=True))
    except RelayError as e:
        current_app.logger.warning(f"Request failed: {e.message}")
        return jsonify(error=e.message), e.http_status

    settings = current_app.extensions['soap_relay']

    try:
        # 2. Decompose the PKCS#12 bundle into leaf, key and chain
        identity = decompose_bundle(relay_request.pfx_bytes, relay_request.pfx_password)
        if not identity.leaf_matched_key:
            current_app.logger.warning("No certificate in the bundle pairs with its key; using the first certificate")

        # 3. Relay the envelope over a fresh mTLS session
        result = MutualTlsRelay(settings).relay(
            relay_request.url,
            relay_request.soap_action,
            relay_request.envelope,
            identity,
        )

    except BundleError as e:
        current_app.logger.error(f"Failed to decompose PKCS#12 bundle: {e.message}")
        return jsonify(error=e.message), e.http_status
    except RelayError as e:
        current_app.logger.error(f"Relay failed ({type(e).__name__}): {e.message}")
        return jsonify(error=e.message), e.http_status
    except Exception as e:
        current_app.logger.critical(f"An unexpected internal error occurred: {e}", exc_info=True)
        return jsonify(error="An internal error occurred"), 500

    return jsonify(
        status=result.status_code,
        headers=result.headers,
        body=result.body_text(),
    ), result.status_code or 200
