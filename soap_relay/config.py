import os
from soap_relay.utils.environment import loadConfigValueFromFileOrEnvironment, loadBoolConfigValue

class Config:
    """

    Configuration for the SOAP mTLS Relay
    """
    ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')

    # Shared secret expected in the X-Proxy-Secret header. Empty leaves the relay open.
    PROXY_SECRET = loadConfigValueFromFileOrEnvironment('PROXY_SECRET')

    # Largest accepted request body (envelope plus base64 PFX)
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', 2 * 1024 * 1024))

    # Deadline for one relay call, connection attempt through last response byte
    RELAY_TIMEOUT_SECONDS = float(os.environ.get('RELAY_TIMEOUT_SECONDS', '30'))

    # Outbound TLS is pinned to this single version (minimum == maximum)
    RELAY_TLS_VERSION = os.environ.get('RELAY_TLS_VERSION', 'TLSv1_2')

    # Off by default: the remote CA chain is not trusted, the mutual handshake is.
    # Anything other than an explicit false value turns verification on.
    RELAY_VERIFY_SERVER_CERTIFICATE = loadBoolConfigValue('RELAY_VERIFY_SERVER_CERTIFICATE', 'false')

    RELAY_USER_AGENT = os.environ.get('RELAY_USER_AGENT', 'SoapRelay/1.0')
