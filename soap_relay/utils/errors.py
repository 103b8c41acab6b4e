"""
Failure classes raised while decomposing a client bundle or relaying a request.

Every class carries the HTTP status the front door answers with, so the route
can turn any of them into a JSON error without a lookup table.
"""


class RelayError(Exception):
    """Base class for every classified relay failure."""

    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(RelayError):
    """The relay request is missing a required field or a field has the wrong shape."""

    http_status = 400


class BundleError(RelayError):
    """The PKCS#12 bundle cannot be turned into a client identity."""

    http_status = 500


class MalformedBundle(BundleError):
    """The bundle cannot be parsed (corrupt structure or wrong passphrase)."""
    pass


class MissingPrivateKey(BundleError):
    """The bundle holds no private key bag."""
    pass


class MissingCertificate(BundleError):
    """The bundle holds no certificate bag."""
    pass


class InvalidDestination(RelayError):
    """The destination URL cannot be used for an mTLS relay."""

    http_status = 400


class RemoteTransportError(RelayError):
    """DNS, connection, reset or TLS handshake failure talking to the remote service."""

    http_status = 502


class RelayTimeout(RelayError):
    """The remote service did not deliver a complete response in time."""

    http_status = 502
