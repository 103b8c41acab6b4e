"""
One-shot mutual TLS relay for SOAP requests.

Each call opens a dedicated TLS session to the remote web service, presents the
caller's client certificate, POSTs the envelope unchanged and returns the
remote status, headers and body. Nothing is pooled, cached or retried.

Server certificate verification:
    The remote services this relay talks to publish CA chains that are not
    reliable in practice. Identity assurance on this channel comes from the
    mutual handshake, so ``verify_server_certificate`` defaults to False
    (configuration key ``RELAY_VERIFY_SERVER_CERTIFICATE``). Enable it whenever
    the remote chain validates against the system trust store.

TLS version pinning:
    The minimum and maximum protocol versions are the same value
    (``RELAY_TLS_VERSION``, TLS 1.2 by default). The remote side refuses any
    other version, so negotiating the highest common version is never wanted.

Deadline:
    The timeout covers the whole call. urllib3 bounds the connect step and
    each read, and a ConnectionWatchdog shuts the connection down when the
    deadline passes, so a peer trickling bytes cannot stretch the call.
"""

import enum
import logging
import os
import socket
import ssl
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import HTTPError as TransportHTTPError, ReadTimeoutError
from urllib3.util import SKIP_HEADER, Timeout

from soap_relay.utils.errors import (
    InvalidDestination,
    RelayError,
    RelayTimeout,
    RemoteTransportError,
)
from soap_relay.utils.pkcs12_bundle import ClientIdentity

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_TLS_VERSION = 'TLSv1_2'
DEFAULT_USER_AGENT = 'SoapRelay/1.0'
SOAP_CONTENT_TYPE = 'application/soap+xml; charset=utf-8'
READ_CHUNK_SIZE = 16 * 1024


def parse_tls_version(name: str) -> ssl.TLSVersion:
    """
    Resolve a TLS version name such as 'TLSv1_2' or 'TLSv1.2'.

    Raises:
        ValueError: If the name is not a known ``ssl.TLSVersion`` member.
    """
    normalized = name.strip().replace('.', '_')
    try:
        version = ssl.TLSVersion[normalized]
    except KeyError:
        raise ValueError(f"Unknown TLS version: {name!r}")
    if version in (ssl.TLSVersion.MINIMUM_SUPPORTED, ssl.TLSVersion.MAXIMUM_SUPPORTED):
        raise ValueError(f"TLS version must name a concrete protocol version, got {name!r}")
    return version


@dataclass(frozen=True)
class RelaySettings:
    """
    Process-wide relay configuration, built once when the application starts.

    Attributes:
        timeout_seconds: Default deadline for a whole relay call.
        tls_version: The single TLS version allowed on the outbound channel.
        verify_server_certificate: Verify the remote certificate chain and
            hostname. Off by default, see the module docstring.
        user_agent: Value of the User-Agent header sent upstream.
        proxy_secret: Shared secret gating the front door; empty disables it.
    """

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    tls_version: str = DEFAULT_TLS_VERSION
    verify_server_certificate: bool = False
    user_agent: str = DEFAULT_USER_AGENT
    proxy_secret: str = field(default='', repr=False)

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("Relay timeout must be a positive number of seconds")
        parse_tls_version(self.tls_version)

    @property
    def pinned_tls_version(self) -> ssl.TLSVersion:
        return parse_tls_version(self.tls_version)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'RelaySettings':
        """Build settings from a Flask config mapping."""
        return cls(
            timeout_seconds=float(config.get('RELAY_TIMEOUT_SECONDS', DEFAULT_TIMEOUT_SECONDS)),
            tls_version=config.get('RELAY_TLS_VERSION') or DEFAULT_TLS_VERSION,
            verify_server_certificate=bool(config.get('RELAY_VERIFY_SERVER_CERTIFICATE', False)),
            user_agent=config.get('RELAY_USER_AGENT') or DEFAULT_USER_AGENT,
            proxy_secret=config.get('PROXY_SECRET') or '',
        )


@dataclass
class RelayResult:
    """The remote response, unmodified."""

    status_code: int
    headers: Dict[str, Union[str, List[str]]]
    body: bytes

    def body_text(self) -> str:
        return self.body.decode('utf-8', errors='replace')


class RelayState(enum.Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    AWAITING_RESPONSE = 'awaiting_response'
    COMPLETE = 'complete'
    FAILED = 'failed'


_TRANSITIONS = {
    RelayState.IDLE: {RelayState.CONNECTING, RelayState.FAILED},
    RelayState.CONNECTING: {RelayState.AWAITING_RESPONSE, RelayState.FAILED},
    RelayState.AWAITING_RESPONSE: {RelayState.COMPLETE, RelayState.FAILED},
    RelayState.COMPLETE: set(),
    RelayState.FAILED: set(),
}


class RelayCall:
    """Progress of a single relay call. A new instance is created per call."""

    def __init__(self, destination: 'Destination'):
        self.destination = destination
        self.state = RelayState.IDLE

    def advance(self, new_state: RelayState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal relay state transition {self.state.name} -> {new_state.name}")
        logger.debug("Relay to %s: %s -> %s", self.destination.host, self.state.name, new_state.name)
        self.state = new_state

    def fail(self) -> None:
        if self.state not in (RelayState.COMPLETE, RelayState.FAILED):
            self.advance(RelayState.FAILED)


class Destination(NamedTuple):
    host: str
    port: int
    path: str
    url: str


def parse_destination(url: str) -> Destination:
    """
    Parse and normalise the destination of a relay call.

    The path keeps the query string; fragment and user-info are dropped.

    Raises:
        InvalidDestination: If the URL is not an https URL with a host and a
            valid port.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidDestination("Destination URL is empty")
    try:
        parts = urlsplit(url.strip())
        port = parts.port or 443
    except ValueError as e:
        raise InvalidDestination(f"Invalid destination URL: {e}") from e

    if parts.scheme.lower() != 'https':
        raise InvalidDestination(f"Destination URL must use https, got {parts.scheme or 'no scheme'!r}")
    host = parts.hostname
    if not host:
        raise InvalidDestination("Destination URL has no host")

    path = parts.path or '/'
    if parts.query:
        path = f"{path}?{parts.query}"

    netloc_host = f"[{host}]" if ':' in host else host
    normalized = urlunsplit(('https', f"{netloc_host}:{port}", parts.path or '/', parts.query, ''))
    return Destination(host=host, port=port, path=path, url=normalized)


class ConnectionWatchdog:
    """
    Enforces the deadline of one relay call on its sockets.

    Socket timeouts only bound each single read, so a peer that trickles bytes
    could keep a call alive indefinitely. When the timer expires every socket
    opened for the call is shut down, which wakes the blocked read at once.
    """

    def __init__(self, seconds: float):
        self.expired = False
        self._sockets = []
        self._lock = threading.Lock()
        self._timer = threading.Timer(max(seconds, 0), self._expire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def watch(self, sock: socket.socket) -> None:
        """Track a connection. The duplicate descriptor is owned until stop()."""
        with self._lock:
            watched = sock.dup()
            self._sockets.append(watched)
            if self.expired:
                _shutdown_quietly(watched)

    def stop(self) -> None:
        self._timer.cancel()
        with self._lock:
            for watched in self._sockets:
                watched.close()
            self._sockets = []

    def _expire(self) -> None:
        with self._lock:
            self.expired = True
            for watched in self._sockets:
                _shutdown_quietly(watched)
        logger.debug("Relay deadline reached, aborted %d connection(s)", len(self._sockets))


def _shutdown_quietly(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # already closed by the peer or the HTTP stack
        pass


class _WatchedSSLContext(ssl.SSLContext):
    """SSLContext that registers every socket it wraps with a watchdog."""

    watchdog = None

    def wrap_socket(self, sock, *args, **kwargs):
        if self.watchdog is not None:
            self.watchdog.watch(sock)
        return super().wrap_socket(sock, *args, **kwargs)


def _write_private_file(path: str, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'w') as f:
        f.write(content)


def build_ssl_context(
    identity: ClientIdentity,
    settings: RelaySettings,
    watchdog: Optional[ConnectionWatchdog] = None,
) -> ssl.SSLContext:
    """
    Build the client-side TLS context for one relay call.

    The context is pinned to a single protocol version and carries the
    identity as client credentials. ``ssl`` only loads credentials from files,
    so the PEM material goes through a private temporary directory that is
    removed before this function returns.

    Args:
        identity: The decomposed client identity.
        settings: Relay settings (TLS version, server verification flag).
        watchdog: Optional deadline enforcer for the sockets this context wraps.

    Returns:
        ssl.SSLContext: A context ready to be handed to the HTTP adapter.

    Raises:
        RemoteTransportError: If the TLS stack rejects the credentials, e.g.
            when the fallback leaf does not belong to the private key.
    """
    context = _WatchedSSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.watchdog = watchdog
    version = settings.pinned_tls_version
    context.minimum_version = version
    context.maximum_version = version

    if settings.verify_server_certificate:
        context.load_default_certs()
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    with tempfile.TemporaryDirectory(prefix='soap-relay-') as workdir:
        cert_path = os.path.join(workdir, 'client.crt')
        key_path = os.path.join(workdir, 'client.key')
        _write_private_file(cert_path, identity.certificate_chain_pem())
        _write_private_file(key_path, identity.private_key_pem)
        try:
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        except ssl.SSLError as e:
            raise RemoteTransportError(f"Client certificate rejected by the TLS stack: {e}") from e

    return context


class ClientCertificateAdapter(HTTPAdapter):
    """HTTPAdapter that opens every connection with a prepared SSLContext."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self._ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs['ssl_context'] = self._ssl_context
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


def _collect_headers(raw_headers) -> Dict[str, Union[str, List[str]]]:
    headers = {}
    for name in raw_headers.keys():
        values = raw_headers.getlist(name)
        headers[name.lower()] = values[0] if len(values) == 1 else list(values)
    return headers


class MutualTlsRelay:
    """
    Relays a SOAP envelope over a client-authenticated TLS connection.

    The relay holds only immutable settings; every call builds and discards
    its own TLS context, session and connection, so one instance can serve
    concurrent calls.
    """

    def __init__(self, settings: Optional[RelaySettings] = None):
        self.settings = settings or RelaySettings()

    def relay(
        self,
        url: str,
        action_id: Optional[str],
        body: Union[str, bytes],
        identity: ClientIdentity,
        timeout: Optional[float] = None,
    ) -> RelayResult:
        """
        POST ``body`` to ``url`` presenting ``identity`` as client certificate.

        Args:
            url: The https URL of the remote web service.
            action_id: SOAPAction header value; None is sent as an empty string.
            body: The SOAP envelope. Text is encoded as UTF-8.
            identity: Client credentials from ``decompose_bundle``.
            timeout: Deadline in seconds for the whole call, from the
                connection attempt to the last byte of the response.
                Defaults to the configured timeout.

        Returns:
            RelayResult: Status, headers and raw body of the remote response.

        Raises:
            InvalidDestination: Before any connection if the URL is unusable.
            RelayTimeout: If the deadline passes before the response completes.
            RemoteTransportError: On DNS, connection, reset or handshake failure.
        """
        destination = parse_destination(url)
        timeout = self.settings.timeout_seconds if timeout is None else timeout
        payload = body.encode('utf-8') if isinstance(body, str) else bytes(body)
        headers = {
            'Content-Type': SOAP_CONTENT_TYPE,
            'SOAPAction': action_id or '',
            'Connection': 'close',
            'User-Agent': self.settings.user_agent,
            'Content-Length': str(len(payload)),
            # http.client would otherwise add 'Accept-Encoding: identity'
            'Accept-Encoding': SKIP_HEADER,
        }

        call = RelayCall(destination)
        deadline = time.monotonic() + timeout
        watchdog = ConnectionWatchdog(timeout)
        watchdog.start()
        session = requests.Session()
        session.headers.clear()
        session.trust_env = False
        response = None
        try:
            call.advance(RelayState.CONNECTING)
            ssl_context = build_ssl_context(identity, self.settings, watchdog)
            session.mount('https://', ClientCertificateAdapter(ssl_context))
            logger.info(
                "Relaying %d bytes to %s:%d%s (TLS %s)",
                len(payload), destination.host, destination.port, destination.path,
                self.settings.pinned_tls_version.name,
            )
            response = session.post(
                destination.url,
                data=payload,
                headers=headers,
                timeout=Timeout(total=max(deadline - time.monotonic(), 0.001)),
                verify=self.settings.verify_server_certificate,
                allow_redirects=False,
                stream=True,
            )

            call.advance(RelayState.AWAITING_RESPONSE)
            response_body = self._read_body(response, deadline, watchdog)
            result = RelayResult(
                status_code=response.status_code,
                headers=_collect_headers(response.raw.headers),
                body=response_body,
            )
            call.advance(RelayState.COMPLETE)
            logger.info(
                "Relay to %s completed with status %d (%d bytes)",
                destination.host, result.status_code, len(result.body),
            )
            return result

        except RelayError:
            call.fail()
            raise
        except requests.Timeout as e:
            call.fail()
            raise RelayTimeout(f"No response from {destination.host} within {timeout:g}s") from e
        except requests.RequestException as e:
            call.fail()
            if watchdog.expired or time.monotonic() >= deadline:
                raise RelayTimeout(f"No response from {destination.host} within {timeout:g}s") from e
            raise RemoteTransportError(str(e)) from e
        finally:
            watchdog.stop()
            if response is not None:
                response.close()
            session.close()

    def _read_body(self, response: requests.Response, deadline: float, watchdog: ConnectionWatchdog) -> bytes:
        """Accumulate the raw (not content-decoded) body before the deadline."""
        chunks = []
        try:
            for chunk in response.raw.stream(READ_CHUNK_SIZE, decode_content=False):
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    raise RelayTimeout("Response body was not completed before the deadline")
        except ReadTimeoutError as e:
            raise RelayTimeout(f"Timed out reading the response body: {e}") from e
        except TransportHTTPError as e:
            if watchdog.expired:
                raise RelayTimeout("Response body was not completed before the deadline") from e
            raise RemoteTransportError(f"Connection failed while reading the response: {e}") from e
        # A shutdown socket reads as a clean end of stream when no length was announced
        if watchdog.expired:
            raise RelayTimeout("Response body was not completed before the deadline")
        return b''.join(chunks)
