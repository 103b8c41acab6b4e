import socket
import ssl
import threading
import time
from datetime import datetime, timezone, timedelta
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from ipaddress import ip_address
from types import SimpleNamespace

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from soap_relay import create_app

TEST_PROXY_SECRET = 'test-proxy-secret'
TEST_PFX_PASSWORD = 'secret'
TRICKLE_DELAY_SECONDS = 0.05


def build_certificate(common_name, public_key, signing_key, issuer_name=None, ca=False, san=None):
    """Build a certificate for ``public_key`` signed by ``signing_key``."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    builder = x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuer_name or subject
    ).public_key(public_key).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - timedelta(minutes=5)
    ).not_valid_after(
        now + timedelta(days=30)
    ).add_extension(
        x509.BasicConstraints(ca=ca, path_length=None), critical=True
    )
    if san:
        builder = builder.add_extension(x509.SubjectAlternativeName(san), critical=False)
    return builder.sign(signing_key, hashes.SHA256())


def build_pfx(key, cert, cas=None, password=TEST_PFX_PASSWORD):
    """Serialize a PKCS#12 bundle the way issuing tools do."""
    if password:
        encryption = serialization.BestAvailableEncryption(password.encode('utf-8'))
    else:
        encryption = serialization.NoEncryption()
    return pkcs12.serialize_key_and_certificates(
        name=b'relay-test',
        key=key,
        cert=cert,
        cas=cas,
        encryption_algorithm=encryption,
    )


def pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode('ascii')


@pytest.fixture(scope='session')
def pki():
    """
    A small PKI: a CA, a client identity (RSA) issued by it, a server
    certificate for 127.0.0.1 and an unrelated self-signed certificate.
    """
    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_cert = build_certificate("Relay Test CA", ca_key.public_key(), ca_key, ca=True)

    client_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    client_cert = build_certificate(
        "relay-test-client", client_key.public_key(), ca_key, issuer_name=ca_cert.subject
    )

    server_key = ec.generate_private_key(ec.SECP256R1())
    server_cert = build_certificate(
        "localhost", server_key.public_key(), ca_key, issuer_name=ca_cert.subject,
        san=[x509.DNSName("localhost"), x509.IPAddress(ip_address("127.0.0.1"))],
    )

    stranger_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    stranger_cert = build_certificate("stranger", stranger_key.public_key(), stranger_key)

    return SimpleNamespace(
        ca_key=ca_key, ca_cert=ca_cert,
        client_key=client_key, client_cert=client_cert,
        server_key=server_key, server_cert=server_cert,
        stranger_key=stranger_key, stranger_cert=stranger_cert,
    )


@pytest.fixture(scope='session')
def client_bundle(pki):
    """PKCS#12 bundle for the client identity, CA certificate included."""
    return build_pfx(pki.client_key, pki.client_cert, cas=[pki.ca_cert])


class _RecordingHandler(BaseHTTPRequestHandler):
    protocol_version = 'HTTP/1.1'

    def do_POST(self):
        length = int(self.headers.get('Content-Length', 0))
        body = self.rfile.read(length)
        self.server.received.append({
            'method': self.command,
            'path': self.path,
            'headers': {k.lower(): v for k, v in self.headers.items()},
            'body': body,
            'peer_cert': self.connection.getpeercert(),
            'tls_version': self.connection.version(),
        })

        status, headers, response_body = self.server.response
        lines = [f"HTTP/1.1 {status} {HTTPStatus(status).phrase}"]
        lines += [f"{name}: {value}" for name, value in headers]
        lines += [f"Content-Length: {len(response_body)}", "Connection: close", "", ""]
        head = "\r\n".join(lines).encode('latin-1')
        self.close_connection = True

        if self.server.trickle is None:
            self.wfile.write(head + response_body)
            return

        # Send one byte at a time, starting with the status line or with the body
        raw = head + response_body
        start = 0 if self.server.trickle == 'headers' else len(head)
        self.wfile.write(raw[:start])
        try:
            for i in range(start, len(raw)):
                self.wfile.write(raw[i:i + 1])
                time.sleep(TRICKLE_DELAY_SECONDS)
        except OSError:
            # client gave up
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def mtls_server(pki, tmp_path):
    """
    A local HTTPS endpoint that requires a client certificate issued by the
    test CA, records every request and answers with ``server.response``. Setting
    ``server.trickle`` to 'headers' or 'body' sends the response one byte
    at a time from that point on.
    """
    cert_path = tmp_path / "server.crt"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(pki.server_cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(pki.server_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    context.load_verify_locations(cadata=pem(pki.ca_cert))
    context.verify_mode = ssl.CERT_REQUIRED

    server = ThreadingHTTPServer(('127.0.0.1', 0), _RecordingHandler)
    server.daemon_threads = True
    server.socket = context.wrap_socket(server.socket, server_side=True)
    server.received = []
    server.response = (200, [('Content-Type', 'application/soap+xml; charset=utf-8')], b'<b/>')
    server.trickle = None
    server.url = f"https://127.0.0.1:{server.server_address[1]}"

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture
def silent_server():
    """A TCP listener that accepts connections into its backlog and never answers."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    sock.listen(8)
    yield f"https://127.0.0.1:{sock.getsockname()[1]}"
    sock.close()


@pytest.fixture(scope='function')
def app():
    """
    Creates a new application instance for each test function, with the
    access gate enabled.
    """
    app = create_app({
        "TESTING": True,
        "PROXY_SECRET": TEST_PROXY_SECRET,
        "RELAY_TIMEOUT_SECONDS": 5,
    })
    yield app


@pytest.fixture(scope='function')
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture(scope='session')
def cert_factory():
    """Exposes build_certificate to test modules."""
    return build_certificate


@pytest.fixture(scope='session')
def pfx_factory():
    """Exposes build_pfx to test modules."""
    return build_pfx


@pytest.fixture
def closed_port():
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
