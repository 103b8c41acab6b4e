"""
PKCS#12 bundle decomposition for per-request client identities.

A caller hands the relay a password-protected PKCS#12 (PFX) bundle together
with each SOAP request. This module turns that bundle into the
{leaf certificate, private key, chain} triple a TLS stack needs to present a
client certificate.

Bundles come from many different tools and the order of the certificate bags
is not reliable, so the end-entity certificate is identified by pairing it
with the private key: the certificate whose public key equals the public key
derived from the private key is the leaf, every other certificate belongs to
the chain. The comparison is done on the DER SubjectPublicKeyInfo encoding of
both keys.

Security Considerations:
    - Nothing is written to disk and nothing is cached; the identity lives for
      a single relay call.
    - The passphrase and key material are never logged.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from soap_relay.utils.errors import MalformedBundle, MissingCertificate, MissingPrivateKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientIdentity:
    """
    Client credentials extracted from a PKCS#12 bundle, all PEM encoded.

    Attributes:
        leaf_certificate_pem: The end-entity certificate.
        private_key_pem: The private key, unencrypted PKCS#8.
        chain_certificates_pem: Every other certificate of the bundle, in
            bundle order.
        leaf_matched_key: False when no certificate matched the private key
            and the first certificate was taken as the leaf.
    """

    leaf_certificate_pem: str
    private_key_pem: str
    chain_certificates_pem: Tuple[str, ...] = field(default_factory=tuple)
    leaf_matched_key: bool = True

    def certificate_chain_pem(self) -> str:
        """Leaf certificate immediately followed by the chain certificates."""
        return ''.join([self.leaf_certificate_pem, *self.chain_certificates_pem])


def _spki_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def derive_public_key(private_key):
    """
    Recompute the public key belonging to a private key.

    RSA public keys are rebuilt from the modulus and public exponent; other
    key types expose their public half directly.
    """
    if isinstance(private_key, rsa.RSAPrivateKey):
        public_numbers = private_key.private_numbers().public_numbers
        return rsa.RSAPublicNumbers(public_numbers.e, public_numbers.n).public_key()
    return private_key.public_key()


def public_key_matches(certificate: x509.Certificate, private_key) -> bool:
    """
    Tell whether a certificate was issued for the given private key.

    The two public keys are compared on their canonical DER encoding, not on
    object identity. A certificate whose key cannot be loaded never matches.

    Args:
        certificate: The candidate certificate.
        private_key: The private key extracted from the bundle.

    Returns:
        bool: True if the certificate's public key equals the key derived
              from the private key.
    """
    try:
        certificate_key = _spki_bytes(certificate.public_key())
    except (ValueError, UnsupportedAlgorithm) as e:
        logger.debug("Certificate public key could not be loaded: %s", e)
        return False
    return certificate_key == _spki_bytes(derive_public_key(private_key))


def select_leaf_certificate(
    private_key, certificates: Sequence[x509.Certificate]
) -> Tuple[x509.Certificate, List[x509.Certificate], bool]:
    """
    Split certificates into the leaf and its chain by key pairing.

    Args:
        private_key: The private key the leaf must pair with.
        certificates: All certificates of the bundle in enumeration order.
            Must not be empty.

    Returns:
        tuple: (leaf, chain, matched). ``matched`` is False when no
               certificate paired with the key and the first certificate was
               used as the leaf.
    """
    candidates = []
    chain = []
    for certificate in certificates:
        if public_key_matches(certificate, private_key):
            candidates.append(certificate)
        else:
            chain.append(certificate)

    if candidates:
        if len(candidates) > 1:
            logger.warning(
                "%d certificates pair with the private key; using the first one as leaf",
                len(candidates),
            )
        return candidates[0], chain, True

    # No pairing found: keep the bundle usable and let the handshake decide.
    logger.warning(
        "No certificate pairs with the private key; falling back to the first certificate as leaf"
    )
    return certificates[0], list(certificates[1:]), False


def _load_bags(bundle_bytes: bytes, passphrase: str):
    """
    Parse the bundle and return its first private key and all certificates.

    The certificate paired with the key by the parser comes first, followed by
    the remaining certificate bags in bundle order.
    """
    password = passphrase.encode('utf-8') if passphrase else None
    try:
        loaded = pkcs12.load_pkcs12(bundle_bytes, password)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise MalformedBundle(f"Could not parse PKCS#12 bundle: {e}") from e

    certificates = []
    if loaded.cert is not None:
        certificates.append(loaded.cert.certificate)
    certificates.extend(bag.certificate for bag in loaded.additional_certs)
    return loaded.key, certificates


def _certificate_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(encoding=serialization.Encoding.PEM).decode('ascii')


def decompose_bundle(bundle_bytes: Optional[bytes], passphrase: str = '') -> ClientIdentity:
    """
    Decompose a PKCS#12 bundle into a client identity.

    Args:
        bundle_bytes: The raw (already base64-decoded) PKCS#12 structure.
        passphrase: The bundle password; may be empty.

    Returns:
        ClientIdentity: Leaf certificate, private key and chain, PEM encoded.

    Raises:
        MalformedBundle: If the bundle is empty, corrupt or the passphrase is wrong.
        MissingPrivateKey: If the bundle holds no private key.
        MissingCertificate: If the bundle holds no certificate.
    """
    if not bundle_bytes:
        raise MalformedBundle("PKCS#12 bundle is empty")

    private_key, certificates = _load_bags(bundle_bytes, passphrase or '')

    if private_key is None:
        raise MissingPrivateKey("Private key not found in PKCS#12 bundle")
    if not certificates:
        raise MissingCertificate("Certificate not found in PKCS#12 bundle")

    leaf, chain, matched = select_leaf_certificate(private_key, certificates)
    logger.debug(
        "Decomposed PKCS#12 bundle: leaf=%s, chain_length=%d, matched=%s",
        leaf.subject.rfc4514_string(), len(chain), matched,
    )

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode('ascii')

    return ClientIdentity(
        leaf_certificate_pem=_certificate_pem(leaf),
        private_key_pem=key_pem,
        chain_certificates_pem=tuple(_certificate_pem(c) for c in chain),
        leaf_matched_key=matched,
    )
