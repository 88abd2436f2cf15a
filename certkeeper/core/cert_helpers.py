"""
Certificate parsing helpers.

Reads the details the daemon tracks (validity window, serial,
fingerprint) straight from PEM material.
"""

import logging
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtensionOID

logger = logging.getLogger(__name__)


def parse_certificate(cert_pem: bytes) -> dict:
    """
    Parse a PEM certificate and extract details.

    Only the first certificate is read when a full chain is passed.

    Args:
        cert_pem: PEM-encoded certificate

    Returns:
        Dictionary with certificate details
    """
    cert = x509.load_pem_x509_certificate(cert_pem)

    issuer = ", ".join(f"{attr.oid._name}={attr.value}" for attr in cert.issuer)

    alt_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        alt_names = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return {
        "issuer": issuer,
        "serial_number": format(cert.serial_number, "x"),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
        "alt_names": alt_names,
        "fingerprint_sha256": cert.fingerprint(hashes.SHA256()).hex(),
    }


def read_installed_certificate(cert_path: str | Path) -> dict | None:
    """Parse the certificate currently on disk, or None if there is none."""
    path = Path(cert_path)
    if not path.is_file():
        return None
    try:
        return parse_certificate(path.read_bytes())
    except ValueError as e:
        logger.warning(f"Unreadable certificate at {path}: {e}")
        return None


def certificate_matches_key(cert_pem: bytes, key_pem: bytes) -> bool:
    """
    Validate that a certificate and private key match.

    Args:
        cert_pem: PEM-encoded certificate
        key_pem: PEM-encoded private key

    Returns:
        True if they match
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    private_key = serialization.load_pem_private_key(key_pem, password=None)

    public_format = dict(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return cert.public_key().public_bytes(**public_format) == private_key.public_key().public_bytes(**public_format)
