"""
PEM chain parsing and certificate inspection helpers.

The authority returns a full chain as one PEM string; these helpers split
it into typed blocks and extract the details stored with a certificate.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtensionOID

logger = logging.getLogger(__name__)

_PEM_BLOCK_RE = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\r?\n"
    r"(?P<body>.*?)"
    r"-----END (?P=label)-----",
    re.DOTALL,
)


class PemParseError(ValueError):
    """Input does not contain the expected PEM blocks."""


@dataclass(frozen=True)
class PemBlock:
    """One PEM-armored block."""

    label: str
    body: str

    @property
    def pem(self) -> str:
        return f"-----BEGIN {self.label}-----\n{self.body}-----END {self.label}-----\n"


def parse_pem_chain(pem_text: str) -> list[PemBlock]:
    """
    Split PEM text into its blocks, preserving order.

    Args:
        pem_text: One or more concatenated PEM blocks

    Returns:
        List of blocks in the order they appear
    """
    blocks = []
    for match in _PEM_BLOCK_RE.finditer(pem_text or ""):
        body = match.group("body").replace("\r\n", "\n")
        if body and not body.endswith("\n"):
            body += "\n"
        blocks.append(PemBlock(label=match.group("label"), body=body))
    return blocks


def split_leaf_and_chain(fullchain_pem: str) -> tuple[str, str]:
    """
    Split a full chain into the leaf certificate and the rest of the chain.

    The first CERTIFICATE block is the leaf; the remaining blocks, in
    order, form the chain (empty when the authority returned only a leaf).

    Raises:
        PemParseError: If the text holds no certificate block
    """
    certs = [block for block in parse_pem_chain(fullchain_pem) if block.label == "CERTIFICATE"]
    if not certs:
        raise PemParseError("No certificate found in PEM chain")

    leaf = certs[0].pem
    chain = "".join(block.pem for block in certs[1:])
    return leaf, chain


def _format_name(name: x509.Name) -> str:
    return ", ".join(f"{attr.oid._name}={attr.value}" for attr in name)


def parse_certificate(cert_pem: str | bytes) -> dict:
    """
    Parse a PEM certificate and extract details.

    Args:
        cert_pem: PEM-encoded certificate

    Returns:
        Dictionary with certificate details; datetimes are naive UTC
    """
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode("utf-8")
    cert = x509.load_pem_x509_certificate(cert_pem)

    # Extract SANs
    alt_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        alt_names = [name.value for name in san_ext.value]
    except x509.ExtensionNotFound:
        pass

    return {
        "subject": _format_name(cert.subject),
        "issuer": _format_name(cert.issuer),
        "serial_number": format(cert.serial_number, "x"),
        "not_before": _naive_utc(cert.not_valid_before_utc),
        "not_after": _naive_utc(cert.not_valid_after_utc),
        "alt_names": alt_names,
        "fingerprint_sha256": cert.fingerprint(hashes.SHA256()).hex(),
    }


def _naive_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def serialize_private_key(private_key) -> str:
    """Serialize a private key to unencrypted PKCS8 PEM."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def validate_certificate_key_match(cert_pem: str | bytes, key_pem: str | bytes) -> bool:
    """
    Validate that a certificate and private key match.

    Args:
        cert_pem: PEM-encoded certificate
        key_pem: PEM-encoded private key

    Returns:
        True if they match
    """
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode("utf-8")
    if isinstance(key_pem, str):
        key_pem = key_pem.encode("utf-8")

    cert = x509.load_pem_x509_certificate(cert_pem)
    private_key = serialization.load_pem_private_key(key_pem, password=None)

    # Compare public key bytes
    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_bytes = cert.public_key().public_bytes(encoding=serialization.Encoding.PEM, format=public_format)
    key_bytes = private_key.public_key().public_bytes(encoding=serialization.Encoding.PEM, format=public_format)

    return cert_bytes == key_bytes
