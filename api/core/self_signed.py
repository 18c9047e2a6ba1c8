"""
Self-signed fallback certificate generator.

When the authority is unreachable a domain still needs a certificate to
keep its checkout reachable over TLS. The generated certificate is a real
X.509 certificate for the exact name; browsers will warn, but the
terminator has material to serve until the next renewal replaces it.
"""

import asyncio
import logging
from datetime import timedelta

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from config import settings
from core.cert_errors import FallbackGenerationError
from core.cert_helpers import parse_certificate, serialize_private_key
from models.certificate import CertificateProvider, IssuedCertificate, utcnow

logger = logging.getLogger(__name__)


def _build_certificate(domain_name: str, validity_days: int, key_size: int) -> IssuedCertificate:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain_name)])
    now = utcnow()
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain_name)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
    )
    cert = builder.sign(private_key=private_key, algorithm=hashes.SHA256())

    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    info = parse_certificate(cert_pem)

    return IssuedCertificate(
        provider=CertificateProvider.SELF_SIGNED,
        certificate_pem=cert_pem,
        private_key_pem=serialize_private_key(private_key),
        # No issuer chain exists; the certificate is its own chain
        chain_pem=cert_pem,
        serial_number=info["serial_number"],
        fingerprint_sha256=info["fingerprint_sha256"],
        issuer=info["issuer"],
        issued_at=now,
        expires_at=info["not_after"],
    )


async def generate_self_signed(
    domain_name: str,
    validity_days: int | None = None,
    key_size: int | None = None,
) -> IssuedCertificate:
    """
    Generate a self-signed certificate for a single domain name.

    Args:
        domain_name: Exact name the certificate covers (CN and SAN)
        validity_days: Lifetime, defaults to 365 days
        key_size: RSA key size, defaults to 2048

    Raises:
        FallbackGenerationError: If key or certificate generation fails
    """
    validity_days = validity_days or settings.self_signed_validity_days
    key_size = key_size or settings.self_signed_key_size

    try:
        material = await asyncio.to_thread(_build_certificate, domain_name, validity_days, key_size)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise FallbackGenerationError(
            f"Failed to generate self-signed certificate: {e}",
            domain=domain_name,
            suggestion="Check that the domain name is a valid DNS name",
        ) from e

    logger.info(f"Generated self-signed certificate for {domain_name} (expires {material.expires_at.date()})")
    return material
