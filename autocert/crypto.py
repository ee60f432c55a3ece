"""
Domain/account private-key generation and CSR creation.

Boundary: this module only builds key material in memory. Reading and writing
it under the cache directory lives in storage/filesystem.py.
"""
from __future__ import annotations

from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

PrivateKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """Generate an EC P-256 private key."""
    return ec.generate_private_key(ec.SECP256R1())


def private_key_to_pem(key: PrivateKey) -> bytes:
    """Serialize a private key to unencrypted PEM.

    EC keys use the traditional ``EC PRIVATE KEY`` block so the files stay
    readable by openssl and by other ACME tooling sharing the cache.
    """
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def create_csr(private_key: PrivateKey, domain: str) -> bytes:
    """Create a PEM-encoded CSR for a single *domain*.

    The domain is carried both as the subject CN and as the only SAN entry;
    ACME servers derive the order identifiers from the SAN list.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


def public_key_matches(certificate: x509.Certificate, private_key: PrivateKey) -> bool:
    """Return True if *certificate* was issued for *private_key*."""
    def spki(key) -> bytes:
        return key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    return spki(certificate.public_key()) == spki(private_key.public_key())
