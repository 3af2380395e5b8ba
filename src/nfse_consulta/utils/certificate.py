from __future__ import annotations

from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509 import Certificate
from cryptography.x509.oid import NameOID


def load_pfx_bytes(
    pfx_data: bytes, password: str
) -> tuple[PrivateKeyTypes, Certificate, list[Certificate]]:
    """Open a .pfx/.p12 bundle and return (private_key, certificate, ca_chain).

    Raises ValueError for a wrong password, a malformed container, or a
    bundle missing its certificate or private key.
    """
    private_key, certificate, chain = pkcs12.load_key_and_certificates(
        pfx_data, password.encode()
    )

    if private_key is None or certificate is None:
        raise ValueError("Certificado ou chave privada nao encontrados no arquivo PFX")

    return private_key, certificate, list(chain) if chain else []


def read_pfx(pfx_path: str) -> bytes:
    """Read a .pfx/.p12 file from disk."""
    return Path(pfx_path).read_bytes()


def common_name(certificate: Certificate) -> str:
    """Return the subject CN, falling back to the full RFC 4514 subject."""
    attrs = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if attrs:
        return str(attrs[0].value)
    return certificate.subject.rfc4514_string()

