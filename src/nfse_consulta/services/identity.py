"""Client certificate identities for mutual TLS, one per target portal."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

import requests
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509 import Certificate
from requests_pkcs12 import Pkcs12Adapter

from nfse_consulta.models.invoice import MUNICIPAL, NACIONAL
from nfse_consulta.services.exceptions import CertificateError, NotConfiguredError
from nfse_consulta.utils.certificate import common_name, load_pfx_bytes

logger = logging.getLogger(__name__)

TARGETS = (NACIONAL, MUNICIPAL)


def _check_target(target: str) -> str:
    if target not in TARGETS:
        raise ValueError(f"Sistema invalido: '{target}'. Use nacional ou municipal.")
    return target


def _build_session(pfx_data: bytes, password: str) -> requests.Session:
    session = requests.Session()
    session.mount(
        "https://",
        Pkcs12Adapter(pkcs12_data=pfx_data, pkcs12_password=password),
    )
    return session


@dataclass(frozen=True)
class CertificateIdentity:
    """A parsed A1 certificate bound to one target portal.

    Built all at once by :meth:`from_pfx`; an instance always carries the
    certificate, the key and a ready mTLS session together.
    """

    target: str
    pfx_data: bytes = field(repr=False)
    password: str = field(repr=False)
    certificate: Certificate = field(repr=False)
    private_key: PrivateKeyTypes = field(repr=False)
    session: requests.Session = field(repr=False, compare=False)
    subject: str
    expires_at: datetime

    @classmethod
    def from_pfx(cls, pfx_data: bytes, password: str, target: str) -> CertificateIdentity:
        """Parse a PKCS#12 bundle and build its transport session.

        Raises CertificateError when the bundle cannot be opened.
        """
        _check_target(target)
        try:
            private_key, certificate, _ = load_pfx_bytes(pfx_data, password)
            session = _build_session(pfx_data, password)
        except (ValueError, TypeError) as exc:
            raise CertificateError(f"Certificado invalido ou senha incorreta: {exc}") from exc

        return cls(
            target=target,
            pfx_data=pfx_data,
            password=password,
            certificate=certificate,
            private_key=private_key,
            session=session,
            subject=common_name(certificate),
            expires_at=certificate.not_valid_after_utc,
        )

    @property
    def expired(self) -> bool:
        return self.expires_at < datetime.now(UTC)


class CertificateRegistry:
    """Process-wide holder of the configured identity per target.

    Replacing an identity is an atomic swap: requests that already captured
    the previous instance keep using it until they finish.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identities: dict[str, CertificateIdentity] = {}

    def configure(self, pfx_data: bytes, password: str, target: str) -> bool:
        """Install a new certificate for *target*. Returns False on any bundle error.

        On failure the previously configured identity (if any) is kept.
        """
        _check_target(target)
        try:
            identity = CertificateIdentity.from_pfx(pfx_data, password, target)
        except CertificateError as exc:
            logger.error("Erro ao processar certificado (%s): %s", target, exc)
            return False
        self.install(identity)
        return True

    def install(self, identity: CertificateIdentity) -> None:
        with self._lock:
            self._identities[identity.target] = identity
        logger.info(
            "Certificado digital configurado (%s): %s, valido ate %s",
            identity.target,
            identity.subject,
            identity.expires_at.isoformat(),
        )

    def clear(self, target: str) -> None:
        with self._lock:
            self._identities.pop(_check_target(target), None)

    def get(self, target: str) -> CertificateIdentity | None:
        with self._lock:
            return self._identities.get(_check_target(target))

    def require(self, target: str) -> CertificateIdentity:
        identity = self.get(target)
        if identity is None:
            raise NotConfiguredError(target)
        return identity

    def is_configured(self, target: str) -> bool:
        return self.get(target) is not None

    def transport_context(self, target: str) -> requests.Session | None:
        identity = self.get(target)
        return identity.session if identity is not None else None
