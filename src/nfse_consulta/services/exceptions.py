from __future__ import annotations

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


class NfseError(Exception):
    """Base class for every error raised by nfse_consulta."""


class ConfigurationError(NfseError):
    """The integration is misconfigured; recoverable by reconfiguring."""


class CertificateError(ConfigurationError):
    """The PKCS#12 bundle could not be opened or lacks a certificate/key."""


class NotConfiguredError(ConfigurationError):
    """No certificate is configured for the requested target."""

    def __init__(self, target: str) -> None:
        super().__init__(f"Certificado digital nao configurado ({target})")
        self.target = target


class TransportError(NfseError):
    """Connection, TLS or HTTP status failure talking to a portal.

    Never retried here; ``retryable`` tells the caller whether a retry makes sense.
    """

    def __init__(self, message: str, *, target: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.target = target
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code in RETRYABLE_STATUS_CODES


class ProtocolError(NfseError):
    """The portal answered with a body that cannot be parsed at all."""


class NotAvailableError(NfseError):
    """The portal has no rendered document (PDF) for the requested key."""


class ArtifactNotFoundError(NfseError):
    """A stored artifact referenced by the caller does not exist."""

    def __init__(self, ref: str) -> None:
        super().__init__(f"Artefato nao encontrado: {ref}")
        self.ref = ref


class EmptyBatchError(NfseError):
    """A batch archive was requested with no items."""


class OperationCancelled(NfseError):
    """The caller cancelled an in-flight query or archive build."""
