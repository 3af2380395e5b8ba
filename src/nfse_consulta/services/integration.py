"""Single entry point used by the surrounding application."""

from __future__ import annotations

import logging
import tempfile
import threading
from collections.abc import Iterable
from datetime import date
from pathlib import Path
from typing import IO

from nfse_consulta import config as _config
from nfse_consulta.models.invoice import MUNICIPAL, NACIONAL, InvoiceRecord
from nfse_consulta.models.status import ChannelStatus, IntegrationStatus
from nfse_consulta.services.adn_client import NationalDistributionClient
from nfse_consulta.services.archive import (
    DEFAULT_CONCURRENT_READS,
    SPOOL_MAX_BYTES,
    ArchiveReport,
    BatchArchiveBuilder,
    BatchItem,
)
from nfse_consulta.services.identity import TARGETS, CertificateRegistry
from nfse_consulta.services.municipal_client import MunicipalQueryClient
from nfse_consulta.services.sources import InvoiceSource, default_period
from nfse_consulta.utils.formatters import download_filename
from nfse_consulta.utils.storage import (
    AUDIT_BATCH_DOWNLOAD,
    AUDIT_DOWNLOAD,
    ArtifactStore,
    AuditLog,
    ConfigStore,
)

logger = logging.getLogger(__name__)


def _cert_key(target: str) -> str:
    return f"certificado_{target}"


class NfseIntegration:
    """Certificates, both portal clients and the batch exporter behind one object.

    Owns one CertificateRegistry shared by both clients. Collaborators
    (artifact store, audit log, config store) are optional and injected.
    """

    def __init__(
        self,
        registry: CertificateRegistry | None = None,
        *,
        ambiente: str | None = None,
        inscricao_municipal: str = "",
        artifact_store: ArtifactStore | None = None,
        audit_log: AuditLog | None = None,
        config_store: ConfigStore | None = None,
        max_concurrent_reads: int = DEFAULT_CONCURRENT_READS,
    ) -> None:
        self.registry = registry or CertificateRegistry()
        self.nacional = NationalDistributionClient(self.registry, ambiente)
        self.municipal = MunicipalQueryClient(self.registry, inscricao_municipal)
        self.artifact_store = artifact_store
        self.audit_log = audit_log
        self.config_store = config_store
        self.max_concurrent_reads = max_concurrent_reads

    # --- Certificates ---

    def configure_certificate(
        self, pfx_data: bytes, password: str, target: str, persist: bool = False
    ) -> bool:
        """Install a certificate for *target*; optionally persist it for restarts.

        The bundle goes to the config store and the password to the OS keyring.
        """
        if not self.registry.configure(pfx_data, password, target):
            return False
        if persist:
            self._persist_certificate(pfx_data, password, target)
        return True

    def _persist_certificate(self, pfx_data: bytes, password: str, target: str) -> None:
        if self.config_store is None:
            logger.warning("Certificado %s nao persistido: sem config store", target)
            return
        try:
            self.config_store.save(_cert_key(target), binary_value=pfx_data)
        except Exception:
            logger.warning("Falha ao persistir certificado %s", target, exc_info=True)
            return
        if not _config.set_cert_password(target, password):
            logger.warning(
                "Senha do certificado %s nao armazenada no keychain; defina CERT_PFX_PASSWORD",
                target,
            )

    def restore_certificates(self) -> dict[str, bool]:
        """Reload persisted certificates. Returns target → configured."""
        restored: dict[str, bool] = {}
        if self.config_store is None:
            return restored
        for target in TARGETS:
            entry = self.config_store.get(_cert_key(target))
            if not entry or not entry.get("binary_value"):
                continue
            try:
                password = _config.get_cert_password(target)
            except KeyError:
                logger.warning("Certificado %s persistido, mas sem senha disponivel", target)
                restored[target] = False
                continue
            restored[target] = self.registry.configure(entry["binary_value"], password, target)
        return restored

    def is_configured(self, target: str) -> bool:
        return self.registry.is_configured(target)

    def status(self) -> IntegrationStatus:
        def channel(target: str) -> ChannelStatus:
            identity = self.registry.get(target)
            if identity is None:
                return ChannelStatus(configured=False)
            return ChannelStatus(
                configured=True,
                subject=identity.subject,
                expires_at=identity.expires_at,
                expired=identity.expired,
            )

        return IntegrationStatus(
            nacional=channel(NACIONAL),
            municipal=channel(MUNICIPAL),
            ambiente=self.nacional.ambiente,
        )

    # --- Queries ---

    def source(self, name: str) -> InvoiceSource:
        match name:
            case "nacional":
                return self.nacional
            case "municipal":
                return self.municipal
        raise ValueError(f"Sistema invalido: '{name}'. Use nacional ou municipal.")

    def query_national(
        self,
        cnpj_prestador: str,
        cnpj_tomador: str | None = None,
        inicio: str | date | None = None,
        fim: str | date | None = None,
        cancel: threading.Event | None = None,
    ) -> list[InvoiceRecord]:
        if cnpj_tomador:
            return self.nacional.query_by_customer(cnpj_prestador, cnpj_tomador, inicio, fim, cancel)
        d_inicio, d_fim = default_period(inicio, fim)
        return self.nacional.query_by_period(cnpj_prestador, d_inicio, d_fim, cancel)

    def query_municipal(
        self,
        cnpj_prestador: str,
        inscricao_municipal: str | None = None,
        cnpj_tomador: str | None = None,
        inicio: str | date | None = None,
        fim: str | date | None = None,
        cancel: threading.Event | None = None,
    ) -> list[InvoiceRecord]:
        d_inicio, d_fim = default_period(inicio, fim)
        return self.municipal.query_by_period(
            cnpj_prestador,
            inscricao_municipal or self.municipal.inscricao_municipal,
            d_inicio,
            d_fim,
            cnpj_tomador=cnpj_tomador,
            cancel=cancel,
        )

    def fetch_rendered_document(self, source: str, *key: str) -> bytes:
        """Download a PDF.

        ``nacional`` takes the access key; ``municipal`` takes
        (cnpj_prestador, inscricao_municipal, numero, codigo_verificacao).
        """
        match source:
            case "nacional":
                (chave,) = key
                return self.nacional.fetch_rendered_document(chave)
            case "municipal":
                cnpj, inscricao, numero, codigo = key
                return self.municipal.fetch_rendered_document(cnpj, inscricao, numero, codigo)
        raise ValueError(f"Sistema invalido: '{source}'. Use nacional ou municipal.")

    def store_rendered_document(self, ref: str, source: str, *key: str) -> str:
        """Download a PDF and write it to the artifact store under *ref*."""
        if self.artifact_store is None:
            raise RuntimeError("Artifact store nao configurado")
        content = self.fetch_rendered_document(source, *key)
        return self.artifact_store.write_artifact(ref, content)

    # --- Downloads & audit ---

    def _audit(self, event: str, actor: str | None, subject: str | None, detail: dict) -> None:
        if self.audit_log is None:
            return
        try:
            self.audit_log.record(event, actor, subject, detail)
        except Exception:
            logger.warning("Failed to record audit event %s", event, exc_info=True)

    def record_download(
        self,
        actor: str | None,
        nfse_id: str,
        cnpj_tomador: str,
        nome_tomador: str | None,
        data_emissao: str | None,
        tipo: str = "pdf",
    ) -> str:
        """Audit a single-file download and return its standard file name."""
        if tipo not in ("pdf", "xml"):
            raise ValueError("Tipo deve ser 'pdf' ou 'xml'")
        filename = download_filename(cnpj_tomador, nome_tomador, data_emissao, tipo)
        self._audit(
            AUDIT_DOWNLOAD,
            actor,
            cnpj_tomador,
            {"nfse_id": nfse_id, "tipo": tipo, "arquivo": filename, "nome_tomador": nome_tomador},
        )
        return filename

    def build_batch_archive(
        self,
        items: Iterable[BatchItem],
        actor: str | None = None,
        cancel: threading.Event | None = None,
    ) -> tuple[IO[bytes], ArchiveReport]:
        """Build a ZIP of stored PDFs and return (readable stream at offset 0, report).

        If the build fails or is cancelled the partial stream is discarded.
        """
        if self.artifact_store is None:
            raise RuntimeError("Artifact store nao configurado")
        builder = BatchArchiveBuilder(self.artifact_store, self.max_concurrent_reads)
        output = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
        try:
            report = builder.build(items, output, cancel)
        except BaseException:
            output.close()
            raise
        output.seek(0)
        self._audit(AUDIT_BATCH_DOWNLOAD, actor, report.cnpj_tomador, report.audit_detail())
        return output, report

    def export_batch_archive(
        self,
        items: Iterable[BatchItem],
        path: Path,
        actor: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ArchiveReport:
        """Like build_batch_archive, but writes the ZIP to *path* on success only."""
        if self.artifact_store is None:
            raise RuntimeError("Artifact store nao configurado")
        builder = BatchArchiveBuilder(self.artifact_store, self.max_concurrent_reads)
        report = builder.build_to_path(items, path, cancel)
        self._audit(AUDIT_BATCH_DOWNLOAD, actor, report.cnpj_tomador, report.audit_detail())
        return report
