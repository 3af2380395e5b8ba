"""Streams stored invoice PDFs into one ZIP archive."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import zipfile
from collections import deque
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, BinaryIO

from nfse_consulta.services.exceptions import (
    ArtifactNotFoundError,
    EmptyBatchError,
    OperationCancelled,
)
from nfse_consulta.utils.formatters import download_filename
from nfse_consulta.utils.storage import ArtifactStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
# Artifacts larger than this spill from memory to a temp file while waiting their turn.
SPOOL_MAX_BYTES = 4 * 1024 * 1024
DEFAULT_CONCURRENT_READS = 4
ZIP_LEVEL = 5


@dataclass(frozen=True)
class BatchItem:
    id: str
    artifact_ref: str | None
    cnpj_tomador: str
    nome_tomador: str | None = None
    data_emissao: str | None = None

    @property
    def entry_name(self) -> str:
        return download_filename(self.cnpj_tomador, self.nome_tomador, self.data_emissao, "pdf")


@dataclass(frozen=True)
class ItemOutcome:
    item_id: str
    entry_name: str
    included: bool
    reason: str = ""


@dataclass
class ArchiveReport:
    """What went into an archive; enough to write the batch audit record."""

    archive_name: str
    created_at: datetime
    cnpj_tomador: str | None
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def included(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.included]

    @property
    def skipped(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if not o.included]

    @property
    def requested(self) -> int:
        return len(self.outcomes)

    @property
    def count(self) -> int:
        return len(self.included)

    def audit_detail(self) -> dict:
        return {
            "arquivo": self.archive_name,
            "notas": self.requested,
            "incluidas": self.count,
            "ignoradas": [{"id": o.item_id, "motivo": o.reason} for o in self.skipped],
            "descricao": f"{self.requested} notas",
        }


def archive_name(now: datetime | None = None) -> str:
    ts = (now or datetime.now(UTC)).strftime("%Y-%m-%dT%H-%M-%S")
    return f"Download_Lote_{ts}.zip"


def _unique_name(name: str, used: set[str]) -> str:
    """Return a non-conflicting entry name by appending _1, _2, etc. if needed."""
    if name not in used:
        used.add(name)
        return name
    stem, dot, suffix = name.rpartition(".")
    counter = 1
    candidate = f"{stem}_{counter}{dot}{suffix}"
    while candidate in used:
        counter += 1
        candidate = f"{stem}_{counter}{dot}{suffix}"
    used.add(candidate)
    return candidate


def _spool(store: ArtifactStore, item: BatchItem) -> IO[bytes]:
    if not item.artifact_ref:
        raise ArtifactNotFoundError(item.id)
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
    try:
        with store.read_artifact(item.artifact_ref) as src:
            shutil.copyfileobj(src, spool, CHUNK_SIZE)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return spool


class BatchArchiveBuilder:
    """Builds a ZIP of invoice PDFs from an artifact store.

    Reads run in a bounded thread pool; entries are appended strictly in the
    requested order, so at most ``max_concurrent_reads`` artifacts are held
    (spooled) at once. A missing or unreadable artifact is skipped and
    reported; the archive is still finalized.
    """

    def __init__(self, store: ArtifactStore, max_concurrent_reads: int = DEFAULT_CONCURRENT_READS) -> None:
        if max_concurrent_reads < 1:
            raise ValueError("max_concurrent_reads deve ser >= 1")
        self._store = store
        self.max_concurrent_reads = max_concurrent_reads

    def build(
        self,
        items: Iterable[BatchItem],
        output: BinaryIO,
        cancel: threading.Event | None = None,
    ) -> ArchiveReport:
        """Write the archive for *items* to *output* and report per-item outcomes.

        Raises EmptyBatchError before touching *output* when there is nothing
        to do, and OperationCancelled if *cancel* is set mid-way (the output is
        then incomplete and must be discarded).
        """
        items = list(items)
        if not items:
            raise EmptyBatchError("Selecione pelo menos uma nota")

        now = datetime.now(UTC)
        report = ArchiveReport(
            archive_name=archive_name(now),
            created_at=now,
            cnpj_tomador=items[0].cnpj_tomador or None,
        )
        used: set[str] = set()
        pending: deque[tuple[BatchItem, Future[IO[bytes]]]] = deque()
        queue = iter(items)

        pool = ThreadPoolExecutor(
            max_workers=self.max_concurrent_reads, thread_name_prefix="nfse-archive"
        )

        def submit_next() -> None:
            item = next(queue, None)
            if item is not None:
                pending.append((item, pool.submit(_spool, self._store, item)))

        try:
            with zipfile.ZipFile(
                output, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=ZIP_LEVEL
            ) as zf:
                for _ in range(self.max_concurrent_reads):
                    submit_next()

                while pending:
                    if cancel is not None and cancel.is_set():
                        raise OperationCancelled("Geracao do lote cancelada")
                    item, future = pending.popleft()
                    name = _unique_name(item.entry_name, used)
                    try:
                        spool = future.result()
                    except Exception as exc:
                        logger.warning("NFS-e %s ignorada no lote: %s", item.id, exc)
                        report.outcomes.append(ItemOutcome(item.id, name, False, str(exc)))
                        used.discard(name)
                    else:
                        with spool, zf.open(name, "w") as dest:
                            shutil.copyfileobj(spool, dest, CHUNK_SIZE)
                        report.outcomes.append(ItemOutcome(item.id, name, True))
                    submit_next()
        finally:
            pool.shutdown(wait=True, cancel_futures=True)
            for _, future in pending:
                if future.done() and not future.cancelled() and future.exception() is None:
                    future.result().close()

        logger.info(
            "Lote %s gerado: %d incluida(s), %d ignorada(s)",
            report.archive_name,
            report.count,
            len(report.skipped),
        )
        return report

    def build_to_path(
        self,
        items: Iterable[BatchItem],
        path: Path,
        cancel: threading.Event | None = None,
    ) -> ArchiveReport:
        """Build into *path*, which only appears once the archive is complete."""
        items = list(items)
        if not items:
            raise EmptyBatchError("Selecione pelo menos uma nota")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".partial")
        try:
            with tmp.open("wb") as fh:
                report = self.build(items, fh, cancel)
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        return report
