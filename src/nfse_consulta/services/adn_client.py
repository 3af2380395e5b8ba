"""National portal (ADN) client: DF-e distribution, point lookup and DANFSE."""

from __future__ import annotations

import base64
import enum
import gzip
import logging
import threading
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date
from typing import Any

import requests

from nfse_consulta.config import ADN_TIMEOUT, ENDPOINTS, PAGE_SIZE, get_ambiente
from nfse_consulta.models.invoice import NACIONAL, InvoiceRecord, parse_valor, unique_by_key
from nfse_consulta.services.exceptions import (
    NotAvailableError,
    OperationCancelled,
    ProtocolError,
    TransportError,
)
from nfse_consulta.services.identity import CertificateIdentity, CertificateRegistry
from nfse_consulta.services.sources import default_period
from nfse_consulta.utils.formatters import only_digits
from nfse_consulta.utils.validators import validate_access_key, validate_cnpj, validate_period
from nfse_consulta.utils.xml_fields import extract

logger = logging.getLogger(__name__)

INITIAL_CURSOR = "0"
# The cursor for the next page is this prefix of the last document's access key.
CURSOR_KEY_LENGTH = 15


def _check_response(resp: Any, action: str) -> None:
    if not resp.ok:
        body = resp.text[:500] if resp.text else ""
        raise TransportError(
            f"Erro ADN {action} ({resp.status_code}): {body}",
            target=NACIONAL,
            status_code=resp.status_code,
        )


def decode_payload(b64_gzip: str) -> str:
    """Decode a gzip+base64 payload into XML text."""
    return gzip.decompress(base64.b64decode(b64_gzip)).decode("utf-8")


def parse_nfse_xml(xml: str, chave_acesso: str = "") -> InvoiceRecord:
    """Map an NFS-e XML document onto an InvoiceRecord.

    Missing tags become empty strings (or zero for the value); this never
    raises on a well-formed-enough document.
    """
    return InvoiceRecord(
        chave_acesso=chave_acesso or _chave_from_xml(xml),
        numero=extract(xml, "nNFSe", "NumeroNfse", "Numero"),
        data_emissao=extract(xml, "dhEmi", "dhProc", "DataEmissao"),
        valor=parse_valor(extract(xml, "vLiq", "vServ", "ValorServicos")),
        cnpj_prestador=extract(xml, "CNPJ", "CPF", within="emit")
        or extract(xml, "CNPJ", "CPF", within="prest")
        or extract(xml, "CNPJ", "Cnpj"),
        razao_social_prestador=extract(xml, "xNome", within="emit")
        or extract(xml, "xNome", "RazaoSocial"),
        cnpj_tomador=extract(xml, "CNPJ", "CPF", "NIF", within="toma"),
        razao_social_tomador=extract(xml, "xNome", within="toma"),
        descricao_servico=extract(xml, "xDescServ", "xServ", "Discriminacao"),
        municipio=extract(xml, "cLocIncid", "cMunFG", "cLocEmi", "CodigoMunicipio"),
        origem=NACIONAL,
        competencia=extract(xml, "dCompet", "Competencia"),
        xml=xml,
    )


def _chave_from_xml(xml: str) -> str:
    # infNFSe Id="NFS<50-char key>"
    marker = 'Id="NFS'
    start = xml.find(marker)
    if start < 0:
        return ""
    start += len(marker)
    end = xml.find('"', start)
    return xml[start:end] if end > start else ""


def _doc_key(doc: dict) -> str:
    return str(doc.get("chNFSe") or doc.get("ChaveAcesso") or "")


def _doc_payload(doc: dict) -> str:
    return str(doc.get("docZipB64") or doc.get("ArquivoXml") or "")


def decode_document(doc: dict) -> InvoiceRecord | None:
    """Decode one distributed document; logs and returns None if undecodable."""
    chave = _doc_key(doc)
    try:
        xml = decode_payload(_doc_payload(doc))
    except (ValueError, OSError, EOFError, zlib.error) as exc:
        logger.warning("Documento DF-e ignorado (%s): %s", chave or "sem chave", exc)
        return None
    return parse_nfse_xml(xml, chave)


class PageState(enum.Enum):
    FETCHING = "fetching"
    FILTERING = "filtering"
    EXHAUSTED = "exhausted"


@dataclass
class DistributionCursor:
    """Cursor walk over the DF-e distribution feed.

    The walk is sequential: each page's cursor comes from the previous page's
    last document. ``advance`` is the only place the terminal transition is
    decided.
    """

    value: str = INITIAL_CURSOR
    state: PageState = PageState.FETCHING
    pages: int = 0

    def advance(self, docs: list[dict]) -> None:
        self.pages += 1
        next_value = _doc_key(docs[-1])[:CURSOR_KEY_LENGTH] if docs else ""
        if not docs or len(docs) < PAGE_SIZE or not next_value or next_value == self.value:
            self.state = PageState.EXHAUSTED
            return
        self.value = next_value
        self.state = PageState.FETCHING


def _in_period(record: InvoiceRecord, inicio: date, fim: date) -> bool:
    dia = record.dia_emissao
    return dia is not None and inicio <= dia <= fim


class NationalDistributionClient:
    """Client for the national NFS-e portal, authenticated with the national certificate."""

    source = NACIONAL

    def __init__(self, registry: CertificateRegistry, ambiente: str | None = None) -> None:
        self._registry = registry
        self.ambiente = ambiente or get_ambiente()

    @property
    def _adn(self) -> str:
        return ENDPOINTS[self.ambiente]["adn"]

    @property
    def _sefin(self) -> str:
        return ENDPOINTS[self.ambiente]["sefin"]

    def _get(
        self,
        identity: CertificateIdentity,
        url: str,
        action: str,
        *,
        params: dict | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        try:
            return identity.session.get(
                url,
                params=params,
                headers={"Accept": accept},
                timeout=ADN_TIMEOUT,
            )
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Erro ADN {action}: {exc}", target=NACIONAL) from exc

    def fetch_page(
        self,
        cnpj_interessado: str,
        cursor: str,
        identity: CertificateIdentity | None = None,
    ) -> list[dict]:
        """Fetch one page of distributed documents starting after *cursor*.

        Raises NotConfiguredError without a national certificate,
        TransportError on network/status failures and ProtocolError when the
        body is not JSON. A 404 is an empty page.
        """
        identity = identity or self._registry.require(NACIONAL)
        resp = self._get(
            identity,
            f"{self._adn}/contribuintes/DFe",
            "list_dfe",
            params={"ultNSU": cursor, "cnpjConsulta": validate_cnpj(cnpj_interessado)},
        )
        if resp.status_code == 404:
            return []
        _check_response(resp, "list_dfe")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError(f"Resposta ADN ilegivel (cursor {cursor})") from exc
        if not isinstance(data, dict):
            raise ProtocolError(f"Resposta ADN inesperada (cursor {cursor})")
        docs = data.get("docZip") or data.get("LoteDFe") or []
        return [d for d in docs if isinstance(d, dict)]

    def iter_pages(
        self,
        cnpj_interessado: str,
        cancel: threading.Event | None = None,
    ) -> Iterator[list[dict]]:
        """Yield raw pages in cursor order until the feed is exhausted."""
        identity = self._registry.require(NACIONAL)
        cursor = DistributionCursor()
        while cursor.state is PageState.FETCHING:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("Consulta nacional cancelada")
            docs = self.fetch_page(cnpj_interessado, cursor.value, identity)
            cursor.state = PageState.FILTERING
            yield docs
            cursor.advance(docs)
        logger.debug("Distribuicao DF-e esgotada apos %d pagina(s)", cursor.pages)

    def query_by_period(
        self,
        cnpj_prestador: str,
        inicio: str | date,
        fim: str | date,
        cancel: threading.Event | None = None,
    ) -> list[InvoiceRecord]:
        """Return every distributed NFS-e issued within [inicio, fim] (inclusive).

        Documents are filtered page by page in the order the portal sends
        them; no sorting is applied.
        """
        d_inicio, d_fim = validate_period(inicio, fim)
        notas: list[InvoiceRecord] = []
        for docs in self.iter_pages(cnpj_prestador, cancel):
            for doc in docs:
                record = decode_document(doc)
                if record is not None and _in_period(record, d_inicio, d_fim):
                    notas.append(record)
        return unique_by_key(notas)

    def query_by_customer(
        self,
        cnpj_prestador: str,
        cnpj_tomador: str,
        inicio: str | date | None = None,
        fim: str | date | None = None,
        cancel: threading.Event | None = None,
    ) -> list[InvoiceRecord]:
        """Period query narrowed to one customer; defaults to the trailing 30 days."""
        d_inicio, d_fim = default_period(inicio, fim)
        alvo = only_digits(cnpj_tomador)
        return [
            nota
            for nota in self.query_by_period(cnpj_prestador, d_inicio, d_fim, cancel)
            if only_digits(nota.cnpj_tomador) == alvo
        ]

    def fetch_by_access_key(self, chave_acesso: str) -> InvoiceRecord | None:
        """Look up one NFS-e by access key; None when the portal does not know it."""
        validate_access_key(chave_acesso)
        identity = self._registry.require(NACIONAL)
        resp = self._get(identity, f"{self._sefin}/{chave_acesso}", "consulta")
        if resp.status_code == 404:
            return None
        _check_response(resp, "consulta")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError(f"Resposta ADN ilegivel para chave {chave_acesso[:20]}…") from exc
        payload = data.get("nfseXmlGZipB64") if isinstance(data, dict) else None
        if not payload:
            return None
        try:
            xml = decode_payload(payload)
        except (ValueError, OSError, EOFError, zlib.error) as exc:
            raise ProtocolError(f"XML da NFS-e ilegivel: {exc}") from exc
        return parse_nfse_xml(xml, chave_acesso)

    def fetch_rendered_document(self, chave_acesso: str) -> bytes:
        """Download the DANFSE PDF for an access key.

        Raises NotAvailableError when the portal has no rendering for it.
        """
        validate_access_key(chave_acesso)
        identity = self._registry.require(NACIONAL)
        resp = self._get(
            identity, f"{self._adn}/danfse/{chave_acesso}", "download", accept="application/pdf"
        )
        if resp.status_code == 404:
            raise NotAvailableError(f"PDF nao disponivel para chave {chave_acesso[:20]}…")
        _check_response(resp, "download")
        if not resp.content:
            raise NotAvailableError(f"PDF nao disponivel para chave {chave_acesso[:20]}…")
        return resp.content

    def check_connectivity(self, cnpj_interessado: str) -> None:
        """Fetch the first distribution page; raises on any failure."""
        self.fetch_page(cnpj_interessado, INITIAL_CURSOR)
