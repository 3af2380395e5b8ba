"""Municipal portal client (ABRASF web service, Recife)."""

from __future__ import annotations

import logging
import threading
from datetime import date
from urllib.parse import urlencode

import requests
from lxml import etree

from nfse_consulta.config import MUNICIPAL_ENDPOINTS, MUNICIPAL_TIMEOUT
from nfse_consulta.models.invoice import MUNICIPAL, InvoiceRecord, parse_valor, unique_by_key
from nfse_consulta.services.abrasf_builder import (
    build_cabecalho,
    build_consulta_nfse,
    build_soap_envelope,
)
from nfse_consulta.services.exceptions import (
    NotAvailableError,
    OperationCancelled,
    ProtocolError,
    TransportError,
)
from nfse_consulta.services.identity import CertificateRegistry
from nfse_consulta.services.sources import default_period
from nfse_consulta.utils.validators import validate_period

logger = logging.getLogger(__name__)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


def _xpath_for(path: str) -> str:
    steps = "/".join(f"*[local-name()='{step}']" for step in path.split("/"))
    return f"./{steps}"


def _find(el: etree._Element | None, *paths: str) -> etree._Element | None:
    """First element matching any slash-separated local-name path, ignoring namespaces."""
    if el is None:
        return None
    for path in paths:
        found = el.xpath(_xpath_for(path))
        if found:
            return found[0]
    return None


def _text(el: etree._Element | None, *paths: str) -> str:
    """Text of the first non-empty match among *paths*, or ""."""
    if el is None:
        return ""
    for path in paths:
        for found in el.xpath(_xpath_for(path)):
            if found.text and found.text.strip():
                return found.text.strip()
    return ""


def _descendant(el: etree._Element, name: str) -> etree._Element | None:
    found = el.xpath(f".//*[local-name()='{name}']")
    return found[0] if found else None


def _parse_xml(data: bytes | str) -> etree._Element:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    try:
        return etree.fromstring(raw.strip(), _PARSER)
    except etree.XMLSyntaxError as exc:
        raise ProtocolError(f"Resposta municipal ilegivel: {exc}") from exc


def _unwrap_resposta(body: bytes | str) -> etree._Element | None:
    """Locate ConsultarNfseResposta, inline or escaped inside the SOAP result string."""
    root = _parse_xml(body)
    resposta = _descendant(root, "ConsultarNfseResposta")
    if resposta is not None:
        return resposta
    for wrapper in ("outputXML", "ConsultarNfseResult", "return"):
        holder = _descendant(root, wrapper)
        if holder is not None and holder.text and holder.text.strip():
            inner = _parse_xml(holder.text)
            if etree.QName(inner).localname == "ConsultarNfseResposta":
                return inner
            return _descendant(inner, "ConsultarNfseResposta")
    return None


def viewer_link(numero: str, codigo_verificacao: str, inscricao_municipal: str) -> str:
    """Public viewer URL for a municipal NFS-e. No network access."""
    query = urlencode({"nfse": numero, "cv": codigo_verificacao, "im": inscricao_municipal})
    return f"{MUNICIPAL_ENDPOINTS['viewer']}?{query}"


def _log_mensagens(lista: etree._Element) -> int:
    mensagens = lista.xpath("./*[local-name()='MensagemRetorno']")
    for msg in mensagens:
        logger.warning(
            "NFS-e municipal rejeitou a consulta: Erro %s: %s %s",
            _text(msg, "Codigo"),
            _text(msg, "Mensagem"),
            _text(msg, "Correcao"),
        )
    return len(mensagens)


def _record_from_inf(inf: etree._Element, inscricao_municipal: str) -> InvoiceRecord:
    numero = _text(inf, "Numero")
    codigo = _text(inf, "CodigoVerificacao")
    servico = _find(inf, "Servico", "DeclaracaoPrestacaoServico/InfDeclaracaoPrestacaoServico/Servico")
    tomador = _find(
        inf,
        "TomadorServico",
        "DeclaracaoPrestacaoServico/InfDeclaracaoPrestacaoServico/Tomador",
    )
    prestador = _find(inf, "PrestadorServico")
    im_prestador = (
        _text(prestador, "IdentificacaoPrestador/InscricaoMunicipal") or inscricao_municipal
    )

    return InvoiceRecord(
        chave_acesso=inf.get("Id") or (f"{im_prestador}-{numero}" if numero else ""),
        numero=numero,
        data_emissao=_text(inf, "DataEmissao"),
        valor=parse_valor(
            _text(servico, "Valores/ValorServicos") or _text(inf, "ValoresNfse/ValorLiquidoNfse")
        ),
        cnpj_prestador=_text(
            prestador,
            "IdentificacaoPrestador/Cnpj",
            "IdentificacaoPrestador/CpfCnpj/Cnpj",
            "IdentificacaoPrestador/CpfCnpj/Cpf",
        ),
        razao_social_prestador=_text(prestador, "RazaoSocial"),
        cnpj_tomador=_text(
            tomador,
            "IdentificacaoTomador/CpfCnpj/Cnpj",
            "IdentificacaoTomador/CpfCnpj/Cpf",
        ),
        razao_social_tomador=_text(tomador, "RazaoSocial"),
        descricao_servico=_text(servico, "Discriminacao"),
        municipio=_text(inf, "OrgaoGerador/CodigoMunicipio") or _text(servico, "CodigoMunicipio"),
        origem=MUNICIPAL,
        competencia=_text(inf, "Competencia"),
        codigo_verificacao=codigo,
        link_visualizacao=viewer_link(numero, codigo, im_prestador),
        xml=etree.tostring(inf, encoding="unicode"),
    )


def parse_response(body: bytes | str, inscricao_municipal: str = "") -> list[InvoiceRecord]:
    """Parse a ConsultarNfse SOAP response into records.

    A non-empty ListaMensagemRetorno is a business rejection: it is logged
    and yields no records. Raises ProtocolError only for unparseable XML.
    """
    resposta = _unwrap_resposta(body)
    if resposta is None:
        logger.warning("Resposta municipal sem ConsultarNfseResposta")
        return []

    lista_msg = _find(resposta, "ListaMensagemRetorno")
    if lista_msg is not None and _log_mensagens(lista_msg):
        return []

    notas: list[InvoiceRecord] = []
    for comp in resposta.xpath(_xpath_for("ListaNfse/CompNfse")):
        inf = _find(comp, "Nfse/InfNfse")
        if inf is None:
            logger.warning("CompNfse sem InfNfse ignorado")
            continue
        notas.append(_record_from_inf(inf, inscricao_municipal))
    return unique_by_key(notas)


class MunicipalQueryClient:
    """Client for the municipal ABRASF service, authenticated with the municipal certificate."""

    source = MUNICIPAL

    def __init__(self, registry: CertificateRegistry, inscricao_municipal: str = "") -> None:
        self._registry = registry
        self.inscricao_municipal = inscricao_municipal

    def _call(self, operation: str, dados: str) -> bytes:
        identity = self._registry.require(MUNICIPAL)
        envelope = build_soap_envelope(operation, build_cabecalho(), dados)
        try:
            resp = identity.session.post(
                MUNICIPAL_ENDPOINTS["soap"],
                data=envelope,
                headers={
                    "Content-Type": "text/xml; charset=utf-8",
                    "SOAPAction": MUNICIPAL_ENDPOINTS["soap_action"],
                },
                timeout=MUNICIPAL_TIMEOUT,
            )
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Erro NFS-e municipal {operation}: {exc}", target=MUNICIPAL) from exc
        if not resp.ok:
            body = resp.text[:500] if resp.text else ""
            raise TransportError(
                f"Erro NFS-e municipal {operation} ({resp.status_code}): {body}",
                target=MUNICIPAL,
                status_code=resp.status_code,
            )
        return resp.content

    def query_by_period(
        self,
        cnpj_prestador: str,
        inscricao_municipal: str,
        inicio: str | date,
        fim: str | date,
        cnpj_tomador: str | None = None,
        numero_nfse: str | None = None,
        cancel: threading.Event | None = None,
    ) -> list[InvoiceRecord]:
        """Query invoices issued by the provider within [inicio, fim]."""
        d_inicio, d_fim = validate_period(inicio, fim)
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("Consulta municipal cancelada")
        dados = build_consulta_nfse(
            cnpj_prestador, inscricao_municipal, d_inicio, d_fim, cnpj_tomador, numero_nfse
        )
        body = self._call("ConsultarNfse", dados)
        return parse_response(body, inscricao_municipal)

    def query_by_customer(
        self,
        cnpj_prestador: str,
        cnpj_tomador: str,
        inicio: str | date | None = None,
        fim: str | date | None = None,
        cancel: threading.Event | None = None,
        *,
        inscricao_municipal: str | None = None,
    ) -> list[InvoiceRecord]:
        """Customer query; defaults to the trailing 30 days."""
        d_inicio, d_fim = default_period(inicio, fim)
        return self.query_by_period(
            cnpj_prestador,
            inscricao_municipal or self.inscricao_municipal,
            d_inicio,
            d_fim,
            cnpj_tomador=cnpj_tomador,
            cancel=cancel,
        )

    def fetch_rendered_document(
        self,
        cnpj_prestador: str,
        inscricao_municipal: str,
        numero: str,
        codigo_verificacao: str,
    ) -> bytes:
        """Download the public rendering of an NFS-e. No certificate required."""
        url = viewer_link(numero, codigo_verificacao, inscricao_municipal)
        try:
            resp = requests.get(
                url,
                headers={"User-Agent": "Mozilla/5.0", "Accept": "application/pdf"},
                timeout=MUNICIPAL_TIMEOUT,
            )
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Erro ao baixar PDF: {exc}", target=MUNICIPAL) from exc
        if resp.status_code == 404 or (resp.ok and not resp.content):
            raise NotAvailableError(f"PDF nao disponivel para NFS-e {numero}")
        if not resp.ok:
            raise TransportError(
                f"Erro ao baixar PDF: {resp.status_code}",
                target=MUNICIPAL,
                status_code=resp.status_code,
            )
        logger.debug("PDF municipal %s baixado para prestador %s", numero, cnpj_prestador)
        return resp.content

    viewer_link = staticmethod(viewer_link)
