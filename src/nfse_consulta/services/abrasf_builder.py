from __future__ import annotations

from datetime import date

from lxml import etree

from nfse_consulta.config import ABRASF_NS, MUNICIPAL_ENDPOINTS, SOAP_ENV_NS
from nfse_consulta.utils.formatters import only_digits

NSMAP = {None: ABRASF_NS}
VERSAO_DADOS = "1.00"


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, tag)
    if text is not None:
        el.text = text
    return el


def _to_xml(el: etree._Element) -> str:
    return etree.tostring(el, xml_declaration=True, encoding="utf-8").decode("utf-8")


def build_cabecalho() -> str:
    """ABRASF message header sent in nfseCabecMsg."""
    cab = etree.Element("cabecalho", nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    cab.set("versao", VERSAO_DADOS)
    _sub(cab, "versaoDados", VERSAO_DADOS)
    return _to_xml(cab)


def build_consulta_nfse(
    cnpj_prestador: str,
    inscricao_municipal: str,
    inicio: date,
    fim: date,
    cnpj_tomador: str | None = None,
    numero_nfse: str | None = None,
) -> str:
    """Build the ConsultarNfseEnvio document sent in nfseDadosMsg."""
    envio = etree.Element("ConsultarNfseEnvio", nsmap=NSMAP)  # type: ignore[arg-type]

    prestador = _sub(envio, "Prestador")
    _sub(prestador, "Cnpj", only_digits(cnpj_prestador))
    _sub(prestador, "InscricaoMunicipal", inscricao_municipal)

    if numero_nfse:
        _sub(envio, "NumeroNfse", numero_nfse)

    periodo = _sub(envio, "PeriodoEmissao")
    _sub(periodo, "DataInicial", inicio.isoformat())
    _sub(periodo, "DataFinal", fim.isoformat())

    if cnpj_tomador:
        tomador = _sub(envio, "Tomador")
        cpf_cnpj = _sub(tomador, "CpfCnpj")
        digits = only_digits(cnpj_tomador)
        _sub(cpf_cnpj, "Cpf" if len(digits) == 11 else "Cnpj", digits)

    return _to_xml(envio)


def build_soap_envelope(operation: str, cabecalho: str, dados: str) -> bytes:
    """Wrap header and payload documents as escaped strings in a SOAP 1.1 call."""
    service_ns = MUNICIPAL_ENDPOINTS["soap_ns"]
    envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"soap": SOAP_ENV_NS})
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    request = etree.SubElement(body, f"{{{service_ns}}}{operation}Request", nsmap={None: service_ns})  # type: ignore[dict-item]
    _sub(request, f"{{{service_ns}}}nfseCabecMsg", cabecalho)
    _sub(request, f"{{{service_ns}}}nfseDadosMsg", dados)
    return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")
