from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

NACIONAL = "nacional"
MUNICIPAL = "municipal"


def parse_valor(raw: str | None) -> Decimal:
    """Parse a monetary field leniently.

    Accepts "1234.56", "1,234.56" and "1.234,56"; anything absent, malformed,
    negative or non-finite becomes ``Decimal("0")``. Never raises.
    """
    text = (raw or "").strip()
    if not text:
        return Decimal("0")
    # the rightmost separator is the decimal one
    if text.rfind(",") > text.rfind("."):
        text = text.replace(".", "").replace(",", ".")
    else:
        text = text.replace(",", "")
    try:
        value = Decimal(text)
    except InvalidOperation:
        return Decimal("0")
    if not value.is_finite() or value < 0:
        return Decimal("0")
    return value


@dataclass(frozen=True)
class InvoiceRecord:
    """Canonical NFS-e as returned by either portal."""

    chave_acesso: str
    numero: str
    data_emissao: str  # ISO date or datetime, as sent by the portal
    valor: Decimal
    cnpj_prestador: str
    razao_social_prestador: str
    cnpj_tomador: str
    razao_social_tomador: str
    descricao_servico: str
    municipio: str
    origem: str = NACIONAL
    competencia: str = ""
    codigo_verificacao: str = ""
    link_visualizacao: str = ""
    xml: str | None = None

    @property
    def dia_emissao(self) -> date | None:
        """Calendar date of issue, or None when the portal sent something unparseable."""
        try:
            return date.fromisoformat(self.data_emissao[:10])
        except (TypeError, ValueError):
            return None

    def to_dict(self, include_xml: bool = False) -> dict:
        data = {
            "chave_acesso": self.chave_acesso,
            "numero": self.numero,
            "data_emissao": self.data_emissao,
            "valor": f"{self.valor:.2f}",
            "cnpj_prestador": self.cnpj_prestador,
            "razao_social_prestador": self.razao_social_prestador,
            "cnpj_tomador": self.cnpj_tomador,
            "razao_social_tomador": self.razao_social_tomador,
            "descricao_servico": self.descricao_servico,
            "municipio": self.municipio,
            "origem": self.origem,
            "competencia": self.competencia,
            "codigo_verificacao": self.codigo_verificacao,
            "link_visualizacao": self.link_visualizacao,
        }
        if include_xml:
            data["xml"] = self.xml
        return data


def unique_by_key(records: Iterable[InvoiceRecord]) -> list[InvoiceRecord]:
    """Drop repeated access keys, keeping the first occurrence.

    Records without a key are always kept.
    """
    seen: set[str] = set()
    result: list[InvoiceRecord] = []
    for record in records:
        if record.chave_acesso:
            if record.chave_acesso in seen:
                continue
            seen.add(record.chave_acesso)
        result.append(record)
    return result
