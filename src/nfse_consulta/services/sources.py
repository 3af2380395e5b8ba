from __future__ import annotations

import threading
from datetime import date, timedelta
from typing import Protocol

from nfse_consulta.config import DEFAULT_WINDOW_DAYS
from nfse_consulta.models.invoice import InvoiceRecord
from nfse_consulta.utils.validators import validate_date


def default_period(
    inicio: str | date | None = None,
    fim: str | date | None = None,
    today: date | None = None,
) -> tuple[date, date]:
    """Fill a missing start/end with the trailing window ending today."""
    hoje = today or date.today()
    d_fim = validate_date(fim) if fim else hoje
    d_inicio = validate_date(inicio) if inicio else hoje - timedelta(days=DEFAULT_WINDOW_DAYS)
    return d_inicio, d_fim


class InvoiceSource(Protocol):
    """Anything that can list a provider's invoices for a customer."""

    source: str

    def query_by_customer(
        self,
        cnpj_prestador: str,
        cnpj_tomador: str,
        inicio: str | date | None = None,
        fim: str | date | None = None,
        cancel: threading.Event | None = None,
    ) -> list[InvoiceRecord]: ...
