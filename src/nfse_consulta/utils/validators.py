from __future__ import annotations

import re
from datetime import date, datetime

from nfse_consulta.utils.formatters import only_digits


def validate_date(value: str | date) -> date:
    """Validate an ISO date (YYYY-MM-DD) and return it as a ``date``.

    Raises ValueError for invalid dates.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f"Data invalida: '{value}'. Use YYYY-MM-DD.") from None


def validate_period(inicio: str | date, fim: str | date) -> tuple[date, date]:
    """Validate a closed date range; start must not be after end."""
    d_inicio = validate_date(inicio)
    d_fim = validate_date(fim)
    if d_inicio > d_fim:
        raise ValueError(f"Periodo invalido: {d_inicio} posterior a {d_fim}")
    return d_inicio, d_fim


def validate_cnpj(value: str) -> str:
    """Normalize a CNPJ/CPF to digits only; 14 (CNPJ) or 11 (CPF) digits."""
    digits = only_digits(value)
    if len(digits) not in (11, 14):
        raise ValueError(f"CNPJ/CPF invalido: '{value}'")
    return digits


def validate_access_key(value: str) -> str:
    """Validate an NFS-e access key: exactly 50 alphanumeric characters."""
    if not re.fullmatch(r"[A-Za-z0-9]{50}", value):
        raise ValueError(
            "Chave de acesso: deve ter exatamente 50 caracteres alfanuméricos"
        )
    return value
