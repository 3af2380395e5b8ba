from __future__ import annotations

import re
from datetime import date
from decimal import Decimal

_NON_DIGITS = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def only_digits(value: str | None) -> str:
    """Strip formatting punctuation from a CNPJ/CPF ("12.345.678/0001-99" -> "12345678000199")."""
    return _NON_DIGITS.sub("", value or "")


def format_brl(value: Decimal | str) -> str:
    """Format a numeric value as R$ X.XXX,XX."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def format_cnpj(value: str) -> str:
    """Format a 14-digit CNPJ as XX.XXX.XXX/XXXX-XX; other lengths pass through."""
    d = only_digits(value)
    if len(d) != 14:
        return value
    return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"


def slug_name(name: str | None, max_len: int = 30) -> str:
    """Reduce a customer name to a file-name-safe token.

    Drops everything but ASCII letters, digits and whitespace, collapses
    whitespace runs into "_" and truncates to *max_len*.
    """
    cleaned = _NON_ALNUM.sub("", name or "Tomador")
    return _WHITESPACE.sub("_", cleaned)[:max_len]


def download_filename(
    cnpj_tomador: str,
    nome_tomador: str | None,
    data_emissao: str | None,
    ext: str = "pdf",
) -> str:
    """Standard download name: ``{cnpj}_{name}_{date}_NFS-e.{ext}``."""
    dia = data_emissao or date.today().isoformat()
    return f"{only_digits(cnpj_tomador)}_{slug_name(nome_tomador)}_{dia}_NFS-e.{ext}"
