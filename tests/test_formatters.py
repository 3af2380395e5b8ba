from __future__ import annotations

from datetime import date
from decimal import Decimal

from nfse_consulta.utils.formatters import (
    download_filename,
    format_brl,
    format_cnpj,
    only_digits,
    slug_name,
)


class TestOnlyDigits:
    def test_cnpj(self):
        assert only_digits("12.345.678/0001-99") == "12345678000199"

    def test_none(self):
        assert only_digits(None) == ""


class TestFormatBrl:
    def test_thousands(self):
        assert format_brl(Decimal("19684.93")) == "R$ 19.684,93"

    def test_small(self):
        assert format_brl("5") == "R$ 5,00"


class TestFormatCnpj:
    def test_format(self):
        assert format_cnpj("12345678000199") == "12.345.678/0001-99"

    def test_cpf_passthrough(self):
        assert format_cnpj("12345678901") == "12345678901"


class TestSlugName:
    def test_strips_punctuation(self):
        assert slug_name("Acme & Filhos Ltda.") == "Acme_Filhos_Ltda"

    def test_accents_dropped(self):
        assert slug_name("São João") == "So_Joo"

    def test_truncates(self):
        assert len(slug_name("x" * 50)) == 30

    def test_default(self):
        assert slug_name(None) == "Tomador"


class TestDownloadFilename:
    def test_full(self):
        assert (
            download_filename("22.222.222/0002-00", "Cliente Bom", "2025-03-01")
            == "22222222000200_Cliente_Bom_2025-03-01_NFS-e.pdf"
        )

    def test_defaults_today(self):
        name = download_filename("22222222000200", None, None, "xml")
        assert name == f"22222222000200_Tomador_{date.today().isoformat()}_NFS-e.xml"
