from __future__ import annotations

from nfse_consulta.utils.xml_fields import extract, section

DOC = (
    '<ns2:NFSe xmlns:ns2="http://www.sped.fazenda.gov.br/nfse">'
    '<ns2:infNFSe Id="NFS123"><ns2:nNFSe>77</ns2:nNFSe>'
    "<ns2:emit><ns2:CNPJ>11111111000100</ns2:CNPJ><ns2:xNome>A &amp; B</ns2:xNome></ns2:emit>"
    "<ns2:toma><ns2:CPF>12345678901</ns2:CPF><ns2:xNome>Pessoa</ns2:xNome></ns2:toma>"
    "<ns2:vServ></ns2:vServ><ns2:vLiq>10.00</ns2:vLiq>"
    "</ns2:infNFSe></ns2:NFSe>"
)


class TestExtract:
    def test_prefixed_tag(self):
        assert extract(DOC, "nNFSe") == "77"

    def test_first_match_wins(self):
        assert extract(DOC, "xNome") == "A & B"

    def test_alternatives_in_order(self):
        assert extract(DOC, "nDFSe", "nNFSe") == "77"

    def test_empty_value_falls_through(self):
        assert extract(DOC, "vServ", "vLiq") == "10.00"

    def test_within_section(self):
        assert extract(DOC, "xNome", within="toma") == "Pessoa"
        assert extract(DOC, "CNPJ", "CPF", within="toma") == "12345678901"

    def test_missing_section(self):
        assert extract(DOC, "xNome", within="interm") == ""

    def test_missing_tag(self):
        assert extract(DOC, "dCompet") == ""

    def test_case_insensitive(self):
        assert extract("<Numero>5</Numero>", "numero") == "5"

    def test_empty_input(self):
        assert extract("", "x") == ""
        assert extract(None, "x") == ""  # type: ignore[arg-type]

    def test_does_not_match_longer_tag(self):
        assert extract("<CNPJPrest>1</CNPJPrest><CNPJ>2</CNPJ>", "CNPJ") == "2"


class TestSection:
    def test_inner_text(self):
        assert section("<a><b>1</b></a>", "a") == "<b>1</b>"

    def test_multiline(self):
        assert "<b>" in section("<a>\n  <b>1</b>\n</a>", "a")

    def test_absent(self):
        assert section("<a/>", "b") == ""
