from __future__ import annotations

import base64
import gzip
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

PFX_PASSWORD = "testpass"


def gzip_b64(xml: str) -> str:
    """Encode an XML string the way the national portal ships documents."""
    return base64.b64encode(gzip.compress(xml.encode("utf-8"))).decode()


def nfse_xml(
    numero: str = "1",
    dh_emi: str = "2025-03-10T09:30:00-03:00",
    v_liq: str | None = "1500.00",
    cnpj_emit: str = "11111111000100",
    cnpj_toma: str | None = "22222222000200",
    nome_toma: str = "Cliente Exemplo LTDA",
    chave: str = "",
) -> str:
    toma = (
        f"<toma><CNPJ>{cnpj_toma}</CNPJ><xNome>{nome_toma}</xNome></toma>"
        if cnpj_toma is not None
        else ""
    )
    valores = f"<valores><vLiq>{v_liq}</vLiq></valores>" if v_liq is not None else ""
    id_attr = f' Id="NFS{chave}"' if chave else ""
    return (
        '<NFSe xmlns="http://www.sped.fazenda.gov.br/nfse">'
        f"<infNFSe{id_attr}><nNFSe>{numero}</nNFSe><dhProc>{dh_emi}</dhProc>"
        f"<emit><CNPJ>{cnpj_emit}</CNPJ><xNome>Prestador SA</xNome></emit>"
        f"{valores}"
        "<DPS><infDPS>"
        f"<dhEmi>{dh_emi}</dhEmi><dCompet>{dh_emi[:10]}</dCompet>"
        f"<prest><CNPJ>{cnpj_emit}</CNPJ></prest>{toma}"
        "<serv><cServ><xDescServ>Consultoria em TI</xDescServ></cServ></serv>"
        "</infDPS></DPS></infNFSe></NFSe>"
    )


def make_key(n: int) -> str:
    """A 50-char access key whose 15-char prefix is distinct per *n*."""
    return f"{n:015d}".ljust(50, "0")


def make_doc(n: int, **xml_kwargs) -> dict:
    return {"NSU": n, "chNFSe": make_key(n), "docZipB64": gzip_b64(nfse_xml(numero=str(n), **xml_kwargs))}


# --- Certificate / PFX fixtures ---


def _self_signed(cn: str, not_before: datetime, not_after: datetime):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return key, cert


def _to_pfx(key, cert, password: str) -> bytes:
    return pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )


@pytest.fixture(scope="session")
def test_key_and_cert():
    now = datetime.now(UTC)
    return _self_signed("Test Certificate", now - timedelta(days=1), now + timedelta(days=365))


@pytest.fixture(scope="session")
def other_key_and_cert():
    now = datetime.now(UTC)
    return _self_signed("Other Certificate", now - timedelta(days=1), now + timedelta(days=30))


@pytest.fixture(scope="session")
def pfx_bytes(test_key_and_cert) -> bytes:
    key, cert = test_key_and_cert
    return _to_pfx(key, cert, PFX_PASSWORD)


@pytest.fixture(scope="session")
def other_pfx_bytes(other_key_and_cert) -> bytes:
    key, cert = other_key_and_cert
    return _to_pfx(key, cert, PFX_PASSWORD)


@pytest.fixture
def test_pfx(tmp_path, pfx_bytes):
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_bytes)
    return str(pfx_path), PFX_PASSWORD


@pytest.fixture
def registry(pfx_bytes):
    """A registry with both targets configured from the test certificate."""
    from nfse_consulta.services.identity import CertificateRegistry

    reg = CertificateRegistry()
    assert reg.configure(pfx_bytes, PFX_PASSWORD, "nacional")
    assert reg.configure(pfx_bytes, PFX_PASSWORD, "municipal")
    return reg


# --- Config dir fixture ---


@pytest.fixture
def isolated_dirs(monkeypatch, tmp_path):
    """Point config/data dirs at tmp_path and clear certificate env vars."""
    config_dir = tmp_path / "config"
    data_dir = tmp_path / "data"
    monkeypatch.setenv("NFSE_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("NFSE_DATA_DIR", str(data_dir))
    for var in (
        "CERT_PFX_PATH",
        "CERT_PFX_PASSWORD",
        "CERT_PFX_PATH_NACIONAL",
        "CERT_PFX_PASSWORD_NACIONAL",
        "CERT_PFX_PATH_MUNICIPAL",
        "CERT_PFX_PASSWORD_MUNICIPAL",
        "NFSE_AMBIENTE",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("nfse_consulta.config._get_keyring_password", lambda target: None)
    return config_dir, data_dir
