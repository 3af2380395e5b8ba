from __future__ import annotations

import os
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "nfse-consulta"
KEYRING_SERVICE = APP_NAME


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (env var set in the
    shell, dev layout, an existing platformdirs directory).
    """
    from_env = os.environ.get("NFSE_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/nfse_consulta/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("NFSE_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("NFSE_DATA_DIR", "data", kind="data")


ABRASF_NS = "http://www.abrasf.org.br/nfse.xsd"
SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

ENDPOINTS = {
    "homologacao": {
        "sefin": "https://sefin.producaorestrita.nfse.gov.br/SefinNacional/nfse",
        "adn": "https://adn.producaorestrita.nfse.gov.br",
    },
    "producao": {
        "sefin": "https://sefin.nfse.gov.br/SefinNacional/nfse",
        "adn": "https://adn.nfse.gov.br",
    },
}

MUNICIPAL_ENDPOINTS = {
    "soap": "https://nfse.recife.pe.gov.br/WSNacional/nfse_v01.asmx",
    "soap_ns": "http://nfse.recife.pe.gov.br/",
    "soap_action": "http://nfse.recife.pe.gov.br/ConsultarNfse",
    "viewer": "https://nfse.recife.pe.gov.br/nfse.aspx",
}

AMBIENTES = ("homologacao", "producao")

ADN_TIMEOUT = 30
MUNICIPAL_TIMEOUT = 60

# Distribution pages hold at most this many documents; a shorter page is the last one.
PAGE_SIZE = 50
DEFAULT_WINDOW_DAYS = 30


def get_ambiente() -> str:
    """Return the national portal environment from NFSE_AMBIENTE (default producao)."""
    ambiente = os.environ.get("NFSE_AMBIENTE", "producao").strip().lower()
    if ambiente not in AMBIENTES:
        raise ValueError(f"NFSE_AMBIENTE invalido: '{ambiente}'. Use homologacao ou producao.")
    return ambiente


# --- Keyring helpers ---


def _keyring_username(target: str) -> str:
    return f"cert-pfx-password-{target}"


def _get_keyring_password(target: str) -> str | None:
    """Try to get a certificate password from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, _keyring_username(target))
    except Exception:
        return None


def _set_keyring_password(target: str, password: str) -> bool:
    """Store a certificate password in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, _keyring_username(target), password)
        return True
    except Exception:
        return False


def _delete_keyring_password(target: str) -> bool:
    """Remove a certificate password from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, _keyring_username(target))
        return True
    except Exception:
        return False


# --- Certificate access ---


def get_cert_path(target: str) -> str:
    """Return the .pfx path for *target* (nacional/municipal).

    Looks up CERT_PFX_PATH_<TARGET> first, then the shared CERT_PFX_PATH.
    Raises KeyError if neither is set.
    """
    specific = os.environ.get(f"CERT_PFX_PATH_{target.upper()}")
    if specific:
        return specific
    return os.environ["CERT_PFX_PATH"]


def get_cert_password(target: str) -> str:
    """Return the certificate password for *target*.

    Priority: 1) CERT_PFX_PASSWORD_<TARGET>, 2) CERT_PFX_PASSWORD, 3) OS keyring.
    Raises KeyError if no source has the password.
    """
    for var in (f"CERT_PFX_PASSWORD_{target.upper()}", "CERT_PFX_PASSWORD"):
        pwd = os.environ.get(var)
        if pwd is not None:
            return pwd
    pwd = _get_keyring_password(target)
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


def set_cert_password(target: str, password: str) -> bool:
    """Store the certificate password for *target* in the OS keyring.

    Returns False when no keyring backend accepts it.
    """
    return _set_keyring_password(target, password)


# --- YAML settings ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def load_settings() -> dict:
    """Load provider settings from config/settings.yaml (empty dict if absent)."""
    path = get_config_dir() / "settings.yaml"
    if not path.exists():
        return {}
    return load_yaml(path)


def save_settings(data: dict) -> Path:
    """Save provider settings to config/settings.yaml (atomic write)."""
    cfg = get_config_dir()
    cfg.mkdir(parents=True, exist_ok=True)
    path = cfg / "settings.yaml"
    tmp = path.with_suffix(".tmp")
    tmp.write_text(yaml.dump(data, default_flow_style=False, allow_unicode=True))
    os.replace(tmp, path)
    return path


def get_artifacts_dir() -> Path:
    """Return the directory holding stored PDF/XML artifacts."""
    return get_data_dir() / "artifacts"


def get_audit_log_path() -> Path:
    return get_data_dir() / "audit.jsonl"


def get_config_store_path() -> Path:
    return get_data_dir() / "system_config.json"
