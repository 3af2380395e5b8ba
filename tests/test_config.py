from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

import nfse_consulta.config as config_mod


class TestResolveDir:
    def test_from_env_var(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NFSE_CONFIG_DIR", str(tmp_path))
        result = config_mod._resolve_dir("NFSE_CONFIG_DIR", "config", kind="config")
        assert result == tmp_path

    def test_project_root_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("NFSE_CONFIG_DIR", raising=False)
        fake_root = tmp_path / "src" / "nfse_consulta"
        fake_root.mkdir(parents=True)
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        monkeypatch.setattr(config_mod, "__file__", str(fake_root / "config.py"))
        result = config_mod._resolve_dir("NFSE_CONFIG_DIR", "config", kind="config")
        assert result == config_dir

    def test_platformdirs_fallback_data(self, monkeypatch, tmp_path):
        monkeypatch.delenv("NFSE_DATA_DIR", raising=False)
        fake = tmp_path / "nowhere" / "src" / "nfse_consulta"
        fake.mkdir(parents=True)
        monkeypatch.setattr(config_mod, "__file__", str(fake / "config.py"))
        result = config_mod._resolve_dir("NFSE_DATA_DIR", "data", kind="data")
        assert "nfse-consulta" in str(result)

    def test_derived_paths(self, isolated_dirs):
        _, data_dir = isolated_dirs
        assert config_mod.get_artifacts_dir() == data_dir / "artifacts"
        assert config_mod.get_audit_log_path() == data_dir / "audit.jsonl"
        assert config_mod.get_config_store_path() == data_dir / "system_config.json"


class TestAmbiente:
    def test_default_producao(self, monkeypatch):
        monkeypatch.delenv("NFSE_AMBIENTE", raising=False)
        assert config_mod.get_ambiente() == "producao"

    def test_homologacao(self, monkeypatch):
        monkeypatch.setenv("NFSE_AMBIENTE", " Homologacao ")
        assert config_mod.get_ambiente() == "homologacao"

    def test_invalid(self, monkeypatch):
        monkeypatch.setenv("NFSE_AMBIENTE", "teste")
        with pytest.raises(ValueError, match="NFSE_AMBIENTE"):
            config_mod.get_ambiente()


class TestCertEnv:
    def test_target_specific_path(self, isolated_dirs, monkeypatch):
        monkeypatch.setenv("CERT_PFX_PATH", "/shared.pfx")
        monkeypatch.setenv("CERT_PFX_PATH_MUNICIPAL", "/recife.pfx")
        assert config_mod.get_cert_path("municipal") == "/recife.pfx"
        assert config_mod.get_cert_path("nacional") == "/shared.pfx"

    def test_path_missing(self, isolated_dirs):
        with pytest.raises(KeyError):
            config_mod.get_cert_path("nacional")

    def test_password_priority(self, isolated_dirs, monkeypatch):
        monkeypatch.setenv("CERT_PFX_PASSWORD", "shared")
        monkeypatch.setenv("CERT_PFX_PASSWORD_NACIONAL", "nacional")
        assert config_mod.get_cert_password("nacional") == "nacional"
        assert config_mod.get_cert_password("municipal") == "shared"

    def test_password_keyring_fallback(self, isolated_dirs):
        with patch.object(config_mod, "_get_keyring_password", return_value="from-keyring"):
            assert config_mod.get_cert_password("municipal") == "from-keyring"

    def test_password_missing(self, isolated_dirs):
        with pytest.raises(KeyError):
            config_mod.get_cert_password("nacional")

    def test_set_password_uses_keyring(self):
        with patch.object(config_mod, "_set_keyring_password", return_value=True) as mock_set:
            assert config_mod.set_cert_password("municipal", "pw") is True
        mock_set.assert_called_once_with("municipal", "pw")


class TestKeyringHelpers:
    def test_get_password_per_target(self):
        mock_kr = MagicMock()
        mock_kr.get_password.return_value = "stored-pw"
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._get_keyring_password("municipal") == "stored-pw"
        mock_kr.get_password.assert_called_once_with(
            config_mod.KEYRING_SERVICE, "cert-pfx-password-municipal"
        )

    def test_get_password_exception(self):
        mock_kr = MagicMock()
        mock_kr.get_password.side_effect = RuntimeError("no backend")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._get_keyring_password("nacional") is None

    def test_set_password(self):
        mock_kr = MagicMock()
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._set_keyring_password("nacional", "pw") is True
        mock_kr.set_password.assert_called_once_with(
            config_mod.KEYRING_SERVICE, "cert-pfx-password-nacional", "pw"
        )

    def test_set_password_failure(self):
        mock_kr = MagicMock()
        mock_kr.set_password.side_effect = RuntimeError("locked")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._set_keyring_password("nacional", "pw") is False

    def test_delete_password_failure(self):
        mock_kr = MagicMock()
        mock_kr.delete_password.side_effect = RuntimeError("not found")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._delete_keyring_password("nacional") is False


class TestSettings:
    def test_missing_is_empty(self, isolated_dirs):
        assert config_mod.load_settings() == {}

    def test_save_and_load(self, isolated_dirs):
        config_dir, _ = isolated_dirs
        path = config_mod.save_settings({"cnpj_prestador": "11111111000100", "inscricao_municipal": "1"})
        assert path == config_dir / "settings.yaml"
        assert config_mod.load_settings()["cnpj_prestador"] == "11111111000100"

    def test_load_yaml(self, tmp_path):
        f = tmp_path / "test.yaml"
        f.write_text(yaml.dump({"key": "value"}))
        assert config_mod.load_yaml(f) == {"key": "value"}

    def test_load_yaml_empty(self, tmp_path):
        f = tmp_path / "empty.yaml"
        f.write_text("")
        assert config_mod.load_yaml(f) == {}
