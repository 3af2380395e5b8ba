from __future__ import annotations

import json

import pytest

from nfse_consulta.services.exceptions import ArtifactNotFoundError
from nfse_consulta.utils.storage import JsonlAuditLog, LocalArtifactStore, LocalConfigStore


class TestLocalArtifactStore:
    def test_write_then_read(self, tmp_path):
        store = LocalArtifactStore(tmp_path)
        location = store.write_artifact("2025/03/nf-1.pdf", b"%PDF")
        assert location.endswith("nf-1.pdf")
        with store.read_artifact("2025/03/nf-1.pdf") as fh:
            assert fh.read() == b"%PDF"

    def test_missing(self, tmp_path):
        with pytest.raises(ArtifactNotFoundError) as exc_info:
            LocalArtifactStore(tmp_path).read_artifact("nope.pdf")
        assert exc_info.value.ref == "nope.pdf"

    def test_directory_is_not_an_artifact(self, tmp_path):
        (tmp_path / "dir").mkdir()
        with pytest.raises(ArtifactNotFoundError):
            LocalArtifactStore(tmp_path).read_artifact("dir")

    def test_path_escape_rejected(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        (tmp_path / "secret.pdf").write_bytes(b"x")
        with pytest.raises(ArtifactNotFoundError):
            LocalArtifactStore(root).read_artifact("../secret.pdf")

    def test_overwrite(self, tmp_path):
        store = LocalArtifactStore(tmp_path)
        store.write_artifact("a.pdf", b"old")
        store.write_artifact("a.pdf", b"new")
        with store.read_artifact("a.pdf") as fh:
            assert fh.read() == b"new"
        assert not (tmp_path / "a.pdf.tmp").exists()


class TestJsonlAuditLog:
    def test_record_and_read(self, tmp_path):
        log = JsonlAuditLog(tmp_path / "audit.jsonl")
        log.record("download", "ana", "22222222000200", {"nfse_id": "1"})
        log.record("lote", "bia", None, {"notas": 2})
        entries = log.entries()
        assert [e["event"] for e in entries] == ["download", "lote"]
        assert entries[0]["detail"] == {"nfse_id": "1"}
        assert "at" in entries[0]

    def test_filter_by_actor(self, tmp_path):
        log = JsonlAuditLog(tmp_path / "audit.jsonl")
        log.record("download", "ana", "x", {})
        log.record("download", "bia", "y", {})
        assert [e["subject"] for e in log.entries(actor="bia")] == ["y"]

    def test_empty(self, tmp_path):
        assert JsonlAuditLog(tmp_path / "audit.jsonl").entries() == []

    def test_unreadable_line_skipped(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        path.write_text('{"event": "download"}\nnot json\n')
        assert len(JsonlAuditLog(path).entries()) == 1


class TestLocalConfigStore:
    def test_binary_roundtrip(self, tmp_path):
        store = LocalConfigStore(tmp_path / "cfg.json")
        store.save("certificado_nacional", binary_value=b"\x00\x01pfx")
        entry = store.get("certificado_nacional")
        assert entry == {"value": None, "binary_value": b"\x00\x01pfx"}

    def test_text_value(self, tmp_path):
        store = LocalConfigStore(tmp_path / "cfg.json")
        store.save("ambiente", "homologacao")
        assert store.get("ambiente")["value"] == "homologacao"
        assert store.get("ambiente")["binary_value"] is None

    def test_missing_key(self, tmp_path):
        assert LocalConfigStore(tmp_path / "cfg.json").get("x") is None

    def test_stored_as_json(self, tmp_path):
        path = tmp_path / "cfg.json"
        LocalConfigStore(path).save("k", "v")
        data = json.loads(path.read_text())
        assert data["k"]["value"] == "v"
        assert "updated_at" in data["k"]

    def test_delete(self, tmp_path):
        store = LocalConfigStore(tmp_path / "cfg.json")
        store.save("k", "v")
        assert store.delete("k") is True
        assert store.delete("k") is False
        assert store.get("k") is None

    def test_corrupt_file_backed_up(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("{broken")
        store = LocalConfigStore(path)
        store.save("k", "v")
        assert store.get("k")["value"] == "v"
        assert list(tmp_path.glob("cfg.json.corrupt.*"))
