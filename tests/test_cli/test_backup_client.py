"""Tests for the backup CLI client."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any
from unittest.mock import patch

import httpx
import pytest

from cli.backup_client import (
    CONFIG_FILE,
    BackupClient,
    load_config,
    main,
    validate_server_url,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

_STATUS = {
    "state": "idle",
    "is_connected": True,
    "is_enabled": True,
    "last_sync": None,
    "error": None,
    "error_kind": None,
    "target": "/srv/backup",
}


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> BackupClient:
    return BackupClient("http://localhost:8000", transport=httpx.MockTransport(handler))


def _serve(handler: Callable[[httpx.Request], httpx.Response]) -> Any:
    """Route clients created by ``main`` through a mock transport."""
    real = BackupClient
    return patch(
        "cli.backup_client.BackupClient",
        side_effect=lambda url: real(url, transport=httpx.MockTransport(handler)),
    )


class TestValidateServerUrl:
    def test_rejects_insecure_http_for_remote_hosts(self) -> None:
        with pytest.raises(ValueError, match="HTTPS is required"):
            validate_server_url("http://example.com")

    def test_allows_localhost_and_strips_slash(self) -> None:
        assert validate_server_url(" http://127.0.0.1:8000/ ") == "http://127.0.0.1:8000"

    def test_allows_insecure_http_when_flag_enabled(self) -> None:
        assert (
            validate_server_url("http://nas.local:8000", allow_insecure_http=True)
            == "http://nas.local:8000"
        )

    def test_rejects_missing_scheme(self) -> None:
        with pytest.raises(ValueError, match="scheme and host"):
            validate_server_url("localhost:8000")


class TestBackupClient:
    def test_sync_sends_project_scope(self) -> None:
        seen: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/backup/sync"
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True, "status": _STATUS})

        with _client(handler) as client:
            assert client.sync("p1")["ok"] is True
        assert seen == [{"project_id": "p1"}]

    def test_import_selected_form_fields(self, tmp_path: Path) -> None:
        archive = tmp_path / "export.zip"
        archive.write_bytes(b"PK\x05\x06" + b"\x00" * 18)

        def handler(request: httpx.Request) -> httpx.Response:
            body = request.content
            assert request.headers["content-type"].startswith("multipart/form-data")
            assert b'name="project_ids"' in body
            assert b'name="policy"' in body
            assert b'filename="export.zip"' in body
            return httpx.Response(200, json={"imported": ["p1"], "skipped": [], "errors": []})

        with _client(handler) as client:
            result = client.import_selected(["p1"], "create-new", archive)
        assert result["imported"] == ["p1"]

    def test_export_archive_uses_server_filename(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["format"] == "files-only"
            return httpx.Response(
                200,
                content=b"zipdata",
                headers={
                    "content-disposition": 'attachment; filename="../lyrevault-x.zip"',
                },
            )

        with _client(handler) as client:
            target = client.export_archive(tmp_path, format="files-only")
        assert target == tmp_path / "lyrevault-x.zip"
        assert target.read_bytes() == b"zipdata"

    def test_http_errors_raise(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, json={"detail": "Backup folder not connected"})

        with _client(handler) as client, pytest.raises(httpx.HTTPStatusError):
            client.scan()


class TestMain:
    def test_init_writes_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        main(["--dir", str(tmp_path), "--server", "https://vault.example.com/", "init"])
        assert load_config(tmp_path) == {"server": "https://vault.example.com"}
        assert CONFIG_FILE in capsys.readouterr().out

    def test_init_rejects_insecure_url(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--dir", str(tmp_path), "--server", "http://example.com", "init"])
        assert exc_info.value.code == 1
        assert not (tmp_path / CONFIG_FILE).exists()

    def test_no_command_prints_help(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_status(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/backup/status":
                return httpx.Response(200, json=_STATUS)
            return httpx.Response(
                200,
                json=[{"id": "a1", "type": "backup_complete", "message": "Export completed"}],
            )

        with _serve(handler):
            main(["--dir", str(tmp_path), "status"])
        out = capsys.readouterr().out
        assert "State:     idle" in out
        assert "[backup_complete] Export completed" in out

    def test_rejected_sync_exits_nonzero(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"ok": False, "status": {**_STATUS, "error": "Export failed"}}
            )

        with _serve(handler), pytest.raises(SystemExit) as exc_info:
            main(["--dir", str(tmp_path), "sync"])
        assert exc_info.value.code == 1
        assert "Error: Export failed" in capsys.readouterr().out

    def test_server_error_detail_is_reported(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"detail": "Archive holds no backup manifest"})

        archive = tmp_path / "files.zip"
        archive.write_bytes(b"zip")
        with _serve(handler), pytest.raises(SystemExit) as exc_info:
            main(["--dir", str(tmp_path), "scan", "--archive", str(archive)])
        assert exc_info.value.code == 1
        assert "Archive holds no backup manifest (404)" in capsys.readouterr().out

    def test_import_selected_reports_failures(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "imported": ["p1"],
                    "skipped": [],
                    "errors": [{"project_id": "p2", "error": "Project not found in source"}],
                },
            )

        with _serve(handler), pytest.raises(SystemExit) as exc_info:
            main(["--dir", str(tmp_path), "import-selected", "p1", "p2"])
        assert exc_info.value.code == 1
        out = capsys.readouterr().out
        assert "Imported: p1" in out
        assert "FAILED:   p2 (Project not found in source)" in out

    def test_unreachable_server(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with _serve(handler), pytest.raises(SystemExit):
            main(["--dir", str(tmp_path), "enable"])
        assert "cannot reach http://localhost:8000" in capsys.readouterr().out
