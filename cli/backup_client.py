"""CLI client for the LyreVault backup API."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

CONFIG_FILE = ".lyrevault-backup.json"
DEFAULT_SERVER_URL = "http://localhost:8000"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, str]:
    """Load client config from file."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, str] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save client config to file."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(detail, list):
        return "; ".join(f"{d.get('field')}: {d.get('message')}" for d in detail)
    return str(detail)


class BackupClient:
    """Client for the backup endpoints of a LyreVault server."""

    def __init__(self, server_url: str, transport: httpx.BaseTransport | None = None) -> None:
        self.server_url = server_url.rstrip("/")
        self.client = httpx.Client(base_url=self.server_url, timeout=60.0, transport=transport)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> BackupClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _json(self, response: httpx.Response) -> Any:
        response.raise_for_status()
        return response.json()

    def status(self) -> dict[str, Any]:
        result: dict[str, Any] = self._json(self.client.get("/api/backup/status"))
        return result

    def activities(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._json(self.client.get("/api/backup/activities"))
        return result

    def connect(self, directory: str | None = None) -> dict[str, Any]:
        """Grant a backup directory on the server host."""
        result: dict[str, Any] = self._json(
            self.client.post("/api/backup/access", json={"directory": directory})
        )
        return result

    def set_enabled(self, enabled: bool) -> dict[str, Any]:
        result: dict[str, Any] = self._json(
            self.client.post("/api/backup/enabled", json={"enabled": enabled})
        )
        return result

    def sync(self, project_id: str | None = None) -> dict[str, Any]:
        result: dict[str, Any] = self._json(
            self.client.post("/api/backup/sync", json={"project_id": project_id})
        )
        return result

    def import_changes(self, project_id: str | None = None) -> dict[str, Any]:
        result: dict[str, Any] = self._json(
            self.client.post("/api/backup/import", json={"project_id": project_id})
        )
        return result

    def scan(self, archive: Path | None = None) -> list[dict[str, Any]]:
        """List importable projects of a local archive, or of the connected directory."""
        files = {"archive": (archive.name, archive.read_bytes())} if archive else None
        data = self._json(self.client.post("/api/backup/scan", files=files))
        projects: list[dict[str, Any]] = data["projects"]
        return projects

    def import_selected(
        self, project_ids: list[str], policy: str = "skip", archive: Path | None = None
    ) -> dict[str, Any]:
        files = {"archive": (archive.name, archive.read_bytes())} if archive else None
        result: dict[str, Any] = self._json(
            self.client.post(
                "/api/backup/import-selected",
                data={"project_ids": project_ids, "policy": policy},
                files=files,
            )
        )
        return result

    def export_archive(
        self,
        output_dir: Path,
        *,
        include_account: bool = True,
        project_ids: list[str] | None = None,
        format: str = "unified",
    ) -> Path:
        """Download an export archive into ``output_dir`` and return its path."""
        response = self.client.post(
            "/api/backup/archive",
            json={
                "include_account": include_account,
                "project_ids": project_ids or None,
                "format": format,
            },
        )
        response.raise_for_status()
        filename = "lyrevault-export.zip"
        disposition = response.headers.get("content-disposition", "")
        if "filename=" in disposition:
            filename = Path(disposition.split("filename=", 1)[1].strip('"')).name
        target = output_dir / filename
        target.write_bytes(response.content)
        return target


def _print_status(status: dict[str, Any]) -> None:
    print("Backup Status:")
    print(f"  State:     {status.get('state')}")
    print(f"  Connected: {status.get('is_connected')}")
    print(f"  Enabled:   {status.get('is_enabled')}")
    print(f"  Target:    {status.get('target') or '-'}")
    print(f"  Last sync: {status.get('last_sync') or 'never'}")
    if status.get("error"):
        print(f"  Error:     {status['error']} ({status.get('error_kind')})")


def _report_operation(result: dict[str, Any], success: str) -> int:
    if result.get("ok"):
        print(success)
        return 0
    error = result.get("status", {}).get("error") or "rejected (see activity log)"
    print(f"Error: {error}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lyrevault-backup",
        description="Manage backups of a LyreVault server",
    )
    parser.add_argument("--dir", "-d", default=".", help="Config directory (default: current)")
    parser.add_argument("--server", "-s", help="Server URL")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Save the server URL to the config file")
    subparsers.add_parser("status", help="Show backup status and recent activity")

    connect = subparsers.add_parser("connect", help="Connect a backup directory")
    connect.add_argument("directory", nargs="?", help="Directory on the server host")

    subparsers.add_parser("enable", help="Enable backups")
    subparsers.add_parser("disable", help="Disable backups")

    sync = subparsers.add_parser("sync", help="Back up projects to the connected directory")
    sync.add_argument("--project", help="Back up a single project")

    imp = subparsers.add_parser("import", help="Import the backup in the connected directory")
    imp.add_argument("--project", help="Import a single project")

    scan = subparsers.add_parser("scan", help="List projects that can be imported")
    scan.add_argument("--archive", type=Path, help="Scan a local archive instead")

    selected = subparsers.add_parser("import-selected", help="Import selected projects")
    selected.add_argument("project_ids", nargs="+", help="Project ids to import")
    selected.add_argument(
        "--policy", choices=["skip", "overwrite", "create-new"], default="skip"
    )
    selected.add_argument("--archive", type=Path, help="Import from a local archive")

    export = subparsers.add_parser("export-archive", help="Download an export archive")
    export.add_argument("--output", "-o", type=Path, default=Path("."), help="Output directory")
    export.add_argument("--project", action="append", dest="projects", help="Project to export")
    export.add_argument("--no-account", action="store_true", help="Leave out the account")
    export.add_argument("--format", choices=["unified", "files-only"], default="unified")
    return parser


def _run(client: BackupClient, args: argparse.Namespace) -> int:
    if args.command == "status":
        _print_status(client.status())
        activities = client.activities()
        if activities:
            print("Recent activity:")
            for activity in activities[-10:]:
                print(f"  [{activity['type']}] {activity['message']}")
        return 0
    if args.command == "connect":
        return _report_operation(client.connect(args.directory), "Backup directory connected.")
    if args.command == "enable":
        return _report_operation(client.set_enabled(True), "Backups enabled.")
    if args.command == "disable":
        return _report_operation(client.set_enabled(False), "Backups disabled.")
    if args.command == "sync":
        return _report_operation(client.sync(args.project), "Backup complete.")
    if args.command == "import":
        return _report_operation(client.import_changes(args.project), "Import complete.")
    if args.command == "scan":
        projects = client.scan(args.archive)
        if not projects:
            print("No importable projects found.")
        for project in projects:
            print(f"  {project['id']}  {project['name']}  ({project['source']})")
        return 0
    if args.command == "import-selected":
        result = client.import_selected(args.project_ids, args.policy, args.archive)
        for pid in result.get("imported", []):
            print(f"  Imported: {pid}")
        for pid in result.get("skipped", []):
            print(f"  Skipped:  {pid}")
        for error in result.get("errors", []):
            print(f"  FAILED:   {error['project_id']} ({error['error']})")
        return 1 if result.get("errors") else 0
    if args.command == "export-archive":
        target = client.export_archive(
            args.output,
            include_account=not args.no_account,
            project_ids=args.projects,
            format=args.format,
        )
        print(f"Saved export archive to {target}")
        return 0
    return 2


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    config_dir = Path(args.dir).resolve()

    if args.command is None:
        parser.print_help()
        sys.exit(2)

    if args.command == "init":
        try:
            server_url = validate_server_url(
                args.server or DEFAULT_SERVER_URL, args.allow_insecure_http
            )
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        save_config(config_dir, {"server": server_url})
        print(f"Initialized backup client config in {config_dir / CONFIG_FILE}")
        return

    config = load_config(config_dir)
    configured_server_url = args.server or config.get("server") or DEFAULT_SERVER_URL
    try:
        server_url = validate_server_url(configured_server_url, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    with BackupClient(server_url) as client:
        try:
            code = _run(client, args)
        except httpx.HTTPStatusError as exc:
            print(f"Error: {_error_detail(exc.response)} ({exc.response.status_code})")
            sys.exit(1)
        except httpx.HTTPError as exc:
            print(f"Error: cannot reach {server_url}: {exc}")
            sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
