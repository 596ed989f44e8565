"""
Pulse Migrator Stage Operations

The external work behind each stage: pg_dump for the database, REST
exports for storage, function configuration and auth users. Each
operation takes (config, out_dir, token) and returns its artifact path.
"""

import json
import os
import subprocess
import threading
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit, urlunsplit

import requests

from pulse_migrator.cancellation import CancellationToken
from pulse_migrator.config import MigratorConfig
from pulse_migrator.exceptions import ToolError, NotImplementedStageError
from pulse_migrator.logging_config import get_logger
from pulse_migrator.models import OperationConfig, RunKind, StageName


StageOperation = Callable[[OperationConfig, Path, CancellationToken], Path]

PAGE_SIZE = 100
STDERR_TAIL_LINES = 20
KILL_GRACE_SECONDS = 5.0
REQUEST_TIMEOUT = 60

logger = get_logger("stages")


def tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    """Last `lines` lines of text."""
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])


def contained_path(root: Path, *parts: str, tool: str) -> Path:
    """Join server-supplied names under root, refusing anything that escapes it."""
    base = root.resolve()
    path = base.joinpath(*parts).resolve()
    if base not in path.parents:
        raise ToolError(
            f"Unsafe path from server: {'/'.join(parts)}", tool=tool, stderr_tail=str(path)
        )
    return path


def split_password(database_url: str) -> Tuple[str, Optional[str]]:
    """Strip the password from a postgres URL.

    Returns:
        (url without password, password or None)
    """
    parts = urlsplit(database_url)
    if not parts.password:
        return database_url, None
    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    netloc = f"{user}@{hostinfo}" if user else hostinfo
    return urlunsplit(parts._replace(netloc=netloc)), unquote(parts.password)


def run_tool(
    args: List[str],
    token: CancellationToken,
    tool: str,
    env: Optional[dict] = None,
    kill_grace: float = KILL_GRACE_SECONDS,
) -> str:
    """Run a subprocess that dies with the token.

    On cancellation the process gets SIGTERM, then SIGKILL after kill_grace.

    Returns:
        Captured stdout

    Raises:
        OperationCancelled: the token fired while the tool ran
        ToolError: non-zero exit
    """
    token.raise_if_cancelled()
    try:
        proc = subprocess.Popen(
            args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, env=env
        )
    except OSError as e:
        raise ToolError(f"Could not start {tool}: {e}", tool=tool, exit_code=127, stderr_tail=str(e))

    def terminate():
        if proc.poll() is None:
            proc.terminate()
            killer = threading.Timer(kill_grace, lambda: proc.poll() is None and proc.kill())
            killer.daemon = True
            killer.start()

    unregister = token.on_cancel(terminate)
    try:
        stdout, stderr = proc.communicate()
    finally:
        unregister()

    token.raise_if_cancelled()
    if proc.returncode != 0:
        raise ToolError(
            f"{tool} exited with code {proc.returncode}",
            tool=tool,
            exit_code=proc.returncode,
            stderr_tail=tail(stderr),
        )
    return stdout


class BackupStages:
    """Stage operations for a backup, bound to the installed drivers."""

    def __init__(
        self,
        driver_manager=None,
        config: Optional[MigratorConfig] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.driver_manager = driver_manager
        self.config = config or MigratorConfig()
        self.session_factory = session_factory

    def operations(self) -> Dict[StageName, StageOperation]:
        return {
            StageName.DATABASE: lambda c, out, t: self.run_database_dump(
                c.database_url, c.source_key, out / "database.dump", t
            ),
            StageName.STORAGE: lambda c, out, t: self.run_storage_export(
                c.source_url, c.source_key, out / "storage", t
            ),
            StageName.FUNCTIONS: lambda c, out, t: self.run_functions_export(
                c.source_url, c.source_key, out / "functions", t, source_dir=c.functions_source
            ),
            StageName.AUTH: lambda c, out, t: self.run_auth_export(
                c.source_url, c.source_key, out / "auth", t
            ),
        }

    def _session(self, credential: str) -> requests.Session:
        session = self.session_factory()
        session.headers.update({
            "Authorization": f"Bearer {credential}",
            "apikey": credential,
        })
        return session

    def _request(
        self,
        session: requests.Session,
        method: str,
        url: str,
        token: CancellationToken,
        tool: str,
        **kwargs,
    ) -> requests.Response:
        token.raise_if_cancelled()
        kwargs.setdefault("timeout", REQUEST_TIMEOUT)
        try:
            resp = session.request(method, url, **kwargs)
        except requests.Timeout:
            raise ToolError(f"{tool}: request timed out", tool=tool, stderr_tail=url)
        except requests.RequestException as e:
            raise ToolError(f"{tool}: request failed", tool=tool, stderr_tail=str(e))
        if resp.status_code >= 400:
            raise ToolError(
                f"{tool}: {method} {url} returned {resp.status_code}",
                tool=tool,
                exit_code=resp.status_code,
                stderr_tail=tail(resp.text),
            )
        return resp

    def run_database_dump(
        self, database_url: str, credential: str, out_path: Path, token: CancellationToken
    ) -> Path:
        """Dump schema and data with pg_dump (custom format)."""
        if not database_url:
            raise ToolError(
                "No database connection string configured",
                tool="pg_dump",
                remediation="Pass --db-url or set PULSE_SOURCE_DB_URL",
            )
        if self.driver_manager is None:
            raise ToolError("No driver manager available to locate pg_dump", tool="pg_dump")

        pg_dump = self.driver_manager.resolve("pg_dump")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        # Keep the password out of argv
        dbname, password = split_password(database_url)
        env = None
        if password is not None:
            env = dict(os.environ, PGPASSWORD=password)
        args = [
            str(pg_dump),
            "--format=custom",
            "--no-owner",
            "--no-privileges",
            f"--file={out_path}",
            f"--dbname={dbname}",
        ]
        logger.debug("Running pg_dump into %s", out_path)
        run_tool(args, token, tool="pg_dump", env=env)
        return out_path

    def _list_objects(
        self, session, base: str, bucket_id: str, prefix: str, token: CancellationToken
    ) -> List[str]:
        """Object names under prefix, recursing into folders."""
        names = []
        offset = 0
        while True:
            resp = self._request(
                session, "POST", f"{base}/storage/v1/object/list/{bucket_id}", token, "storage",
                json={
                    "prefix": prefix,
                    "limit": PAGE_SIZE,
                    "offset": offset,
                    "sortBy": {"column": "name", "order": "asc"},
                },
            )
            page = resp.json()
            for entry in page:
                path = f"{prefix}/{entry['name']}" if prefix else entry["name"]
                if entry.get("id") is None:
                    # Folders have no id
                    names.extend(self._list_objects(session, base, bucket_id, path, token))
                else:
                    names.append(path)
            if len(page) < PAGE_SIZE:
                return names
            offset += PAGE_SIZE

    def run_storage_export(
        self, url: str, credential: str, out_dir: Path, token: CancellationToken
    ) -> Path:
        """Download every object of every bucket."""
        base = url.rstrip("/")
        out_dir.mkdir(parents=True, exist_ok=True)

        summary = []
        with self._session(credential) as session:
            buckets = self._request(session, "GET", f"{base}/storage/v1/bucket", token, "storage").json()
            for bucket in buckets:
                bucket_dir = contained_path(out_dir, bucket["id"], tool="storage")
                names = self._list_objects(session, base, bucket["id"], "", token)
                for name in names:
                    dest = contained_path(bucket_dir, name, tool="storage")
                    resp = self._request(
                        session, "GET", f"{base}/storage/v1/object/{bucket['id']}/{name}", token, "storage",
                        stream=True,
                    )
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    with open(dest, "wb") as f:
                        for chunk in resp.iter_content(chunk_size=65536):
                            token.raise_if_cancelled()
                            f.write(chunk)
                summary.append({
                    "id": bucket["id"],
                    "name": bucket.get("name", bucket["id"]),
                    "public": bucket.get("public", False),
                    "objects": len(names),
                })

        (out_dir / "buckets.json").write_text(json.dumps(summary, indent=2))
        return out_dir

    def run_functions_export(
        self,
        url: str,
        credential: str,
        out_dir: Path,
        token: CancellationToken,
        source_dir: Optional[Path] = None,
    ) -> Path:
        """Save function configurations, and zip local function source if given.

        Function code cannot be downloaded from the project, so the local
        source tree is the only way to keep it.
        """
        endpoint = self.config.functions_api_url or f"{url.rstrip('/')}/functions/v1"
        out_dir.mkdir(parents=True, exist_ok=True)

        with self._session(credential) as session:
            data = self._request(session, "GET", endpoint, token, "functions").json()
        functions = data.get("functions", []) if isinstance(data, dict) else data
        configs = [
            {
                "name": fn.get("name"),
                "slug": fn.get("slug"),
                "version": fn.get("version"),
                "status": fn.get("status"),
                "entrypoint": fn.get("entrypoint_path") or fn.get("entrypoint"),
                "verify_jwt": fn.get("verify_jwt", True),
            }
            for fn in functions
        ]
        (out_dir / "functions.json").write_text(json.dumps(configs, indent=2))

        if source_dir:
            source_dir = Path(source_dir)
            if not source_dir.is_dir():
                raise ToolError(
                    f"Local function path does not exist: {source_dir}", tool="functions"
                )
            with zipfile.ZipFile(out_dir / "source.zip", "w", zipfile.ZIP_DEFLATED) as zf:
                for path in sorted(source_dir.rglob("*")):
                    token.raise_if_cancelled()
                    if path.is_file():
                        zf.write(path, path.relative_to(source_dir).as_posix())
        return out_dir

    def run_auth_export(
        self, url: str, credential: str, out_dir: Path, token: CancellationToken
    ) -> Path:
        """Export auth users page by page."""
        base = url.rstrip("/")
        out_dir.mkdir(parents=True, exist_ok=True)

        users = []
        page = 1
        with self._session(credential) as session:
            while True:
                resp = self._request(
                    session, "GET", f"{base}/auth/v1/admin/users", token, "auth",
                    params={"page": page, "per_page": PAGE_SIZE},
                )
                data = resp.json()
                batch = data.get("users", []) if isinstance(data, dict) else data
                users.extend(batch)
                if len(batch) < PAGE_SIZE:
                    break
                page += 1

        out_path = out_dir / "users.json"
        out_path.write_text(json.dumps(users, indent=2))
        return out_path


def restore_operations() -> Dict[StageName, StageOperation]:
    """Restore stage bodies. None is designed yet; each fails fast."""

    def not_implemented(stage: StageName) -> StageOperation:
        def operation(config, out_dir, token):
            raise NotImplementedStageError(stage=stage, kind=RunKind.RESTORE)
        return operation

    return {stage: not_implemented(stage) for stage in StageName}
