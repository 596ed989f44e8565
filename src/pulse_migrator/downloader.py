"""
Pulse Migrator Driver Bundle Downloader

Downloads and unpacks the database driver bundle (pg_dump, psql, ...).

Source hierarchy:
  1. Release API: the active release for the configured channel names a manifest URL
  2. Hard-coded manifest URL, when the release API is unreachable
  3. GitHub latest release asset, when the manifest path fails
"""

import hashlib
import os
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional, Tuple, Callable, Dict, Any

import requests

from pulse_migrator.config import MigratorConfig
from pulse_migrator.exceptions import DownloadError, ExtractError
from pulse_migrator.logging_config import get_logger


GITHUB_API_BASE = "https://api.github.com"
USER_AGENT = "PulseMigrator/1.0"
CHUNK_SIZE = 8192

logger = get_logger("downloader")


class BundleDownloader:
    """Fetches a driver bundle for one platform into a target directory."""

    def __init__(
        self,
        config: Optional[MigratorConfig] = None,
        log: Optional[Callable[[str], None]] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize downloader.

        Args:
            config: Migrator settings (channel, release API, fallbacks)
            log: Receives progress lines, e.g. EventBus.log
            session: Optional requests session (tests inject one)
        """
        self.config = config or MigratorConfig()
        self._log = log
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.resolved_version: Optional[str] = None

    def log(self, message: str):
        logger.info(message)
        if self._log:
            self._log(message)

    def _github_headers(self) -> dict:
        """Build GitHub headers with optional auth."""
        headers = {"Accept": "application/vnd.github+json"}
        token = os.environ.get("GITHUB_TOKEN")
        if token:
            headers["Authorization"] = f"token {token}"
        return headers

    def resolve_active_release(self) -> Tuple[str, str]:
        """Ask the release API for the active manifest of our channel.

        Returns:
            (manifest_url, version)
        """
        base = self.config.release_api_url.rstrip("/")
        if not base:
            raise DownloadError("No release API configured")

        self.log(f"Syncing with channel '{self.config.channel}'...")
        key = self.config.release_api_key
        try:
            resp = self.session.get(
                f"{base}/rest/v1/pulse_releases",
                params={
                    "channel_slug": f"eq.{self.config.channel}",
                    "is_active": "eq.true",
                    "select": "manifest_url,version,rollout_message",
                    "limit": 1,
                },
                headers={"apikey": key, "Authorization": f"Bearer {key}"},
                timeout=15,
            )
        except requests.RequestException as e:
            raise DownloadError(f"Network error: {e}", url=base)

        if resp.status_code != 200:
            raise DownloadError(f"Release API unreachable ({resp.status_code}). Is the API key valid?", url=base)

        try:
            releases = resp.json()
        except ValueError as e:
            raise DownloadError(f"Release API returned invalid JSON: {e}", url=base)

        if not releases:
            raise DownloadError("No active release found for this channel.", url=base)

        active = releases[0]
        manifest_url = active.get("manifest_url")
        if not manifest_url:
            raise DownloadError("Invalid manifest URL in release", url=base)
        version = active.get("version") or "unknown"
        self.log(f"Resolved release v{version} [{manifest_url}]")
        return manifest_url, version

    def fetch_manifest(self, url: str) -> Dict[str, Any]:
        try:
            resp = self.session.get(url, timeout=15)
        except requests.RequestException as e:
            raise DownloadError(f"Manifest unreachable: {e}", url=url)
        if resp.status_code != 200:
            raise DownloadError(f"Manifest unreachable ({resp.status_code})", url=url)
        try:
            manifest = resp.json()
        except ValueError as e:
            raise DownloadError(f"Manifest is not valid JSON: {e}", url=url)
        if not isinstance(manifest, dict) or "packages" not in manifest:
            raise DownloadError("Manifest has no packages", url=url)
        return manifest

    @staticmethod
    def manifest_version(manifest: Dict[str, Any], channel: str = "stable") -> str:
        channels = manifest.get("channels")
        if channels:
            return (channels.get(channel) or channels.get("stable") or {}).get("version", "unknown")
        return "legacy"

    def _install_from_manifest(self, platform: str, target_dir: Path) -> Path:
        try:
            manifest_url, version = self.resolve_active_release()
        except DownloadError as e:
            self.log(f"Release sync failed: {e.message}")
            self.log("Falling back to default manifest...")
            manifest_url, version = self.config.manifest_fallback_url, None

        self.log("Acquiring manifest...")
        manifest = self.fetch_manifest(manifest_url)
        version = version or self.manifest_version(manifest, self.config.channel)
        self.log(f"Manifest acquired: {manifest.get('tool', 'drivers')} v{version}")

        rollout = manifest.get("pulse_rollout")
        if rollout:
            self.log(f"ROLLOUT: [{str(rollout.get('type', 'info')).upper()}] {rollout.get('title', '')}")
        if manifest.get("message_of_the_day"):
            self.log(manifest["message_of_the_day"])

        package = manifest["packages"].get(platform)
        if not package or not package.get("url"):
            raise DownloadError(f"No package found for {platform} in manifest", url=manifest_url)

        size = package.get("size_mb")
        if size:
            self.log(f"Downloading driver bundle: {float(size):.2f} MB")
        self._fetch_and_unpack(package["url"], target_dir, checksum=package.get("checksum"))
        self.resolved_version = version
        return target_dir

    def get_latest_github_asset(self, platform: str) -> Tuple[str, str, int]:
        """Find the release asset for platform.

        Returns:
            (download_url, tag_name, size_bytes)
        """
        url = f"{GITHUB_API_BASE}/repos/{self.config.github_repo}/releases/latest"
        self.log(f"Checking releases (fallback): {url}")
        try:
            resp = self.session.get(url, timeout=15, headers=self._github_headers())
        except requests.RequestException as e:
            raise DownloadError(f"GitHub API error: {e}", url=url)
        if resp.status_code != 200:
            raise DownloadError(f"GitHub API error: {resp.status_code}", url=url)

        release = resp.json()
        tag = release.get("tag_name", "unknown")
        self.log(f"Latest release: {tag}")

        # Manifest keys look like 'win32-x64'; asset names usually say 'windows'
        os_name = platform.split("-")[0]
        aliases = {os_name, "windows"} if os_name == "win32" else {os_name}
        for asset in release.get("assets", []):
            name = asset.get("name", "").lower()
            if name.endswith(".zip") and any(alias in name for alias in aliases):
                return asset["browser_download_url"], tag, int(asset.get("size", 0))

        raise DownloadError(f"No {platform} compatible asset found in release {tag}", url=url)

    def _install_from_github(self, platform: str, target_dir: Path) -> Path:
        url, tag, size = self.get_latest_github_asset(platform)
        self.log(f"Found asset ({size / 1024 / 1024:.2f} MB)")
        self._fetch_and_unpack(url, target_dir)
        self.resolved_version = tag.lstrip("v")
        return target_dir

    def download_and_extract(self, platform: str, target_dir: Path) -> Path:
        """Download the bundle for platform and unpack it into target_dir.

        Returns:
            target_dir

        Raises:
            DownloadError: no source delivered the bundle
            ExtractError: the archive was corrupt or unsafe
        """
        target_dir = Path(target_dir)
        try:
            return self._install_from_manifest(platform, target_dir)
        except ExtractError:
            raise
        except DownloadError as e:
            self.log(f"Manifest unavailable: {e.message}. Trying GitHub fallback...")

        return self._install_from_github(platform, target_dir)

    def _fetch_and_unpack(self, url: str, target_dir: Path, checksum: Optional[str] = None):
        with tempfile.TemporaryDirectory() as tmp_dir:
            archive = Path(tmp_dir) / "bundle.zip"
            self.log("Initiating transfer...")
            self._download(url, archive, checksum)
            self.log("Extracting payload...")
            extract_zip(archive, target_dir)
        self.log("Driver bundle unpacked.")

    def _download(self, url: str, dest: Path, checksum: Optional[str] = None):
        digest = hashlib.sha256()
        try:
            resp = self.session.get(url, stream=True, timeout=120, allow_redirects=True)
            resp.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
                    digest.update(chunk)
        except requests.RequestException as e:
            raise DownloadError(f"Download failed: {e}", url=url)

        if checksum and digest.hexdigest().lower() != checksum.lower():
            raise DownloadError(
                "Checksum mismatch for driver bundle",
                url=url,
                details=f"expected {checksum}, got {digest.hexdigest()}",
            )


def extract_zip(archive: Path, target_dir: Path) -> int:
    """Extract archive into target_dir, refusing entries that escape it.

    Returns:
        Number of files extracted
    """
    target_dir.mkdir(parents=True, exist_ok=True)
    root = target_dir.resolve()
    count = 0
    try:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                parts = PurePosixPath(info.filename.replace("\\", "/")).parts
                if info.filename.startswith(("/", "\\")) or ".." in parts:
                    raise ExtractError(f"Unsafe path in archive: {info.filename}", archive=str(archive))
                outpath = (target_dir / Path(*parts)).resolve() if parts else root
                if root not in outpath.parents and outpath != root:
                    raise ExtractError(f"Unsafe path in archive: {info.filename}", archive=str(archive))

                if info.is_dir():
                    outpath.mkdir(parents=True, exist_ok=True)
                    continue

                outpath.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(outpath, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                # Keep unix exec bits for the binaries
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    os.chmod(outpath, mode)
                count += 1
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise ExtractError(f"Extraction failed: {e}", archive=str(archive))
    return count
