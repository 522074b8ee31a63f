"""
Engine bundle provisioning.

Downloads the engine's zip distribution, extracts it into the
installation directory and writes the headless bootstrap configuration.

Example:
    provisioner = BundleProvisioner(settings.engine)
    if not provisioner.is_installed():
        provisioner.install()
"""

import os
import shutil
import stat
import tempfile
import time
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Tuple

import requests

from rollcam.config import EngineSettings
from rollcam.core.models import EngineInstallation
from rollcam.engine.bootstrap import write_bootstrap_config
from rollcam.errors import DownloadError, ExtractionError, ProvisioningError
from rollcam.logging import get_rollcam_logger

logger = get_rollcam_logger(__name__)

CHUNK_SIZE = 1024 * 64

ProgressCallback = Callable[[int, Optional[int]], None]


def build_http_session(user_agent: str) -> requests.Session:
    s = requests.Session()
    s.headers.update({"User-Agent": user_agent})
    return s


def _content_length(headers) -> Optional[int]:
    """Advertised size, or None when missing, zero or unparseable."""
    try:
        total = int(headers.get("Content-Length", 0))
    except (TypeError, ValueError):
        logger.debug("Ignoring Content-Length %r", headers.get("Content-Length"))
        return None
    return total if total > 0 else None


def safe_target(root: Path, entry_name: str) -> Path:
    """
    Resolve where a zip entry would land, refusing anything outside root.

    Args:
        root: Resolved extraction root
        entry_name: Name as stored in the archive

    Returns:
        Absolute target path inside root

    Raises:
        ExtractionError: If the entry is absolute or escapes root
    """
    normalized = entry_name.replace("\\", "/")
    if not normalized or PurePosixPath(normalized).is_absolute():
        raise ExtractionError(f"Bad zip entry: {entry_name!r}", entry=entry_name)

    target = (root / normalized).resolve()
    if target != root and not target.is_relative_to(root):
        raise ExtractionError(f"Bad zip entry: {entry_name!r}", entry=entry_name)
    return target


class BundleProvisioner:
    """
    Installs, inspects and removes the engine bundle.

    The HTTP session is injectable so tests can serve archives locally.
    """

    def __init__(
        self,
        settings: EngineSettings,
        http: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.root = Path(settings.install_dir).expanduser()
        self.http = http or build_http_session(settings.user_agent)

    def installation(self) -> EngineInstallation:
        """Describe the (possibly absent) installation."""
        return EngineInstallation(
            root=self.root,
            binary=self.root / self.settings.binary_relpath,
            host=self.settings.control_host,
            port=self.settings.control_port,
        )

    def is_installed(self) -> bool:
        """True iff the engine binary exists and is executable."""
        return self.installation().ready

    def install(
        self,
        deadline: Optional[float] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> EngineInstallation:
        """
        Download, extract and configure the engine.

        Args:
            deadline: Seconds allowed for the download (None = no limit)
            progress: Called with (bytes_done, bytes_total_or_None)

        Returns:
            The ready installation

        Raises:
            DownloadError: Network failure, bad HTTP status, or deadline expiry
            ExtractionError: Corrupt archive or unsafe entry
            ProvisioningError: Bootstrap write failed or binary missing afterwards
        """
        logger.step(f"Downloading engine from {self.settings.download_url}")
        archive = self.download(deadline=deadline, progress=progress)
        try:
            logger.step(f"Extracting engine into {self.root}")
            count = self.extract(archive, self.root)
            logger.info("Extracted %d entries", count)
        finally:
            self._discard(archive)

        try:
            write_bootstrap_config(self.root, self.settings)
        except OSError as e:
            raise ProvisioningError(f"Could not write bootstrap configuration: {e}") from e

        installation = self.installation()
        self._ensure_executable(installation.binary)
        if not installation.ready:
            raise ProvisioningError(
                f"Engine binary not found after extraction: {installation.binary}"
            )

        logger.success(f"Engine installed at {self.root}")
        return installation

    def download(
        self,
        deadline: Optional[float] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Fetch the archive into a temporary file.

        Returns:
            Path of the temporary zip (caller deletes it)

        Raises:
            DownloadError: On any failure; the temporary file is removed
        """
        fd, name = tempfile.mkstemp(prefix="rollcam-engine-", suffix=".zip")
        os.close(fd)
        archive = Path(name)
        expires_at = time.monotonic() + deadline if deadline is not None else None

        try:
            with self.http.get(
                self.settings.download_url,
                stream=True,
                timeout=(self.settings.connect_timeout, self.settings.read_timeout),
                allow_redirects=True,
            ) as response:
                if response.status_code != 200:
                    raise DownloadError(
                        f"HTTP {response.status_code} from {self.settings.download_url}",
                        status_code=response.status_code,
                    )

                total = _content_length(response.headers)
                done = 0
                with open(archive, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if expires_at is not None and time.monotonic() > expires_at:
                            raise DownloadError(f"Download exceeded deadline of {deadline}s")
                        if not chunk:
                            continue
                        fh.write(chunk)
                        done += len(chunk)
                        if progress is not None:
                            progress(done, total)

            logger.info("Downloaded %d bytes to %s", done, archive)
            return archive

        except DownloadError:
            self._discard(archive)
            raise
        except requests.RequestException as e:
            self._discard(archive)
            raise DownloadError(f"Download failed: {e}") from e
        except OSError as e:
            self._discard(archive)
            raise DownloadError(f"Could not write download: {e}") from e
        except Exception:
            self._discard(archive)
            raise

    def extract(self, archive: Path, destination: Path) -> int:
        """
        Extract a zip archive into destination.

        Every entry is checked before anything is written, so an archive
        with one unsafe entry leaves nothing behind.

        Returns:
            Number of entries extracted

        Raises:
            ExtractionError: Corrupt archive, unsafe entry, or write failure
        """
        try:
            with zipfile.ZipFile(archive) as zf:
                destination.mkdir(parents=True, exist_ok=True)
                root = destination.resolve()

                planned: List[Tuple[zipfile.ZipInfo, Path]] = [
                    (info, safe_target(root, info.filename)) for info in zf.infolist()
                ]

                for info, target in planned:
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue

                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)

                    mode = (info.external_attr >> 16) & 0o777
                    if mode:
                        os.chmod(target, mode)

                return len(planned)

        except ExtractionError:
            raise
        except zipfile.BadZipFile as e:
            raise ExtractionError(f"Corrupt archive: {e}") from e
        except OSError as e:
            raise ExtractionError(f"Extraction failed: {e}") from e

    def uninstall(self) -> bool:
        """
        Remove the installation directory.

        Returns:
            True if the directory is now absent
        """
        if self.root.exists():
            logger.step(f"Removing {self.root}")
            try:
                shutil.rmtree(self.root)
            except OSError as e:
                logger.error("Failed to remove %s: %s", self.root, e)
        return not self.root.exists()

    def installed_size_bytes(self) -> int:
        """Total size of regular files under the installation (0 if absent)."""
        if not self.root.is_dir():
            return 0

        total = 0
        for path in self.root.rglob("*"):
            try:
                if path.is_symlink() or not path.is_file():
                    continue
                total += path.stat().st_size
            except OSError:
                continue
        return total

    def installed_size_mb(self) -> float:
        return self.installed_size_bytes() / (1024.0 * 1024.0)

    @staticmethod
    def _ensure_executable(binary: Path) -> None:
        """Archives built on Windows carry no mode bits; add u+x on POSIX."""
        if os.name == "nt" or not binary.is_file():
            return
        current = binary.stat().st_mode
        if not current & stat.S_IXUSR:
            os.chmod(binary, current | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove temporary file %s: %s", path, e)
