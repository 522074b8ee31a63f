"""
Unit tests for BundleProvisioner and bootstrap configuration.

Downloads are served by a fake HTTP session; archives are built in memory.
"""

import io
import json
import os
import zipfile

import pytest
import requests

from rollcam.config import EngineSettings
from rollcam.engine.bootstrap import write_bootstrap_config
from rollcam.engine.provisioner import BundleProvisioner, safe_target
from rollcam.errors import DownloadError, ExtractionError, ProvisioningError

BINARY = "bin/64bit/obs64.exe"


def make_zip(entries) -> bytes:
    """Build a zip from {name: bytes} (names are written verbatim)."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buffer.getvalue()


class FakeResponse:
    """Minimal streamed requests.Response."""

    def __init__(self, body: bytes = b"", status_code: int = 200, fail_after: int = None):
        self.body = body
        self.status_code = status_code
        self.headers = {"Content-Length": str(len(body))}
        self.fail_after = fail_after

    def iter_content(self, chunk_size=1):
        for i, offset in enumerate(range(0, len(self.body), chunk_size)):
            if self.fail_after is not None and i >= self.fail_after:
                raise requests.ConnectionError("connection reset")
            yield self.body[offset:offset + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeHTTP:
    """Records get() calls and returns a canned response."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(install_dir=tmp_path / "engine")


class TestSafeTarget:
    """Unit tests for the path-traversal guard."""

    def test_plain_entry(self, tmp_path):
        """Test a normal nested entry."""
        root = tmp_path.resolve()
        assert safe_target(root, "bin/64bit/obs64.exe") == root / "bin" / "64bit" / "obs64.exe"

    def test_rejects_parent_segments(self, tmp_path):
        """Test ../ escaping the root."""
        with pytest.raises(ExtractionError) as exc_info:
            safe_target(tmp_path, "../../etc/passwd")
        assert exc_info.value.entry == "../../etc/passwd"

    def test_rejects_backslash_traversal(self, tmp_path):
        """Test Windows-style separators are normalized before checking."""
        with pytest.raises(ExtractionError):
            safe_target(tmp_path, "data\\..\\..\\evil.dll")

    def test_rejects_absolute(self, tmp_path):
        """Test absolute entry names."""
        with pytest.raises(ExtractionError):
            safe_target(tmp_path, "/etc/passwd")

    def test_allows_inner_parent_segments(self, tmp_path):
        """Test ../ that stays inside the root."""
        root = tmp_path.resolve()
        assert safe_target(root, "bin/../data/x.txt") == root / "data" / "x.txt"


class TestExtract:
    """Unit tests for archive extraction."""

    def test_extracts_entries(self, settings, tmp_path):
        """Test extracting a well-formed archive."""
        archive = tmp_path / "bundle.zip"
        archive.write_bytes(make_zip({BINARY: b"MZ", "data/locale/en-US.ini": b"x=y"}))
        provisioner = BundleProvisioner(settings, http=FakeHTTP())

        count = provisioner.extract(archive, provisioner.root)

        assert count == 2
        assert (provisioner.root / BINARY).read_bytes() == b"MZ"

    def test_traversal_fails_closed(self, settings, tmp_path):
        """Test that an unsafe entry aborts before any file is written."""
        archive = tmp_path / "evil.zip"
        archive.write_bytes(make_zip({"ok.txt": b"fine", "../escaped.txt": b"bad"}))
        provisioner = BundleProvisioner(settings, http=FakeHTTP())

        with pytest.raises(ExtractionError):
            provisioner.extract(archive, provisioner.root)

        assert not (tmp_path / "escaped.txt").exists()
        assert not (provisioner.root / "ok.txt").exists()

    def test_corrupt_archive(self, settings, tmp_path):
        """Test a file that is not a zip."""
        archive = tmp_path / "broken.zip"
        archive.write_bytes(b"not a zip at all")
        provisioner = BundleProvisioner(settings, http=FakeHTTP())

        with pytest.raises(ExtractionError) as exc_info:
            provisioner.extract(archive, provisioner.root)
        assert exc_info.value.stage == "extract"


class TestDownload:
    """Unit tests for archive download."""

    def test_request_parameters(self, settings):
        """Test streaming, redirects and bounded timeouts."""
        http = FakeHTTP(FakeResponse(b"zipdata"))
        provisioner = BundleProvisioner(settings, http=http)

        archive = provisioner.download()
        try:
            url, kwargs = http.calls[0]
            assert url == settings.download_url
            assert kwargs["stream"] is True
            assert kwargs["allow_redirects"] is True
            assert kwargs["timeout"] == (settings.connect_timeout, settings.read_timeout)
            assert archive.read_bytes() == b"zipdata"
        finally:
            archive.unlink()

    def test_bad_status(self, settings):
        """Test non-success HTTP status."""
        provisioner = BundleProvisioner(settings, http=FakeHTTP(FakeResponse(status_code=404)))

        with pytest.raises(DownloadError) as exc_info:
            provisioner.download()

        assert exc_info.value.status_code == 404
        assert exc_info.value.kind == "provisioning"

    def test_network_error(self, settings):
        """Test connection failure."""
        provisioner = BundleProvisioner(settings, http=FakeHTTP(error=requests.ConnectionError("refused")))

        with pytest.raises(DownloadError):
            provisioner.download()

    def test_temp_file_removed_on_failure(self, settings, monkeypatch, tmp_path):
        """Test that an interrupted download leaves no temporary file."""
        monkeypatch.setattr("tempfile.tempdir", str(tmp_path))
        response = FakeResponse(b"x" * (256 * 1024), fail_after=1)
        provisioner = BundleProvisioner(settings, http=FakeHTTP(response))

        with pytest.raises(DownloadError):
            provisioner.download()

        assert list(tmp_path.glob("rollcam-engine-*")) == []

    def test_deadline(self, settings):
        """Test that an expired deadline aborts the download."""
        response = FakeResponse(b"x" * (256 * 1024))
        provisioner = BundleProvisioner(settings, http=FakeHTTP(response))

        with pytest.raises(DownloadError, match="deadline"):
            provisioner.download(deadline=-1)

    def test_progress(self, settings):
        """Test progress callback totals."""
        seen = []
        provisioner = BundleProvisioner(settings, http=FakeHTTP(FakeResponse(b"abc")))

        provisioner.download(progress=lambda done, total: seen.append((done, total))).unlink()

        assert seen[-1] == (3, 3)

    def test_malformed_content_length(self, settings):
        """Test an unparseable Content-Length means unknown size."""
        response = FakeResponse(b"abc")
        response.headers["Content-Length"] = "3, 3"
        seen = []
        provisioner = BundleProvisioner(settings, http=FakeHTTP(response))

        archive = provisioner.download(progress=lambda done, total: seen.append((done, total)))
        archive.unlink()

        assert seen[-1] == (3, None)

    def test_temp_file_removed_on_unexpected_error(self, settings, monkeypatch, tmp_path):
        """Test a failing progress callback still cleans up."""
        monkeypatch.setattr("tempfile.tempdir", str(tmp_path))

        def progress(done, total):
            raise RuntimeError("display gone")

        provisioner = BundleProvisioner(settings, http=FakeHTTP(FakeResponse(b"abc")))

        with pytest.raises(RuntimeError):
            provisioner.download(progress=progress)

        assert list(tmp_path.glob("rollcam-engine-*")) == []


class TestInstall:
    """Unit tests for the full install sequence."""

    def test_install(self, settings):
        """Test download, extract, bootstrap and readiness."""
        body = make_zip({BINARY: b"MZ", "data/obs-plugins/readme.txt": b"plugins"})
        provisioner = BundleProvisioner(settings, http=FakeHTTP(FakeResponse(body)))

        assert not provisioner.is_installed()
        installation = provisioner.install()

        assert provisioner.is_installed()
        assert installation.binary == provisioner.root / BINARY
        assert installation.port == 4455
        assert (installation.config_dir / "global.ini").is_file()

    def test_install_without_binary(self, settings):
        """Test an archive that lacks the engine binary."""
        body = make_zip({"README.txt": b"nothing here"})
        provisioner = BundleProvisioner(settings, http=FakeHTTP(FakeResponse(body)))

        with pytest.raises(ProvisioningError):
            provisioner.install()

    def test_download_and_extract_errors_are_distinct(self, settings):
        """Test error stage for each failure."""
        failing_download = BundleProvisioner(settings, http=FakeHTTP(FakeResponse(status_code=500)))
        with pytest.raises(DownloadError):
            failing_download.install()

        failing_extract = BundleProvisioner(settings, http=FakeHTTP(FakeResponse(b"garbage")))
        with pytest.raises(ExtractionError):
            failing_extract.install()


class TestUninstallAndSize:
    """Unit tests for uninstall and size accounting."""

    def test_size_of_missing_install(self, settings):
        """Test that an absent installation has size 0."""
        assert BundleProvisioner(settings, http=FakeHTTP()).installed_size_bytes() == 0

    def test_size_counts_regular_files(self, settings):
        """Test summing file sizes, ignoring symlinks."""
        provisioner = BundleProvisioner(settings, http=FakeHTTP())
        root = provisioner.root
        (root / "bin").mkdir(parents=True)
        (root / "bin" / "a").write_bytes(b"x" * 100)
        (root / "b").write_bytes(b"x" * 24)
        os.symlink(root / "b", root / "link")

        assert provisioner.installed_size_bytes() == 124

    def test_uninstall(self, settings):
        """Test recursive removal."""
        provisioner = BundleProvisioner(settings, http=FakeHTTP())
        (provisioner.root / "bin").mkdir(parents=True)
        (provisioner.root / "bin" / "a").write_bytes(b"x")

        assert provisioner.uninstall() is True
        assert not provisioner.root.exists()
        assert provisioner.uninstall() is True


class TestBootstrapConfig:
    """Unit tests for headless engine configuration."""

    def test_files_written(self, tmp_path):
        """Test the set of bootstrap files."""
        written = write_bootstrap_config(tmp_path, EngineSettings())
        names = {path.name for path in written}

        assert {"global.ini", "obs-websocket.ini", "config.json", "Rollcam.json", "basic.ini"} <= names
        assert all(path.is_file() for path in written)

    def test_headless_and_control_channel(self, tmp_path):
        """Test update/tray prompts off and control channel on."""
        write_bootstrap_config(tmp_path, EngineSettings(control_port=4460))
        config_dir = tmp_path / "config" / "obs-studio"

        global_ini = (config_dir / "global.ini").read_text()
        assert "EnableAutoUpdates=false" in global_ini
        assert "SysTrayEnabled=false" in global_ini
        assert "ServerPort=4460" in global_ini
        assert "AuthRequired=false" in global_ini

        websocket = json.loads((config_dir / "plugin_config" / "obs-websocket" / "config.json").read_text())
        assert websocket["server_enabled"] is True
        assert websocket["server_port"] == 4460
        assert websocket["auth_required"] is False

    def test_scene_collection(self, tmp_path):
        """Test the minimal capture scene."""
        write_bootstrap_config(tmp_path, EngineSettings(scene_collection="Demo"))
        scenes = json.loads(
            (tmp_path / "config" / "obs-studio" / "basic" / "scenes" / "Demo.json").read_text()
        )

        assert scenes["name"] == "Demo"
        assert len(scenes["scenes"]) == 1
        assert scenes["sources"][0]["id"] == "monitor_capture"
