"""
Integration tests for engine provisioning.

Serves real zip archives from a local HTTP server and installs them with
the default requests session.
"""

import functools
import io
import json
import threading
import zipfile
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace

import pytest

from rollcam.config import EngineSettings
from rollcam.engine.provisioner import BundleProvisioner
from rollcam.errors import DownloadError, ExtractionError

BINARY = "bin/64bit/obs64.exe"


class QuietHandler(SimpleHTTPRequestHandler):
    """Static file handler that records request headers."""

    seen_agents = []

    def do_GET(self):
        QuietHandler.seen_agents.append(self.headers.get("User-Agent"))
        if self.path == "/moved.zip":
            self.send_response(302)
            self.send_header("Location", "/bundle.zip")
            self.end_headers()
            return
        super().do_GET()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_root(tmp_path):
    root = tmp_path / "www"
    root.mkdir()
    handler = functools.partial(QuietHandler, directory=str(root))
    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield SimpleNamespace(path=root, base_url=f"http://127.0.0.1:{server.server_address[1]}")

    server.shutdown()
    server.server_close()


def bundle(entries) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = (0o755 if name == BINARY else 0o644) << 16
            zf.writestr(info, data)
    return buffer.getvalue()


def settings_for(server, tmp_path, name):
    return EngineSettings(
        download_url=f"{server.base_url}/{name}",
        install_dir=tmp_path / "engine",
        connect_timeout=5,
        read_timeout=5,
    )


class TestProvisioningWorkflow:
    """Install, inspect and uninstall against a local server."""

    def test_install_status_uninstall(self, http_root, tmp_path):
        """Test the full provisioning lifecycle."""
        (http_root.path / "bundle.zip").write_bytes(bundle({
            BINARY: b"MZ" + b"\0" * 1022,
            "data/libobs/default.effect": b"effect" * 100,
        }))
        provisioner = BundleProvisioner(settings_for(http_root, tmp_path, "bundle.zip"))

        installation = provisioner.install()

        assert provisioner.is_installed()
        assert installation.ready
        assert provisioner.installed_size_bytes() >= 1024 + 600
        assert QuietHandler.seen_agents[-1].startswith("Rollcam/")

        websocket = json.loads(
            (installation.config_dir / "plugin_config" / "obs-websocket" / "config.json").read_text()
        )
        assert websocket["server_enabled"] is True

        assert provisioner.uninstall() is True
        assert not provisioner.is_installed()
        assert provisioner.installed_size_bytes() == 0

    def test_follows_redirects(self, http_root, tmp_path):
        """Test a redirected download URL."""
        (http_root.path / "bundle.zip").write_bytes(bundle({BINARY: b"MZ"}))
        provisioner = BundleProvisioner(settings_for(http_root, tmp_path, "moved.zip"))

        assert provisioner.install().ready

    def test_missing_archive(self, http_root, tmp_path):
        """Test a 404 from the distribution endpoint."""
        provisioner = BundleProvisioner(settings_for(http_root, tmp_path, "absent.zip"))

        with pytest.raises(DownloadError) as exc_info:
            provisioner.install()

        assert exc_info.value.status_code == 404
        assert not provisioner.root.exists()

    def test_malicious_archive(self, http_root, tmp_path):
        """Test a traversal entry is refused and nothing escapes the root."""
        (http_root.path / "evil.zip").write_bytes(bundle({
            BINARY: b"MZ",
            "../../outside.txt": b"gotcha",
        }))
        provisioner = BundleProvisioner(settings_for(http_root, tmp_path, "evil.zip"))

        with pytest.raises(ExtractionError):
            provisioner.install()

        assert not (tmp_path.parent / "outside.txt").exists()
        assert not provisioner.is_installed()
