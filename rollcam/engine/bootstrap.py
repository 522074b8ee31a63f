"""
Bootstrap configuration for a freshly extracted engine.

Writes the files that make the engine run headless: no update checks, no
safe-mode prompt, no tray icon, a fixed canvas, one display-capture scene,
and the control channel enabled on a fixed port without authentication.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from rollcam.config import EngineSettings
from rollcam.logging import get_logger

logger = get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
PROFILE_NAME = "Untitled"
SCENE_NAME = "Scene"
DISPLAY_SOURCE_NAME = "Display Capture"


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=False,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )


def scene_collection(name: str) -> Dict[str, Any]:
    """Minimal scene collection: one scene holding one display capture."""
    return {
        "current_scene": SCENE_NAME,
        "current_program_scene": SCENE_NAME,
        "scene_order": [{"name": SCENE_NAME}],
        "name": name,
        "sources": [
            {
                "id": "monitor_capture",
                "versioned_id": "monitor_capture",
                "name": DISPLAY_SOURCE_NAME,
                "enabled": True,
                "muted": False,
                "volume": 1.0,
                "mixers": 255,
                "flags": 0,
                "hotkeys": {},
                "private_settings": {},
                "settings": {"monitor": 0, "capture_cursor": True},
            }
        ],
        "scenes": [
            {
                "id": 0,
                "name": SCENE_NAME,
                "hotkeys": {},
                "sources": [{"name": DISPLAY_SOURCE_NAME}],
            }
        ],
    }


def websocket_config(settings: EngineSettings) -> Dict[str, Any]:
    """obs-websocket 5.x JSON config (OBS 28 and later)."""
    return {
        "first_load": False,
        "server_enabled": True,
        "server_port": settings.control_port,
        "alerts_enabled": False,
        "auth_required": bool(settings.control_password),
        "server_password": settings.control_password,
    }


def write_bootstrap_config(root: Path, settings: EngineSettings) -> List[Path]:
    """
    Write all bootstrap files under an installation root.

    Existing files are overwritten so a reinstall always converges to the
    same headless configuration.

    Args:
        root: Installation directory
        settings: Engine settings (port, password, canvas, collection name)

    Returns:
        Paths written, in order
    """
    config_dir = root / "config" / "obs-studio"
    basic_dir = config_dir / "basic"
    context = {
        "port": settings.control_port,
        "password": settings.control_password,
        "width": settings.canvas_width,
        "height": settings.canvas_height,
        "profile": PROFILE_NAME,
        "scene_collection": settings.scene_collection,
        "record_path": str(Path.home() / "ScreenRecordings"),
    }

    env = _environment()
    rendered = {
        config_dir / "global.ini": "global.ini.j2",
        config_dir / "plugin_config" / "obs-websocket.ini": "obs-websocket.ini.j2",
        basic_dir / "profiles.ini": "profiles.ini.j2",
        basic_dir / "scene_collections.ini": "scene_collections.ini.j2",
        basic_dir / "profiles" / PROFILE_NAME / "basic.ini": "basic.ini.j2",
    }

    written: List[Path] = []
    for path, template_name in rendered.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(env.get_template(template_name).render(**context), encoding="utf-8")
        written.append(path)

    documents = {
        config_dir / "plugin_config" / "obs-websocket" / "config.json": websocket_config(settings),
        basic_dir / "scenes" / f"{settings.scene_collection}.json": scene_collection(settings.scene_collection),
    }
    for path, document in documents.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(document, indent=4), encoding="utf-8")
        written.append(path)

    logger.info("Wrote %d bootstrap files under %s", len(written), config_dir)
    return written
