from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger("jkit.marketplace.site_content")

SETTINGS_FILE = "settings.json"
ABOUT_CONTENT_FILE = "about-content.json"

DEFAULT_SETTINGS: dict[str, Any] = {"defaultPersonAvatar": "", "defaultAgencyAvatar": ""}
DEFAULT_ABOUT_CONTENT: dict[str, Any] = {
    "ourStory": {"paragraphs": []},
    "vision": {},
    "mission": {"items": []},
    "values": {"cards": []},
    "problemSolution": {"problem": {"items": []}, "solution": {"items": []}},
    "whoWeServe": {"audiences": []},
    "ourTeam": {"title": "Our Team", "members": []},
    "cta": {},
}


class SiteContentStore:
    """Whole-file JSON documents kept next to the database."""

    def __init__(self, data_dir: str) -> None:
        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()

    @property
    def settings_path(self) -> Path:
        return self.data_dir / SETTINGS_FILE

    @property
    def about_content_path(self) -> Path:
        return self.data_dir / ABOUT_CONTENT_FILE

    def read_settings(self) -> dict[str, Any]:
        return self._read(self.settings_path, DEFAULT_SETTINGS)

    def update_settings(self, changes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            merged = {**self.read_settings(), **changes}
            self._write(self.settings_path, merged)
            return merged

    def read_about_content(self) -> dict[str, Any]:
        return self._read(self.about_content_path, DEFAULT_ABOUT_CONTENT)

    def replace_about_content(self, content: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._write(self.about_content_path, content)
            return content

    def _read(self, path: Path, default: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            if not path.exists():
                return copy.deepcopy(default)
            try:
                parsed = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                LOGGER.exception("could not read %s, using defaults", path)
                return copy.deepcopy(default)
            if not isinstance(parsed, dict):
                LOGGER.warning("%s does not hold a JSON object, using defaults", path)
                return copy.deepcopy(default)
            return parsed

    def _write(self, path: Path, document: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        tmp_path.replace(path)
