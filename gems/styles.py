from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from gems.config import ConfigStore
from gems.errors import ArtifactIOError, PresetNotFoundError

log = logging.getLogger(__name__)

STYLE_TEMPLATE = "STYLE_TEMPLATE.md"

_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_DESCRIPTION_RE = re.compile(r"^#\s+.+\n\n(.+)$", re.MULTILINE)
_PRESET_FILE_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.md$|^STYLE_TEMPLATE\.md$")


class StylePreset(BaseModel):
    filename: str
    name: str
    description: Optional[str] = None
    modified: float


def sanitize_preset_name(name: str) -> str:
    s = re.sub(r"[^a-z0-9\s-]+", "", (name or "").lower())
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"-+", "-", s).strip("-")
    return s[:50]


def default_styles_dir(config: ConfigStore) -> Path:
    configured = config.get("styles.directory")
    if configured:
        return Path(configured).expanduser()
    if config.path is not None:
        return config.path.parent / "styles"
    return Path("styles")


class StylePresetStore:
    """Markdown brand guidelines kept next to the config file.

    The active preset is recorded in the config (``styles.activePreset``)
    and only applies while ``styles.enabled`` is true.
    """

    def __init__(self, directory, config: ConfigStore):
        self.directory = Path(directory)
        self.config = config

    @classmethod
    def from_config(cls, config: ConfigStore) -> "StylePresetStore":
        return cls(default_styles_dir(config), config)

    def _path(self, filename: str) -> Path:
        if not _PRESET_FILE_RE.match(filename or ""):
            raise ValueError(f"not a style preset file: {filename!r}")
        return self.directory / filename

    def list_styles(self) -> List[StylePreset]:
        if not self.directory.is_dir():
            return []
        presets: List[StylePreset] = []
        for path in self.directory.glob("*.md"):
            if path.name == STYLE_TEMPLATE:
                continue
            try:
                content = path.read_text(encoding="utf-8")
                mtime = path.stat().st_mtime
            except OSError as exc:
                log.warning("styles unreadable file=%s err=%s", path.name, exc)
                continue
            heading = _HEADING_RE.search(content)
            desc = _DESCRIPTION_RE.search(content)
            presets.append(
                StylePreset(
                    filename=path.name,
                    name=heading.group(1).strip() if heading else path.stem,
                    description=desc.group(1).strip() if desc else None,
                    modified=mtime,
                )
            )
        presets.sort(key=lambda p: p.modified, reverse=True)
        return presets

    def get_style_content(self, filename: str) -> str:
        path = self._path(filename)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise PresetNotFoundError(f"style preset {filename} not found") from exc
        except OSError as exc:
            raise ArtifactIOError(f"could not read {filename}: {exc}") from exc

    def create_style(self, name: str, content: str) -> str:
        slug = sanitize_preset_name(name)
        if not slug:
            raise ValueError("style name must contain letters or digits")
        filename = f"{slug}.md"
        body = (content or "").strip()
        if not body.startswith("#"):
            body = f"# {name.strip()}\n\n{body}"
        path = self._path(filename)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".md.tmp")
            tmp.write_text(body, encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise ArtifactIOError(f"could not write {filename}: {exc}") from exc
        log.info("styles created file=%s", filename)
        return filename

    def delete_style(self, filename: str) -> None:
        if filename == STYLE_TEMPLATE:
            raise ValueError("the style template cannot be deleted")
        path = self._path(filename)
        if not path.exists():
            raise PresetNotFoundError(f"style preset {filename} not found")
        if self.config.get("styles.activePreset") == filename:
            self.config.set("styles.activePreset", None)
        try:
            path.unlink()
        except OSError as exc:
            raise ArtifactIOError(f"could not delete {filename}: {exc}") from exc
        log.info("styles deleted file=%s", filename)

    def set_active_style(self, filename: Optional[str]) -> None:
        if filename and not self._path(filename).exists():
            raise PresetNotFoundError(f"style preset {filename} not found")
        self.config.set("styles.activePreset", filename or None)

    def set_enabled(self, enabled: bool) -> None:
        self.config.set("styles.enabled", bool(enabled))

    def is_enabled(self) -> bool:
        return bool(self.config.get("styles.enabled", False))

    def active_style_content(self) -> Optional[str]:
        """Content of the active preset, or None when styles are off or nothing is active."""
        active = self.config.get("styles.activePreset")
        if not self.is_enabled() or not active:
            return None
        try:
            return self.get_style_content(active)
        except (PresetNotFoundError, ValueError):
            log.warning("styles active preset missing file=%s; generating without it", active)
            return None
