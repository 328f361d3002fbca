from __future__ import annotations
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)

GEMS_CONFIG_PATH = os.getenv("GEMS_CONFIG_PATH", "").strip()

DEFAULTS: Dict[str, Any] = {
    "ai": {
        "defaultProvider": "self-hosted",
        "temperature": 0.7,
        "maxTokens": 4000,
        "statusTimeout": 2.0,
        "requestTimeout": 120.0,
        "cli": {
            "command": "claude",
            "model": "sonnet",
            "timeout": 60.0,
            "extraArgs": ["--dangerously-skip-permissions"],
        },
        "selfHosted": {
            "endpoint": "http://localhost:1234",
            "model": "mistralai/devstral-small-2505",
        },
        "hosted": {
            "endpoint": "https://openrouter.ai/api/v1",
            "key": "",
            "model": "meta-llama/llama-3.2-3b-instruct:free",
        },
    },
    "output": {
        "directory": "./generated",
    },
    "styles": {
        "enabled": False,
        "activePreset": None,
        "directory": "",
    },
}

# Environment variables consulted when the stored value is empty
ENV_FALLBACKS: Dict[str, str] = {
    "ai.defaultProvider": "GEMS_DEFAULT_PROVIDER",
    "ai.cli.command": "GEMS_CLI_COMMAND",
    "ai.selfHosted.endpoint": "GEMS_SELF_HOSTED_ENDPOINT",
    "ai.selfHosted.model": "GEMS_SELF_HOSTED_MODEL",
    "ai.hosted.key": "OPENROUTER_API_KEY",
    "ai.hosted.model": "OPENROUTER_MODEL",
    "output.directory": "GEMS_OUTPUT_DIR",
    "styles.directory": "GEMS_STYLES_DIR",
}


def default_config_path() -> Path:
    if GEMS_CONFIG_PATH:
        return Path(GEMS_CONFIG_PATH).expanduser()
    return Path.home() / ".gems" / "config.json"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, val in override.items():
        if isinstance(val, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], val)
        else:
            out[key] = copy.deepcopy(val)
    return out


class ConfigStore:
    """Dotted-path configuration backed by a JSON file.

    ``ConfigStore(path=None)`` keeps everything in memory, which is what
    tests use. Writes go through a temp file and ``replace`` so a crash never
    leaves a half-written config behind.
    """

    def __init__(self, path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None):
        self.path = Path(path) if path is not None else None
        self._data = copy.deepcopy(DEFAULTS)
        if self.path is not None:
            self._data = _deep_merge(self._data, self._load())
        for key, val in (overrides or {}).items():
            self._assign(key, val)

    @classmethod
    def from_default_location(cls) -> "ConfigStore":
        return cls(default_config_path())

    def _load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("config unreadable path=%s err=%s; using defaults", self.path, exc)
            return {}
        if not isinstance(data, dict):
            log.warning("config ignored path=%s reason=not-an-object", self.path)
            return {}
        return data

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def _lookup(self, key: str) -> Any:
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _assign(self, key: str, value: Any) -> None:
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def get(self, key: str, default: Any = None) -> Any:
        value = self._lookup(key)
        if value in (None, "") and key in ENV_FALLBACKS:
            env_val = os.getenv(ENV_FALLBACKS[key], "").strip()
            if env_val:
                return env_val
        if value is None:
            return default
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        self._assign(key, value)
        self._save()
        log.info("config set key=%s", key)

    def reset(self) -> None:
        self._data = copy.deepcopy(DEFAULTS)
        self._save()

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)
