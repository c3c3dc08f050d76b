"""Prompt catalog backed by ``prompts/prompts.json``.

Entries are addressed by dotted keys (``ingest.extract.user``) and rendered
with ``string.Template``. The file is re-read when its mtime changes.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any, Iterator

from loguru import logger

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


def _flatten(node: dict[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    for name, value in node.items():
        key = f"{prefix}{name}"
        if isinstance(value, dict):
            yield from _flatten(value, f"{key}.")
        else:
            yield key, value


class PromptCatalog:
    def __init__(self, path: Path | str = PROMPTS_PATH):
        self.path = Path(path)
        self._entries: dict[str, Any] = {}
        self._mtime_ns: int | None = None

    def _entries_now(self) -> dict[str, Any]:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._mtime_ns == mtime_ns:
            return self._entries

        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Prompt catalog {self.path} must be a JSON object")
        self._entries = dict(_flatten(payload))
        self._mtime_ns = mtime_ns
        logger.debug(f"Loaded {len(self._entries)} prompt entries from {self.path}")
        return self._entries

    def get(self, key: str) -> str:
        entries = self._entries_now()
        if key not in entries:
            if any(name.startswith(f"{key}.") for name in entries):
                raise TypeError(f"Prompt key must map to a string: {key}")
            raise KeyError(f"Prompt key not found: {key}")
        value = entries[key]
        if not isinstance(value, str):
            raise TypeError(f"Prompt key must map to a string: {key}")
        return value

    def has(self, key: str) -> bool:
        try:
            self.get(key)
        except (KeyError, TypeError):
            return False
        return True

    def render(self, key: str, **values: Any) -> str:
        template = Template(self.get(key))
        try:
            return template.substitute(**values)
        except KeyError as exc:
            raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc

    def prefix(self, default: str, overrides: dict[str, str] | None, phase: str) -> str:
        """Catalog prefix for a phase, honoring a per-task override when it exists."""
        override = (overrides or {}).get(phase, "").strip()
        if not override:
            return default
        if self.has(f"{override}.system"):
            return override
        logger.warning(f"Ignoring unknown prompt override '{override}' for {phase}")
        return default


catalog = PromptCatalog()


def get_prompt(key: str) -> str:
    return catalog.get(key)


def has_prompt(key: str) -> bool:
    return catalog.has(key)


def render_prompt(key: str, **values: Any) -> str:
    return catalog.render(key, **values)


def prompt_prefix(default: str, overrides: dict[str, str] | None, phase: str) -> str:
    return catalog.prefix(default, overrides, phase)
