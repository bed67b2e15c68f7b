"""Registry of working copies seen by the CLI (``<home_dir>/repo.json``)."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from patchflow.persistence.state_db import canonical_json

logger = logging.getLogger(__name__)


class RepoRegistryError(RuntimeError):
    """Raised when the registry file cannot be read or written."""


@dataclass(frozen=True, slots=True)
class RegisteredRepo:
    name: str
    url: str
    path: str


class RepoRegistry:
    """Project name to (url, path) mapping persisted as JSON."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, RegisteredRepo]:
        if not self._path.is_file():
            return {}
        try:
            raw_text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RepoRegistryError(f"unable to read {self._path}: {exc}") from exc
        if not raw_text.strip():
            return {}
        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise RepoRegistryError(f"invalid JSON in {self._path}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise RepoRegistryError(f"{self._path} must contain a JSON object")

        entries: dict[str, RegisteredRepo] = {}
        for name, raw in payload.items():
            if not isinstance(raw, Mapping):
                continue
            entries[str(name)] = RegisteredRepo(
                name=str(name),
                url=str(raw.get("url") or raw.get("Url") or ""),
                path=str(raw.get("path") or raw.get("Path") or ""),
            )
        return entries

    def record(self, repo: RegisteredRepo) -> dict[str, RegisteredRepo]:
        """Insert or refresh one entry and rewrite the file."""

        entries = self.load()
        if entries.get(repo.name) == repo:
            return entries
        entries[repo.name] = repo
        payload = {
            name: {"url": entry.url, "path": entry.path}
            for name, entry in sorted(entries.items())
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(canonical_json(payload) + "\n", encoding="utf-8")
        except OSError as exc:
            raise RepoRegistryError(f"unable to write {self._path}: {exc}") from exc
        logger.debug("registered working copy %s at %s", repo.name, repo.path)
        return entries


__all__ = ["RegisteredRepo", "RepoRegistry", "RepoRegistryError"]
