"""Directory-backed store of model definition documents (one JSON file per model)."""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Tuple

from forge.errors import NotFoundError
from forge.identifiers import is_valid_identifier


logger = logging.getLogger("forge.store")

_SUFFIX = ".json"


def default_models_dir() -> Path:
    return Path(os.getenv("FORGE_MODELS_DIR", "").strip() or (Path.cwd() / "models"))


class DefinitionStore:
    def __init__(self, root: str | Path | None = None) -> None:
        self._root = Path(root) if root is not None else default_models_dir()

    @property
    def root(self) -> Path:
        return self._root

    def ensure_dir(self) -> None:
        if not self._root.exists():
            self._root.mkdir(parents=True, exist_ok=True)
            logger.warning("models_dir_created path=%s", self._root)

    def path_for(self, name: str) -> Path:
        if not is_valid_identifier(name):
            raise ValueError(f"invalid model name: {name!r}")
        return self._root / f"{name}{_SUFFIX}"

    def exists(self, name: str) -> bool:
        return is_valid_identifier(name) and self.path_for(name).is_file()

    def list_names(self) -> list[str]:
        if not self._root.is_dir():
            return []
        names = []
        for entry in self._root.iterdir():
            if entry.suffix != _SUFFIX or not entry.is_file():
                continue
            if is_valid_identifier(entry.stem):
                names.append(entry.stem)
        return sorted(names)

    def read(self, name: str) -> dict:
        path = self.path_for(name)
        if not path.is_file():
            raise NotFoundError(f"Model definition file for '{name}' not found.", path=name)
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("definition document must be a JSON object")
        return data

    def write(self, definition: dict) -> Path:
        name = definition.get("name")
        path = self.path_for(name)
        self.ensure_dir()
        payload = json.dumps(copy.deepcopy(definition), indent=2, ensure_ascii=False)
        fd, tmp = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=str(self._root))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp, path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info("definition_written model=%s path=%s", name, path)
        return path

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        if not path.is_file():
            raise NotFoundError(f"Model definition file for '{name}' not found.", path=name)
        path.unlink()
        logger.info("definition_removed model=%s", name)

    def fingerprint(self) -> Dict[str, Tuple[int, int]]:
        """Snapshot of (mtime_ns, size) per document, compared by the watcher."""
        result: Dict[str, Tuple[int, int]] = {}
        for name in self.list_names():
            try:
                stat = self.path_for(name).stat()
            except FileNotFoundError:
                continue
            result[name] = (stat.st_mtime_ns, stat.st_size)
        return result
