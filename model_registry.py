"""In-memory model registry kept in sync with the definition store."""

from __future__ import annotations

import copy
import logging
import os
import queue
import threading
import time
from typing import Callable, Dict, List, Tuple

from app.model_validate import normalize_model_definition
from definition_store import DefinitionStore
from forge.definition_hash import definition_hash
from forge.errors import NotFoundError


logger = logging.getLogger("forge.registry")

Intent = Tuple[str, str]


def _table_name(definition: dict) -> str:
    table = definition.get("tableName")
    if isinstance(table, str) and table:
        return table
    return str(definition.get("name") or "").lower()


def _check_document(name: str, definition: dict) -> None:
    if definition.get("name") != name:
        raise ValueError(f"document name {definition.get('name')!r} does not match file {name!r}")
    if not isinstance(definition.get("fields"), list):
        raise ValueError("fields must be a list")


class ModelRegistry:
    def __init__(self, store: DefinitionStore) -> None:
        self._store = store
        self._models: Dict[str, dict] = {}
        self._hashes: Dict[str, str] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> dict:
        with self._lock:
            record = self._models.get(name)
        if record is None:
            raise NotFoundError(f"Model definition for '{name}' not found or not cached.", path=name)
        return copy.deepcopy(record)

    def find(self, name: str) -> dict | None:
        with self._lock:
            record = self._models.get(name)
        return copy.deepcopy(record) if record is not None else None

    def list(self) -> list[str]:
        with self._lock:
            return sorted(self._models.keys())

    def list_all(self) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(self._models[name]) for name in sorted(self._models.keys())]

    def table_owner(self, table_name: str) -> str | None:
        with self._lock:
            for name, record in self._models.items():
                if _table_name(record) == table_name:
                    return name
        return None

    def load(self, name: str) -> bool:
        try:
            definition = self._store.read(name)
            _check_document(name, definition)
            definition = normalize_model_definition(definition)
            new_hash = definition_hash(definition)
        except Exception as exc:
            logger.error("registry_load_failed model=%s error=%s", name, exc)
            return False
        with self._lock:
            previous = self._hashes.get(name)
            self._models[name] = definition
            self._hashes[name] = new_hash
        if previous == new_hash:
            logger.debug("registry_reload_unchanged model=%s", name)
        else:
            logger.info("registry_loaded model=%s hash=%s", name, new_hash)
        return True

    def evict(self, name: str) -> bool:
        with self._lock:
            removed = self._models.pop(name, None)
            self._hashes.pop(name, None)
        if removed is not None:
            logger.info("registry_evicted model=%s", name)
            return True
        return False

    def load_all(self) -> int:
        names = self._store.list_names()
        logger.info("registry_populate count=%s dir=%s", len(names), self._store.root)
        loaded = 0
        for name in names:
            if self.load(name):
                loaded += 1
        return loaded


class DefinitionWatcher:
    """Polls the store and feeds debounced load/evict intents to one consumer."""

    def __init__(
        self,
        store: DefinitionStore,
        registry: ModelRegistry,
        poll_ms: float | None = None,
        debounce_ms: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._registry = registry
        self._poll_s = (poll_ms if poll_ms is not None else float(os.getenv("FORGE_WATCH_POLL_MS", "250"))) / 1000
        self._debounce_s = (debounce_ms if debounce_ms is not None else float(os.getenv("FORGE_WATCH_DEBOUNCE_MS", "150"))) / 1000
        self._clock = clock
        self._known: Dict[str, Tuple[int, int]] = {}
        self._pending: Dict[str, Tuple[str, float]] = {}
        self._pending_lock = threading.Lock()
        self._intents: "queue.Queue[Intent]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def prime(self) -> None:
        self._known = self._store.fingerprint()

    def scan_once(self, now: float | None = None) -> List[Intent]:
        now = self._clock() if now is None else now
        current = self._store.fingerprint()
        events: List[Intent] = []
        for name, stamp in current.items():
            previous = self._known.get(name)
            if previous is None:
                logger.info("definition_added model=%s", name)
                events.append(("load", name))
            elif previous != stamp:
                logger.info("definition_changed model=%s", name)
                events.append(("load", name))
        for name in self._known:
            if name not in current:
                logger.info("definition_removed model=%s", name)
                events.append(("evict", name))
        self._known = current
        if events:
            with self._pending_lock:
                for action, name in events:
                    self._pending[name] = (action, now + self._debounce_s)
        return events

    def _flush_due(self, now: float) -> None:
        with self._pending_lock:
            due = [(deadline, name, action) for name, (action, deadline) in self._pending.items() if deadline <= now]
            due.sort()
            for _, name, action in due:
                del self._pending[name]
                self._intents.put((action, name))

    def drain(self, now: float | None = None) -> List[Intent]:
        now = self._clock() if now is None else now
        self._flush_due(now)
        applied: List[Intent] = []
        while True:
            try:
                action, name = self._intents.get_nowait()
            except queue.Empty:
                break
            if action == "load":
                self._registry.load(name)
            else:
                self._registry.evict(name)
            applied.append((action, name))
        return applied

    def pending(self) -> Dict[str, str]:
        with self._pending_lock:
            return {name: action for name, (action, _) in self._pending.items()}

    def _run(self) -> None:
        while not self._stop.wait(self._poll_s):
            try:
                self.scan_once()
                self.drain()
            except Exception as exc:
                logger.error("watcher_error error=%s", exc)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._store.ensure_dir()
        self.prime()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="forge-definition-watcher", daemon=True)
        self._thread.start()
        logger.info("watcher_started dir=%s poll_ms=%s", self._store.root, int(self._poll_s * 1000))

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=max(self._poll_s * 4, 1.0))
        self._thread = None
        logger.info("watcher_stopped")
