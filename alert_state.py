"""Persisted record of the symbols each scanner reported on previous runs.

The layout on disk is a single JSON object::

    {
      "lastUpdated": "2024-05-01T09:00:00+00:00",
      "rsi_support": {"NABIL": {"rsi": 28.4, "support_level": 512.0, ...}},
      "trendline": {"UPPER": {"trend": "Uptrend", "first_detected": ...}},
      ...
    }

Each scanner owns one slice.  A slice is always replaced wholesale; callers
that want to keep older entries must include them in the new mapping (the
trendline scanner does this to carry ``first_detected`` forward).
"""
from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from detection import StatePersistenceFailure, to_jsonable

logger = logging.getLogger(__name__)

__all__ = ["DETECTOR_NAMES", "StateStore"]

DETECTOR_NAMES = (
    "institutional_activity",
    "trendline",
    "rsi_support",
    "weekly_heatmap",
)


def _empty_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {"lastUpdated": None}
    for name in DETECTOR_NAMES:
        state[name] = {}
    return state


class StateStore:
    """JSON-file backed store of per-scanner tracked symbols.

    The in-memory copy is loaded lazily and every mutation runs under a lock,
    so scanners running on different threads cannot lose each other's
    updates.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._state: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def load(self) -> Dict[str, Any]:
        """Read the state file, falling back to an empty structure."""

        with self._lock:
            self._state = self._read()
            return self._state

    def save(self, state: Optional[Mapping[str, Any]] = None) -> None:
        """Atomically write ``state`` (or the in-memory copy) to disk."""

        with self._lock:
            if state is not None:
                self._state = dict(state)
            current = self._ensure_loaded()
            current["lastUpdated"] = datetime.now(timezone.utc).isoformat()
            self._write(current)

    def update_detector_state(self, name: str, mapping: Mapping[str, Any]) -> None:
        """Replace ``name``'s slice with ``mapping`` and persist the store."""

        with self._lock:
            current = self._ensure_loaded()
            current[name] = to_jsonable(dict(mapping))
            self.save()

    def detector_state(self, name: str) -> Dict[str, Any]:
        with self._lock:
            current = self._ensure_loaded()
            return copy.deepcopy(current.get(name) or {})

    def is_new(self, name: str, symbol: str) -> bool:
        return symbol not in self.detector_state(name)

    @property
    def state(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._ensure_loaded())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _ensure_loaded(self) -> Dict[str, Any]:
        if self._state is None:
            self._state = self._read()
        return self._state

    def _read(self) -> Dict[str, Any]:
        state = _empty_state()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            logger.info("No previous state at %s; starting fresh", self.path)
            return state
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return state
        if not isinstance(data, dict):
            logger.warning("State file %s does not hold an object; starting fresh", self.path)
            return state
        state.update(data)
        for name in DETECTOR_NAMES:
            if not isinstance(state.get(name), dict):
                state[name] = {}
        return state

    def _write(self, state: Mapping[str, Any]) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            raise StatePersistenceFailure(f"Failed to write {self.path}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError as exc:
                    logger.debug("Could not remove %s: %s", tmp_name, exc)
