"""
Workspace persistence for the workbench.

WHY THIS FILE EXISTS:
--------------------
The project being edited has to survive restarts, and a bad edit has to be
undoable. This module keeps:
- the current project state, in a durable backend AND a fallback backend
- a bounded history of snapshots for rollback

BACKEND ROLES:
-------------
    primary   - durable and authoritative. A failed write raises.
    secondary - best-effort mirror. A failed write is logged and remembered
                in `last_mirror_error`, never raised.

Reads go primary -> secondary -> newest snapshot. Anything that fails to parse
at a tier counts as "no data" and the next tier is tried, so a corrupted file
can never stop the workspace from opening.

HISTORY:
-------
Each save appends a Snapshot unless the state is identical to the newest one
(so saving twice without edits does not grow history). At most
`history_limit` snapshots are kept; the oldest is evicted first.

PERSISTENCE FORMAT:
------------------
FileBackend stores one JSON file per key in its directory:
    ~/.workbench/store/workbench.workspace.v1.json
    ~/.workbench/store/workbench.history.v1.json
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from errors import CorruptPersistedState, StorageWriteFailure
from schemas import ProjectState, Snapshot

logger = logging.getLogger("workbench.persistence")


STATE_KEY = "workbench.workspace.v1"
HISTORY_KEY = "workbench.history.v1"
DEFAULT_HISTORY_LIMIT = 10


# =============================================================================
# KEY-VALUE BACKENDS
# =============================================================================

class KeyValueBackend(ABC):
    """
    Minimal string key-value store.

    get() returns None for missing keys. set() raises StorageWriteFailure when
    the value could not be stored.
    """

    name = "backend"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass


class MemoryBackend(KeyValueBackend):
    """In-process store. Useful for tests and throwaway sessions."""

    name = "memory"

    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class FileBackend(KeyValueBackend):
    """
    Stores each key as a file in a directory.

    Writes go to a temp file first and are moved into place, so a crash
    mid-write leaves the previous value intact.
    """

    name = "file"

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path).expanduser()

    def _key_path(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "._-" else "_" for c in key)
        return self.base_path / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._key_path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", path, e)
            return None

    def set(self, key: str, value: str) -> None:
        path = self._key_path(key)
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.base_path, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, ValueError) as e:
            # ValueError covers text the encoder rejects (lone surrogates)
            raise StorageWriteFailure(f"Could not write workspace data to {path}: {e}") from e


# =============================================================================
# WORKSPACE STORE
# =============================================================================

class WorkspaceStore:
    """
    Saves and restores the project state with rollback history.

    Usage:
        store = WorkspaceStore(FileBackend(dir_a), FileBackend(dir_b))
        store.save(state)
        state = store.load()
        previous = store.load_previous()
        if previous is not None:
            store.save(previous)   # make the rollback stick
    """

    def __init__(
        self,
        primary: KeyValueBackend,
        secondary: Optional[KeyValueBackend] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.primary = primary
        self.secondary = secondary
        self.history_limit = history_limit
        self._clock = clock
        self.last_mirror_error: Optional[StorageWriteFailure] = None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _write(self, key: str, value: str) -> None:
        """Primary write propagates; secondary write is best effort."""
        self.primary.set(key, value)

        if self.secondary is None:
            return
        try:
            self.secondary.set(key, value)
        except StorageWriteFailure as e:
            self._mirror_failed(key, e)
        except Exception as e:
            self._mirror_failed(key, StorageWriteFailure(f"Fallback store rejected {key}: {e}"))

    def _mirror_failed(self, key: str, error: StorageWriteFailure) -> None:
        self.last_mirror_error = error
        logger.warning("Fallback store write failed for %s: %s", key, error.message)

    def save(self, state: ProjectState) -> Optional[Snapshot]:
        """
        Persist `state` as the current workspace and record it in history.

        Returns:
            The new Snapshot, or None when the state equals the newest snapshot

        Raises:
            StorageWriteFailure: If the primary backend rejects the write
        """
        payload = state.serialize()
        self.last_mirror_error = None
        self._write(STATE_KEY, payload)

        history = self._read_history()
        if history and history[-1].state.serialize() == payload:
            logger.debug("State unchanged since last snapshot; history not extended")
            return None

        snapshot = Snapshot(timestamp=self._clock(), state=state)
        history.append(snapshot)
        history = history[-self.history_limit:]

        self._write(HISTORY_KEY, json.dumps([s.model_dump(mode="json", by_alias=True, exclude_none=True) for s in history]))
        return snapshot

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_state(raw: str) -> ProjectState:
        try:
            return ProjectState.deserialize(raw)
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise CorruptPersistedState(f"Stored workspace is unreadable: {e}") from e

    @staticmethod
    def _parse_history(raw: str) -> list[Snapshot]:
        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise TypeError("history must be a list")
            return [Snapshot.model_validate(item) for item in data]
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise CorruptPersistedState(f"Stored history is unreadable: {e}") from e

    def _backends(self) -> list[KeyValueBackend]:
        return [b for b in (self.primary, self.secondary) if b is not None]

    def _read_history(self) -> list[Snapshot]:
        for backend in self._backends():
            raw = backend.get(HISTORY_KEY)
            if raw is None:
                continue
            try:
                history = self._parse_history(raw)
            except CorruptPersistedState as e:
                logger.warning("Ignoring %s history: %s", backend.name, e.message)
                continue
            return history
        return []

    def load(self) -> Optional[ProjectState]:
        """
        Load the current workspace.

        Tries the primary value, the secondary value, then the newest
        snapshot. Returns None when nothing usable is stored.
        """
        for backend in self._backends():
            raw = backend.get(STATE_KEY)
            if raw is None:
                continue
            try:
                return self._parse_state(raw)
            except CorruptPersistedState as e:
                logger.warning("Ignoring %s workspace: %s", backend.name, e.message)

        history = self._read_history()
        if history:
            return history[-1].state
        return None

    def load_previous(self) -> Optional[ProjectState]:
        """
        The state saved before the newest snapshot, or None.

        Does not change history; save() the result to make a rollback persist.
        """
        history = self._read_history()
        if len(history) < 2:
            return None
        return history[-2].state

    def history(self) -> list[Snapshot]:
        """All snapshots, oldest first."""
        return self._read_history()


def create_store(directory: Path, fallback_directory: Optional[Path] = None, history_limit: int = DEFAULT_HISTORY_LIMIT) -> WorkspaceStore:
    """
    Quick way to build a file-backed store.

    Args:
        directory: Durable store directory
        fallback_directory: Mirror directory (optional)
        history_limit: Snapshots to keep
    """
    return WorkspaceStore(
        primary=FileBackend(directory),
        secondary=FileBackend(fallback_directory) if fallback_directory else None,
        history_limit=history_limit,
    )
