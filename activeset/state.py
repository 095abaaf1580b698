"""
In-memory state for the active identifier set
One StateStore per process, owned by the app that creates it
"""
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

from .broadcaster import Broadcaster
from .utils import epoch_millis

logger = logging.getLogger("activeset")


@dataclass(frozen=True)
class ActiveSetSnapshot:
    """Deduplicated, sorted active IDs plus the time they were installed"""
    active_ids: Tuple[str, ...]
    updated_at: int

    def to_dict(self) -> dict:
        return {"activeIds": list(self.active_ids), "updatedAt": self.updated_at}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> "ActiveSetSnapshot":
        """
        Build a snapshot from its wire shape

        Raises ValueError when ``data`` is not ``{activeIds: [str], updatedAt?: int}``
        """
        if not isinstance(data, dict):
            raise ValueError("snapshot must be an object")
        ids = data.get("activeIds")
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            raise ValueError("activeIds must be a list of strings")
        updated_at = data.get("updatedAt", 0)
        # bool is an int subclass
        if not isinstance(updated_at, int) or isinstance(updated_at, bool):
            raise ValueError("updatedAt must be an integer")
        return cls(active_ids=tuple(ids), updated_at=updated_at)


class StateStore:
    """
    Holds the current ActiveSetSnapshot and publishes every replacement

    Reads are lock-free (a single reference swap). Replacement and the
    fanout that follows run under one lock, so concurrent publishers are
    serialized and the last replace() call wins.
    """

    def __init__(self, broadcaster: Optional[Broadcaster] = None):
        self.broadcaster = broadcaster if broadcaster is not None else Broadcaster()
        self._lock = threading.Lock()
        self._snapshot = ActiveSetSnapshot(active_ids=(), updated_at=epoch_millis())

    def get(self) -> ActiveSetSnapshot:
        return self._snapshot

    def replace(self, ids: Iterable[str]) -> ActiveSetSnapshot:
        """Install a new snapshot built from ``ids`` and notify every subscriber"""
        active_ids = tuple(sorted(set(ids)))
        with self._lock:
            # Keep updated_at monotonic even if the wall clock steps back
            updated_at = max(epoch_millis(), self._snapshot.updated_at)
            snapshot = ActiveSetSnapshot(active_ids=active_ids, updated_at=updated_at)
            self._snapshot = snapshot
            delivered = self.broadcaster.publish(snapshot)

        logger.info(
            "💡 Active set replaced: %d id(s), delivered to %d subscriber(s)",
            len(active_ids), delivered
        )
        return snapshot
