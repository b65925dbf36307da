"""Persist transfer records between process restarts.

The coordinator writes a record every time it changes state, before the
next external side effect. After a crash
:py:meth:`~cctp_bridge.coordinator.TransferCoordinator.resume`
picks up every non-terminal record from the store.

- :py:class:`MemoryTransferStore`: default, lost on exit
- :py:class:`JSONFileTransferStore`: one JSON file, safe for several processes
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Protocol

from cctp_bridge.errors import TransferNotFound
from cctp_bridge.record import TransferRecord
from cctp_bridge.utils import wait_other_writers

logger = logging.getLogger(__name__)


class TransferStore(Protocol):
    """Where transfer records live."""

    def save(self, record: TransferRecord):
        """Insert or overwrite a record."""

    def load(self, transfer_id: str) -> TransferRecord:
        """Read a record.

        :raises TransferNotFound:
            Unknown transfer id.
        """

    def list(self) -> list[TransferRecord]:
        """All records, oldest first."""


class MemoryTransferStore:
    """Keep records in a dict."""

    def __init__(self):
        self._records: dict[str, TransferRecord] = {}
        self._lock = threading.Lock()

    def save(self, record: TransferRecord):
        with self._lock:
            self._records[record.transfer_id] = record.snapshot()

    def load(self, transfer_id: str) -> TransferRecord:
        with self._lock:
            record = self._records.get(transfer_id)
            if record is None:
                raise TransferNotFound(f"Unknown transfer {transfer_id}")
            return record.snapshot()

    def list(self) -> list[TransferRecord]:
        with self._lock:
            records = [r.snapshot() for r in self._records.values()]
        return sorted(records, key=lambda r: r.created_at)


class JSONFileTransferStore:
    """Keep records in a JSON file keyed by transfer id.

    Each write holds a :py:class:`filelock.FileLock` next to the file and
    replaces the file atomically, so a crash never leaves half a file behind.

    :param path:
        Absolute path to the JSON file. Created on first save.
    """

    def __init__(self, path: Path | str, lock_timeout: float = 30):
        path = Path(path)
        assert path.is_absolute(), f"Store path must be absolute: {path}"
        self.path = path
        self.lock_timeout = lock_timeout

    def __repr__(self):
        return f"<JSONFileTransferStore {self.path}>"

    def _read(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        with self.path.open("rt", encoding="utf-8") as f:
            return json.load(f)

    def save(self, record: TransferRecord):
        with wait_other_writers(self.path, timeout=self.lock_timeout):
            data = self._read()
            data[record.transfer_id] = record.to_dict()
            tmp = self.path.with_name(self.path.name + ".tmp")
            with tmp.open("wt", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)

        logger.debug("Saved transfer %s in state %s to %s", record.transfer_id, record.state.value, self.path)

    def load(self, transfer_id: str) -> TransferRecord:
        with wait_other_writers(self.path, timeout=self.lock_timeout):
            data = self._read()
        if transfer_id not in data:
            raise TransferNotFound(f"Unknown transfer {transfer_id}")
        return TransferRecord.from_dict(data[transfer_id])

    def list(self) -> list[TransferRecord]:
        with wait_other_writers(self.path, timeout=self.lock_timeout):
            data = self._read()
        records = [TransferRecord.from_dict(d) for d in data.values()]
        return sorted(records, key=lambda r: r.created_at)
