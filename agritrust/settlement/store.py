"""
Durable store of settlement records.

Layout when backed by a directory:

    <path>/records/<settlement_id>.json     one file per record
    <path>/index.json                       project_id -> [settlement_id, ...]

Files are replaced atomically (write tmp, fsync, os.replace). Without a
path the store is memory-only.

Concurrency:
    lock(project_id)   re-entrant lock serializing every workflow on a project
    save(record)       optimistic check: record.version must equal the stored
                       version, otherwise ConcurrentModificationError
"""

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from agritrust.core.exceptions import ConcurrentModificationError, TransientIOError
from agritrust.core.time import utc_timestamp
from agritrust.settlement.models import SettlementRecord

logger = logging.getLogger(__name__)


class SettlementStore:

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else None

        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._records: Dict[str, Dict[str, Any]] = {}
        self._index: Dict[str, List[str]] = {}

        if self.path is not None:
            (self.path / "records").mkdir(parents=True, exist_ok=True)
            self._load()

    # ── Locking ───────────────────────────────────────────────

    def lock(self, project_id: str) -> threading.RLock:
        """Per-project re-entrant lock. Use as a context manager."""
        with self._guard:
            if project_id not in self._locks:
                self._locks[project_id] = threading.RLock()
            return self._locks[project_id]

    # ── Reads ─────────────────────────────────────────────────

    def get(self, settlement_id: str) -> Optional[SettlementRecord]:
        with self._guard:
            data = self._records.get(settlement_id)
            return SettlementRecord.from_dict(copy.deepcopy(data)) if data else None

    def current(self, project_id: str) -> Optional[SettlementRecord]:
        """Latest record of the project, or None if it never submitted."""
        with self._guard:
            ids = self._index.get(project_id)
            if not ids:
                return None
            return SettlementRecord.from_dict(copy.deepcopy(self._records[ids[-1]]))

    def history(self, project_id: str) -> List[SettlementRecord]:
        """All records of the project, oldest first."""
        with self._guard:
            return [
                SettlementRecord.from_dict(copy.deepcopy(self._records[sid]))
                for sid in self._index.get(project_id, [])
            ]

    def projects(self) -> List[str]:
        with self._guard:
            return sorted(self._index)

    def all_records(self) -> List[SettlementRecord]:
        with self._guard:
            return [
                SettlementRecord.from_dict(copy.deepcopy(data))
                for data in self._records.values()
            ]

    # ── Writes ────────────────────────────────────────────────

    def save(self, record: SettlementRecord) -> SettlementRecord:
        """
        Persist record and bump its version in place.

        Raises:
            ConcurrentModificationError  record was loaded before a newer save
            TransientIOError             the file could not be written
        """
        with self._guard:
            stored = self._records.get(record.settlement_id)
            stored_version = stored["version"] if stored else 0
            if record.version != stored_version:
                raise ConcurrentModificationError(
                    "settlement record was modified concurrently",
                    {
                        "settlement_id": record.settlement_id,
                        "expected_version": stored_version,
                        "got_version": record.version,
                    },
                )

            previous_updated_at = record.updated_at
            record.version   += 1
            record.updated_at = utc_timestamp()
            data = record.to_dict()

            is_new = stored is None
            try:
                if self.path is not None:
                    self._write_json(
                        self.path / "records" / f"{record.settlement_id}.json", data
                    )
                    if is_new:
                        index = copy.deepcopy(self._index)
                        index.setdefault(record.project_id, []).append(record.settlement_id)
                        self._write_json(self.path / "index.json", index)
            except OSError as exc:
                record.version   -= 1
                record.updated_at = previous_updated_at
                raise TransientIOError(
                    f"settlement store write failed: {exc}",
                    {"settlement_id": record.settlement_id},
                ) from exc

            self._records[record.settlement_id] = data
            if is_new:
                self._index.setdefault(record.project_id, []).append(record.settlement_id)

        logger.debug(
            "saved settlement %s state=%s version=%d",
            record.settlement_id, record.state.value, record.version,
        )
        return record

    # ── Internal ──────────────────────────────────────────────

    def _load(self) -> None:
        index_file = self.path / "index.json"
        if index_file.exists():
            with open(index_file, "r", encoding="utf-8") as f:
                self._index = json.load(f)
        for ids in self._index.values():
            for sid in ids:
                record_file = self.path / "records" / f"{sid}.json"
                with open(record_file, "r", encoding="utf-8") as f:
                    self._records[sid] = json.load(f)

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]) -> None:
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
