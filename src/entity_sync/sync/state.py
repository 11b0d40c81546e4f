"""Relation store persistence layer.

The relation table is the engine's only durable state.  Two stores are
provided:

* ``InMemoryRelationStore`` -- a dict-backed table used for tests and as
  the working set of the JSON store.
* ``JsonRelationStore`` -- one JSON file per sync profile
  (``relations_{profile}.json``) in a state directory.

Key design choices:

* **Atomic writes** -- every mutation rewrites the file through a temp file
  and ``os.replace()`` so readers never see partial data and a crash
  mid-run loses at most the relation being written.
* **Uniqueness** -- at most one relation per A-id and per B-id; upserting
  a record evicts any record sharing either id.
* **Typed versions** -- versions are opaque, but ``datetime`` and tuple
  versions are tagged on disk so they compare equal after a reload.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from entity_sync.errors import RelationStoreError

from .models import RelationRecord

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class InMemoryRelationStore:
    """Relation table held in memory, indexed by A-id and B-id."""

    def __init__(self, records: list[RelationRecord] | None = None) -> None:
        self._by_a: dict[Any, RelationRecord] = {}
        self._b_to_a: dict[Any, Any] = {}
        for record in records or []:
            self._put(record)

    def all(self) -> list[RelationRecord]:
        return list(self._by_a.values())

    def get_by_a(self, a_id: Any) -> RelationRecord | None:
        return self._by_a.get(a_id)

    def get_by_b(self, b_id: Any) -> RelationRecord | None:
        a_id = self._b_to_a.get(b_id)
        return None if a_id is None else self._by_a.get(a_id)

    def upsert(self, record: RelationRecord) -> None:
        self._put(record)

    def remove(self, a_id: Any, b_id: Any) -> None:
        existing = self._by_a.get(a_id)
        if existing is None or existing.b_id != b_id:
            return
        del self._by_a[a_id]
        self._b_to_a.pop(b_id, None)

    def __len__(self) -> int:
        return len(self._by_a)

    def _put(self, record: RelationRecord) -> None:
        stale_a = self._by_a.get(record.a_id)
        if stale_a is not None and stale_a.b_id != record.b_id:
            logger.debug("Replacing relation %s", stale_a.label())
            self._b_to_a.pop(stale_a.b_id, None)

        stale_a_id = self._b_to_a.get(record.b_id)
        if stale_a_id is not None and stale_a_id != record.a_id:
            logger.debug(
                "Evicting relation %s sharing B-id",
                self._by_a[stale_a_id].label(),
            )
            del self._by_a[stale_a_id]

        self._by_a[record.a_id] = record
        self._b_to_a[record.b_id] = record.a_id


class JsonRelationStore(InMemoryRelationStore):
    """Relation table persisted as a JSON file per profile.

    Args:
        state_dir: Directory holding the state files (created on first
            write).
        profile_name: The sync profile name (used in the filename).

    Raises:
        RelationStoreError: If the file exists but cannot be read or parsed.
    """

    def __init__(self, state_dir: Path, profile_name: str) -> None:
        super().__init__()
        self._state_dir = Path(state_dir)
        self.profile_name = profile_name
        self.last_saved: str | None = None
        self._load()

    @property
    def path(self) -> Path:
        """Path to the state file for this profile."""
        return self._state_dir / f"relations_{self.profile_name}.json"

    def upsert(self, record: RelationRecord) -> None:
        super().upsert(record)
        self.save()

    def remove(self, a_id: Any, b_id: Any) -> None:
        before = len(self)
        super().remove(a_id, b_id)
        if len(self) != before:
            self.save()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        path = self.path
        if not path.exists():
            return
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
            for raw in data.get("relations", []):
                self._put(_decode_record(raw))
        except (
            OSError,
            ValueError,
            TypeError,
            KeyError,
            AttributeError,
        ) as exc:
            raise RelationStoreError(
                f"Cannot read relation store {path}: {exc}"
            ) from exc
        self.last_saved = data.get("last_saved")
        logger.debug("Loaded %d relations from %s", len(self), path)

    def save(self) -> None:
        """Persist the table to disk atomically.

        Writes to a temporary file in the same directory then atomically
        replaces the target.  Creates ``state_dir`` if it does not exist.

        Raises:
            RelationStoreError: If the file cannot be written.
        """
        self.last_saved = datetime.now(timezone.utc).isoformat()
        payload = {
            "version": STATE_FORMAT_VERSION,
            "profile": self.profile_name,
            "last_saved": self.last_saved,
            "relations": [_encode_record(r) for r in self.all()],
        }
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._state_dir), suffix=".tmp"
            )
        except OSError as exc:
            raise RelationStoreError(
                f"Cannot write relation store {self.path}: {exc}"
            ) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException as exc:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, (OSError, TypeError, ValueError)):
                raise RelationStoreError(
                    f"Cannot write relation store {self.path}: {exc}"
                ) from exc
            raise


# ----------------------------------------------------------------------
# Encoding helpers
# ----------------------------------------------------------------------


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, tuple):
        return {"$tuple": [_encode_value(v) for v in value]}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if "$datetime" in value:
            return datetime.fromisoformat(value["$datetime"])
        if "$tuple" in value:
            return tuple(_decode_value(v) for v in value["$tuple"])
    return value


def _encode_record(record: RelationRecord) -> dict:
    return {
        "a_id": _encode_value(record.a_id),
        "a_version": _encode_value(record.a_version),
        "b_id": _encode_value(record.b_id),
        "b_version": _encode_value(record.b_version),
        "a_tombstoned": record.a_tombstoned,
        "b_tombstoned": record.b_tombstoned,
    }


def _decode_record(raw: dict) -> RelationRecord:
    return RelationRecord(
        a_id=_decode_value(raw["a_id"]),
        a_version=_decode_value(raw.get("a_version")),
        b_id=_decode_value(raw["b_id"]),
        b_version=_decode_value(raw.get("b_version")),
        a_tombstoned=bool(raw.get("a_tombstoned", False)),
        b_tombstoned=bool(raw.get("b_tombstoned", False)),
    )
