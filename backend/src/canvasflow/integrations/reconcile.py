"""
Reconciliation - classify remote records against the local copy.

Pure functions only: no session, no client, no clock. The executor builds
the two sequences, calls reconcile(), and acts on the returned diff.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..models.synced_record import content_hash


@dataclass(frozen=True)
class RemoteRecord:
    key: str
    payload: Dict[str, Any]
    content_hash: str


@dataclass(frozen=True)
class LocalRecord:
    key: str
    content_hash: str
    remote_confirmed: bool = True
    orphaned: bool = False
    payload: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ChangedRecord:
    remote: RemoteRecord
    local: LocalRecord


@dataclass
class ReconcileDiff:
    """
    Classified difference between one remote read and the local copy.

    Attributes:
        new: Remote records with no local counterpart
        changed: Records present on both sides whose content differs
        relinked: Same content on both sides, but the local row is marked
            orphaned or not yet confirmed on the remote
        unchanged: Keys identical on both sides; nothing to write
        orphaned: Local records the remote did not return
        duplicate_keys: Keys the remote returned more than once (last wins)
        keyless: Remote records without an external key, one entry each; they
            cannot be matched or stored
    """

    new: List[RemoteRecord] = field(default_factory=list)
    changed: List[ChangedRecord] = field(default_factory=list)
    relinked: List[RemoteRecord] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    orphaned: List[LocalRecord] = field(default_factory=list)
    duplicate_keys: List[str] = field(default_factory=list)
    keyless: List[RemoteRecord] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.changed or self.relinked)

    def summary(self) -> Dict[str, int]:
        return {
            "new": len(self.new),
            "changed": len(self.changed),
            "relinked": len(self.relinked),
            "unchanged": len(self.unchanged),
            "orphaned": len(self.orphaned),
            "duplicates": len(self.duplicate_keys),
            "keyless": len(self.keyless),
        }


def extract_key(item: Dict[str, Any], key_field: str) -> str:
    """External key of a remote item; empty string when absent."""
    value = item.get(key_field)
    if value is None:
        return ""
    return str(value)


def to_remote_records(items: Iterable[Dict[str, Any]], key_field: str) -> List[RemoteRecord]:
    return [
        RemoteRecord(key=extract_key(item, key_field), payload=item, content_hash=content_hash(item))
        for item in items
    ]


def reconcile(remote: Sequence[RemoteRecord], local: Sequence[LocalRecord]) -> ReconcileDiff:
    """
    Diff remote against local by external key.

    Output lists keep the order of their input sequence. When the remote
    repeats a key, the last occurrence wins and the key is reported once in
    duplicate_keys. Records without a key are never merged with each other;
    each one is returned in keyless.
    """
    diff = ReconcileDiff()

    latest: Dict[str, RemoteRecord] = {}
    for record in remote:
        if not record.key:
            diff.keyless.append(record)
            continue
        if record.key in latest and record.key not in diff.duplicate_keys:
            diff.duplicate_keys.append(record.key)
        # re-insert so the winning occurrence determines position
        latest.pop(record.key, None)
        latest[record.key] = record

    local_by_key = {record.key: record for record in local}

    for key, record in latest.items():
        existing = local_by_key.get(key)
        if existing is None:
            diff.new.append(record)
        elif existing.content_hash != record.content_hash:
            diff.changed.append(ChangedRecord(remote=record, local=existing))
        elif existing.orphaned or not existing.remote_confirmed:
            diff.relinked.append(record)
        else:
            diff.unchanged.append(key)

    for record in local:
        if record.key not in latest:
            diff.orphaned.append(record)

    return diff
