"""In-memory storage backend.

Used by tests and by demo runs. Resources and observations are kept per
resource group in insertion order; listing resources returns the most recent
collection of each group unless a collection id is requested. Operation
records are buffered by `add_operation_log` and committed by `flush_ops_log`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from datetime import datetime

from contracts.context import Context
from contracts.errors import StorageError
from contracts.model import (
    HierarchyNode,
    Observation,
    Operation,
    Resource,
    ResourceKind,
    StorageFilter,
)

logger = logging.getLogger(__name__)


class MemStorage:
    """Thread-safe, process-local implementation of the Storage contract."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: dict[str, list[Resource]] = {}
        self._observations: dict[str, list[Observation]] = {}
        self._pending_ops: list[Operation] = []
        self._operations: list[Operation] = []

    # -----------------------------
    # Resources
    # -----------------------------

    def batch_create_resources(self, ctx: Context, resources: Sequence[Resource]) -> list[Resource]:
        with self._lock:
            for r in resources:
                self._resources.setdefault(r.resource_group_name, []).append(r)
        return list(resources)

    def list_resources(self, ctx: Context, flt: StorageFilter) -> list[Resource]:
        window = _time_window(flt)
        with self._lock:
            groups = self._select_groups(self._resources, flt)
            out: list[Resource] = []
            for group in groups:
                stored = self._resources.get(group, [])
                if not stored:
                    continue
                collection_id = flt.collection_id or stored[-1].collection_uid
                for r in stored:
                    if r.collection_uid != collection_id:
                        continue
                    if _resource_matches(r, flt, window):
                        out.append(r)
        return _apply_limit(out, flt)

    def get_children_of_resource(
        self,
        ctx: Context,
        collection_id: str,
        parent_name: str,
        kind: ResourceKind | None = None,
    ) -> dict[str, HierarchyNode]:
        flt = StorageFilter(
            parent_names=(parent_name,),
            collection_id=collection_id or None,
            resource_kinds=frozenset({kind}) if kind is not None else None,
        )
        return {r.name: HierarchyNode.from_resource(r) for r in self.list_resources(ctx, flt)}

    # -----------------------------
    # Observations
    # -----------------------------

    def batch_create_observations(self, ctx: Context, observations: Sequence[Observation]) -> list[Observation]:
        stored: list[Observation] = []
        with self._lock:
            for o in observations:
                if not o.resource_ref.group_name:
                    logger.warning("can't store observation %s with no resource group", o.uid)
                    continue
                self._observations.setdefault(o.resource_ref.group_name, []).append(o)
                stored.append(o)
        return stored

    def list_observations(self, ctx: Context, flt: StorageFilter) -> list[Observation]:
        window = _time_window(flt)
        names = _as_set(flt.resource_names)
        with self._lock:
            groups = self._select_groups(self._observations, flt)
            out: list[Observation] = []
            for group in groups:
                for o in self._observations.get(group, []):
                    if names is not None and o.resource_ref.external_id not in names:
                        continue
                    if flt.collection_id is not None and flt.collection_id not in (o.collection_id, o.scan_uid):
                        continue
                    if window is not None and not _in_window(o.timestamp, window):
                        continue
                    out.append(o)
        return _apply_limit(out, flt)

    # -----------------------------
    # Operation log
    # -----------------------------

    def add_operation_log(self, ctx: Context, operations: Sequence[Operation]) -> None:
        with self._lock:
            self._pending_ops.extend(operations)

    def flush_ops_log(self, ctx: Context) -> None:
        with self._lock:
            self._operations.extend(self._pending_ops)
            self._pending_ops.clear()

    def operations(self) -> list[Operation]:
        """Committed operation records, oldest first."""
        with self._lock:
            return list(self._operations)

    def pending_operations(self) -> list[Operation]:
        with self._lock:
            return list(self._pending_ops)

    # -----------------------------
    # Helpers
    # -----------------------------

    @staticmethod
    def _select_groups(store: dict[str, list], flt: StorageFilter) -> list[str]:
        if flt.resource_group_names is None:
            return sorted(store)
        return [g for g in dict.fromkeys(flt.resource_group_names) if g in store]


def _as_set(values: Iterable[str] | None) -> set[str] | None:
    return None if values is None else set(values)


def _time_window(flt: StorageFilter) -> tuple[datetime, datetime] | None:
    if flt.limit is not None and flt.limit < 0:
        raise StorageError(f"limit must be >= 0, got {flt.limit}")
    if flt.start_time is None and flt.time_offset is None:
        return None
    if flt.start_time is None or flt.time_offset is None:
        raise StorageError("start_time and time_offset must both be set")
    other = flt.start_time + flt.time_offset
    return (min(flt.start_time, other), max(flt.start_time, other))


def _in_window(ts: datetime | None, window: tuple[datetime, datetime]) -> bool:
    if ts is None:
        return False
    start, end = window
    return start < ts < end


def _resource_matches(r: Resource, flt: StorageFilter, window: tuple[datetime, datetime] | None) -> bool:
    if flt.resource_kinds is not None and r.kind not in flt.resource_kinds:
        return False
    if flt.resource_names is not None and r.name not in flt.resource_names:
        return False
    if flt.parent_names is not None and r.parent not in flt.parent_names:
        return False
    if window is not None and not _in_window(r.timestamp, window):
        return False
    return True


def _apply_limit(items: list, flt: StorageFilter) -> list:
    if flt.limit is not None and len(items) > flt.limit:
        return items[: flt.limit]
    return items
