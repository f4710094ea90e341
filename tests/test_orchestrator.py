"""Unit tests for bounded, partial-failure tolerant collection."""
# pylint: disable=too-few-public-methods

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest

from collector.fakecloud import DEMO_TAG_CONFIG, FINDINGS_COLLECTOR, FakeCloud, collector_name
from collector.orchestrator import (
    Collector,
    CollectorSet,
    choose_collectors,
    filter_valid_resource_group_names,
)
from contracts.context import Context
from contracts.errors import (
    CollectorError,
    ContextCancelledError,
    JoinedError,
    NotRetryableError,
    RemoteCallError,
    ResourceGroupError,
    StorageError,
)
from contracts.model import (
    OPERATION_COLLECTION,
    Impact,
    ObservationSource,
    OperationStatus,
    Resource,
    ResourceKind,
    Severity,
    StorageFilter,
)
from infra.config import CollectorConfig
from storage.memstorage import MemStorage

PROD = "projects/modron-test"
DEV = "projects/modron-other-test"
FOLDER = "folders/234"
ORG = "organizations/1111"


class _RecordingSleep:
    """Backoff sleep that returns immediately."""

    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, ctx: Context, seconds: float) -> None:
        self.waits.append(seconds)


class _FailingResourceStorage(MemStorage):
    """Rejects resource writes for one resource group."""

    def __init__(self, group: str) -> None:
        super().__init__()
        self._group = group

    def batch_create_resources(self, ctx: Context, resources: Sequence[Resource]) -> list[Resource]:
        if any(r.resource_group_name == self._group for r in resources):
            raise StorageError(f"write rejected for {self._group}")
        return super().batch_create_resources(ctx, resources)


class _BrokenBackendStorage(MemStorage):
    """Resource writes for one group fail with a non-storage error."""

    def __init__(self, group: str) -> None:
        super().__init__()
        self._group = group

    def batch_create_resources(self, ctx: Context, resources: Sequence[Resource]) -> list[Resource]:
        if any(r.resource_group_name == self._group for r in resources):
            raise RuntimeError("connection reset")
        return super().batch_create_resources(ctx, resources)


def _collector(cloud: FakeCloud, storage: MemStorage, *, sleep: Any = None, **config: Any) -> Collector:
    return Collector(
        storage=storage,
        fetch_resource_group=cloud.resource_group_fetcher(),
        resource_collectors=cloud.resource_collectors(),
        findings_collectors=cloud.findings_collectors(),
        tag_config=DEMO_TAG_CONFIG,
        config=CollectorConfig(**config),
        sleep=sleep or _RecordingSleep(),
    )


def _collect(collector: Collector, cloud: FakeCloud, names: Sequence[str], *, ctx: Context | None = None,
             collect_id: str = "collect-1") -> JoinedError | None:
    return asyncio.run(
        collector.collect_and_store_all(ctx or Context(), collect_id, names, cloud.resource_groups())
    )


def _statuses(storage: MemStorage, rg_name: str) -> list[OperationStatus]:
    return [op.status for op in storage.operations() if op.resource_group == rg_name]


def _names(resources: Sequence[Resource]) -> set[str]:
    return {r.name for r in resources}


def test_filter_valid_resource_group_names() -> None:
    names = ["sys-12345", "not-a-valid-name", PROD]

    assert filter_valid_resource_group_names(names) == [PROD]
    assert filter_valid_resource_group_names([ORG, FOLDER, "projects/a.b:c-1"]) == [
        ORG,
        FOLDER,
        "projects/a.b:c-1",
    ]


def test_choose_collectors_by_prefix() -> None:
    project = {"list_bucket": 1}
    organization = {"list_group": 2}

    assert choose_collectors(PROD, project, organization) is project
    assert choose_collectors(ORG, project, organization) is organization
    assert choose_collectors(FOLDER, project, organization) == {}
    with pytest.raises(ValueError, match="no collectors"):
        choose_collectors("billingAccounts/1", project, organization)


def test_collects_and_stores_every_group() -> None:
    cloud = FakeCloud.demo()
    storage = MemStorage()

    err = _collect(_collector(cloud, storage), cloud, [ORG, FOLDER, PROD, DEV])

    assert err is None
    stored = storage.list_resources(Context(), StorageFilter(collection_id="collect-1"))
    assert {"bucket-public", "bucket-2", "instance-1", "gke-node-pool-1", ORG, FOLDER, PROD, DEV} <= _names(stored)
    assert all(r.collection_uid == "collect-1" and r.timestamp is not None for r in stored)
    for rg in (ORG, FOLDER, PROD, DEV):
        assert _statuses(storage, rg) == [OperationStatus.STARTED, OperationStatus.COMPLETED]
    assert all(op.type == OPERATION_COLLECTION and op.id == "collect-1" for op in storage.operations())
    assert storage.pending_operations() == []


def test_resource_groups_get_ancestors_from_hierarchy() -> None:
    cloud = FakeCloud.demo()
    storage = MemStorage()

    _collect(_collector(cloud, storage), cloud, [PROD])

    groups = storage.list_resources(
        Context(), StorageFilter(resource_kinds=frozenset({ResourceKind.RESOURCE_GROUP}))
    )
    assert [g.name for g in groups] == [PROD]
    assert groups[0].ancestors == (FOLDER, ORG)


def test_findings_are_scored_with_inherited_impact() -> None:
    """A MEDIUM finding in a prod project is escalated to HIGH risk."""
    cloud = FakeCloud.demo()
    storage = MemStorage()

    _collect(_collector(cloud, storage), cloud, [PROD])

    observations = storage.list_observations(Context(), StorageFilter(resource_group_names=(PROD,)))
    assert len(observations) == 1
    ob = observations[0]
    assert ob.source is ObservationSource.SCC
    assert ob.collection_id == "collect-1"
    assert ob.impact is Impact.HIGH
    assert ob.impact_reason == "environment=prod"
    assert ob.severity is Severity.MEDIUM
    assert ob.risk_score is Severity.HIGH


def test_failing_collector_keeps_sibling_results() -> None:
    cloud = FakeCloud.demo()
    cloud.fail_with_code(collector_name(ResourceKind.BUCKET), PROD, 400)
    storage = MemStorage()

    err = _collect(_collector(cloud, storage), cloud, [PROD, DEV])

    assert isinstance(err, JoinedError)
    assert len(err.errors) == 1
    group_err = err.errors[0]
    assert isinstance(group_err, ResourceGroupError)
    assert group_err.resource_group == PROD
    inner = group_err.cause
    assert isinstance(inner, JoinedError)
    assert isinstance(inner.errors[0], CollectorError)
    assert inner.errors[0].collector == "list_bucket"
    assert isinstance(inner.errors[0].cause, NotRetryableError)

    stored = _names(storage.list_resources(Context(), StorageFilter(resource_group_names=(PROD,))))
    assert "instance-1" in stored
    assert "bucket-public" not in stored
    assert _statuses(storage, PROD) == [OperationStatus.STARTED, OperationStatus.FAILED]
    assert _statuses(storage, DEV) == [OperationStatus.STARTED, OperationStatus.COMPLETED]
    failed = [op for op in storage.operations() if op.status is OperationStatus.FAILED]
    assert "list_bucket" in failed[0].reason


def test_failing_findings_collector_keeps_resources() -> None:
    cloud = FakeCloud.demo()
    cloud.fail(FINDINGS_COLLECTOR, PROD, RemoteCallError("scc down", code=400))
    storage = MemStorage()

    err = _collect(_collector(cloud, storage), cloud, [PROD])

    assert err is not None
    assert "list_scc_findings" in str(err)
    assert "bucket-public" in _names(storage.list_resources(Context(), StorageFilter()))
    assert storage.list_observations(Context(), StorageFilter()) == []


def test_transient_errors_are_retried() -> None:
    cloud = FakeCloud.demo()
    name = collector_name(ResourceKind.VM_INSTANCE)
    cloud.fail_with_code(name, PROD, 503, times=2)
    storage = MemStorage()
    sleep = _RecordingSleep()

    err = _collect(_collector(cloud, storage, sleep=sleep), cloud, [PROD])

    assert err is None
    assert cloud.calls.count((name, PROD)) == 3
    assert len(sleep.waits) == 2
    assert "instance-1" in _names(storage.list_resources(Context(), StorageFilter()))


def test_unknown_resource_group_is_reported_not_accessible() -> None:
    cloud = FakeCloud.demo()
    storage = MemStorage()

    err = _collect(_collector(cloud, storage), cloud, ["projects/missing", PROD])

    assert err is not None
    assert len(err.errors) == 1
    assert "resource group projects/missing is not accessible" in str(err)
    assert _statuses(storage, PROD) == [OperationStatus.STARTED, OperationStatus.COMPLETED]


def test_storage_failure_is_reported_and_collection_continues() -> None:
    cloud = FakeCloud.demo()
    storage = _FailingResourceStorage(PROD)

    err = _collect(_collector(cloud, storage), cloud, [PROD, DEV])

    assert err is not None
    assert "write rejected" in str(err)
    assert "gke-node-pool-1" in _names(storage.list_resources(Context(), StorageFilter()))
    # findings of the failed group are still stored
    assert len(storage.list_observations(Context(), StorageFilter(resource_group_names=(PROD,)))) == 1
    assert _statuses(storage, PROD)[-1] is OperationStatus.FAILED


@pytest.mark.parametrize("limit", [1, 2])
def test_parallel_collections_are_bounded(limit: int) -> None:
    slow = FakeCloud(resource_groups=FakeCloud.demo().resource_groups(), latency=0.01)
    storage = MemStorage()

    err = _collect(
        _collector(slow, storage, max_parallel_collections=limit),
        slow,
        [ORG, FOLDER, PROD, DEV],
    )

    assert err is None
    assert 1 <= slow.max_groups_in_flight <= limit
    assert len(storage.operations()) == 8


def test_cancelled_context_reports_every_group() -> None:
    cloud = FakeCloud.demo()
    storage = MemStorage()
    ctx = Context()
    ctx.cancel()

    err = _collect(_collector(cloud, storage), cloud, [PROD, DEV], ctx=ctx)

    assert err is not None
    assert len(err.errors) == 2
    assert all(isinstance(e, ResourceGroupError) for e in err.errors)
    assert all(isinstance(e.cause, ContextCancelledError) for e in err.errors)
    assert storage.operations() == []
    assert cloud.calls == []


def test_unexpected_storage_error_fails_only_its_group() -> None:
    cloud = FakeCloud.demo()
    storage = _BrokenBackendStorage(PROD)

    err = _collect(_collector(cloud, storage), cloud, [PROD, DEV])

    assert err is not None
    assert len(err.errors) == 1
    failed = err.errors[0]
    assert isinstance(failed, ResourceGroupError)
    assert failed.resource_group == PROD
    assert "connection reset" in str(failed)
    assert _statuses(storage, PROD) == [OperationStatus.STARTED, OperationStatus.FAILED]
    assert _statuses(storage, DEV) == [OperationStatus.STARTED, OperationStatus.COMPLETED]
    assert storage.pending_operations() == []


def test_malformed_collector_output_is_a_collector_error() -> None:
    cloud = FakeCloud.demo()
    storage = MemStorage()

    async def _not_a_list(ctx: Context, rg_name: str) -> Any:
        return 42

    collector = Collector(
        storage=storage,
        fetch_resource_group=cloud.resource_group_fetcher(),
        resource_collectors=CollectorSet(project={"list_broken": _not_a_list}),
        tag_config=DEMO_TAG_CONFIG,
        sleep=_RecordingSleep(),
    )

    err = _collect(collector, cloud, [PROD])

    assert err is not None
    cause = err.errors[0].cause
    assert isinstance(cause.errors[0], CollectorError)
    assert cause.errors[0].collector == "list_broken"
    assert PROD in _names(storage.list_resources(Context(), StorageFilter()))
    assert _statuses(storage, PROD)[-1] is OperationStatus.FAILED
