"""In-memory fake cloud provider.

Serves typed collectors, a resource-group fetcher and a findings collector
from fixtures, with failures injectable per (collector, resource group).
Used by demo runs and by tests.

Usage:
    cloud = FakeCloud.demo()
    collector = Collector(
        storage=storage,
        fetch_resource_group=cloud.fetch_resource_group,
        resource_collectors=cloud.resource_collectors(),
        findings_collectors=cloud.findings_collectors(),
        tag_config=DEMO_TAG_CONFIG,
    )
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

from collector.orchestrator import CollectorSet
from collector.ratelimiter import QuotaLimiters, rate_limited
from contracts.context import Context
from contracts.errors import RemoteCallError
from contracts.model import (
    Bucket,
    BucketAccess,
    ExportedCredentials,
    Impact,
    Observation,
    ObservationSource,
    Permission,
    Remediation,
    Resource,
    ResourceGroup,
    ResourceKind,
    ResourceRef,
    Severity,
    TagConfig,
    VmInstance,
    utc_now,
)

FINDINGS_COLLECTOR = "list_scc_findings"
RESOURCE_GROUP_COLLECTOR = "resource_group"

DEMO_ORG_ID = "1111"
DEMO_TAG_CONFIG = TagConfig(
    environment=f"{DEMO_ORG_ID}/environment",
    employee_data=f"{DEMO_ORG_ID}/employee_data",
    customer_data=f"{DEMO_ORG_ID}/customer_data",
    impact_map={"prod": Impact.HIGH, "dev": Impact.LOW},
)


def collector_name(kind: ResourceKind) -> str:
    return f"list_{kind.value}"


@dataclass
class _Failure:
    error: Exception
    remaining: int | None  # None: fail forever


class FakeCloud:
    """Fixture-backed provider. Safe to call from concurrent tasks."""

    def __init__(
        self,
        *,
        resource_groups: Iterable[Resource] = (),
        resources: Iterable[Resource] = (),
        findings: Iterable[Observation] = (),
        limiters: QuotaLimiters | None = None,
        latency: float = 0.0,
    ) -> None:
        self._lock = threading.Lock()
        self._groups: dict[str, Resource] = {rg.name: rg for rg in resource_groups}
        self._resources: dict[tuple[ResourceKind, str], list[Resource]] = {}
        for r in resources:
            self._resources.setdefault((r.kind, r.resource_group_name), []).append(r)
        self._findings: dict[str, list[Observation]] = {}
        for o in findings:
            self._findings.setdefault(o.resource_ref.group_name, []).append(o)
        self._failures: dict[tuple[str, str], _Failure] = {}
        self._limiters = limiters
        self._latency = latency
        self.calls: list[tuple[str, str]] = []
        self._in_flight: dict[str, int] = {}
        self.max_groups_in_flight = 0

    # -----------------------------
    # Failure injection
    # -----------------------------

    def fail(self, collector: str, resource_group: str, error: Exception, *, times: int | None = None) -> None:
        """Make `collector` raise `error` for `resource_group` (`times` calls, or always)."""
        with self._lock:
            self._failures[(collector, resource_group)] = _Failure(error=error, remaining=times)

    def fail_with_code(self, collector: str, resource_group: str, code: int, *, times: int | None = None) -> None:
        self.fail(collector, resource_group, RemoteCallError(f"{collector} failed", code=code), times=times)

    def _maybe_fail(self, collector: str, resource_group: str) -> None:
        with self._lock:
            self.calls.append((collector, resource_group))
            failure = self._failures.get((collector, resource_group))
            if failure is None:
                return
            if failure.remaining is not None:
                if failure.remaining <= 0:
                    return
                failure.remaining -= 1
            error = failure.error
        raise error

    async def _enter(self, ctx: Context, resource_group: str) -> None:
        with self._lock:
            self._in_flight[resource_group] = self._in_flight.get(resource_group, 0) + 1
            self.max_groups_in_flight = max(self.max_groups_in_flight, len(self._in_flight))
        if self._latency > 0:
            await ctx.sleep(self._latency)

    def _leave(self, resource_group: str) -> None:
        with self._lock:
            count = self._in_flight.get(resource_group, 0) - 1
            if count <= 0:
                self._in_flight.pop(resource_group, None)
            else:
                self._in_flight[resource_group] = count

    # -----------------------------
    # Provider calls
    # -----------------------------

    async def fetch_resource_group(self, ctx: Context, collect_id: str, rg_name: str) -> Resource | None:
        await self._enter(ctx, rg_name)
        try:
            self._maybe_fail(RESOURCE_GROUP_COLLECTOR, rg_name)
            with self._lock:
                rg = self._groups.get(rg_name)
            if rg is None:
                raise RemoteCallError(f"resource group {rg_name} not found", code=404)
            return replace(rg, collection_uid=collect_id)
        finally:
            self._leave(rg_name)

    def _typed_collector(self, kind: ResourceKind) -> Callable[[Context, str], Awaitable[list[Resource]]]:
        name = collector_name(kind)

        async def _collect(ctx: Context, rg_name: str) -> list[Resource]:
            await self._enter(ctx, rg_name)
            try:
                self._maybe_fail(name, rg_name)
                with self._lock:
                    return list(self._resources.get((kind, rg_name), []))
            finally:
                self._leave(rg_name)

        _collect.__name__ = name
        return _collect

    async def list_scc_findings(self, ctx: Context, rg_name: str) -> list[Observation]:
        await self._enter(ctx, rg_name)
        try:
            self._maybe_fail(FINDINGS_COLLECTOR, rg_name)
            with self._lock:
                return list(self._findings.get(rg_name, []))
        finally:
            self._leave(rg_name)

    # -----------------------------
    # Collector sets
    # -----------------------------

    def resource_collectors(self, kinds: Sequence[ResourceKind] | None = None) -> CollectorSet:
        """One typed collector per resource kind (resource groups excluded)."""
        selected = kinds or [k for k in ResourceKind if k is not ResourceKind.RESOURCE_GROUP]
        project: dict[str, Any] = {}
        for kind in selected:
            call = self._typed_collector(kind)
            if self._limiters is not None:
                call = rate_limited(self._limiters.for_kind(kind), call)
            project[collector_name(kind)] = call
        return CollectorSet(project=project)

    def findings_collectors(self) -> CollectorSet:
        call: Any = self.list_scc_findings
        if self._limiters is not None:
            call = rate_limited(self._limiters.findings, call)
        return CollectorSet(project={FINDINGS_COLLECTOR: call})

    def resource_group_fetcher(self) -> Callable[[Context, str, str], Awaitable[Resource | None]]:
        call: Any = self.fetch_resource_group
        if self._limiters is not None:
            call = rate_limited(self._limiters.iam_search, call)
        return call

    def resource_groups(self) -> list[Resource]:
        with self._lock:
            return list(self._groups.values())

    def resource_group_names(self) -> list[str]:
        with self._lock:
            return list(self._groups)

    def snapshot(self, collect_id: str) -> list[Resource]:
        """Every fixture resource stamped as part of collection `collect_id`,
        bypassing the collectors."""
        now = utc_now()
        with self._lock:
            items = [*self._groups.values(), *(r for rs in self._resources.values() for r in rs)]
        return [replace(r, collection_uid=collect_id, timestamp=now) for r in items]

    # -----------------------------
    # Demo fixtures
    # -----------------------------

    @classmethod
    def demo(cls, *, limiters: QuotaLimiters | None = None) -> FakeCloud:
        now = utc_now()
        org = f"organizations/{DEMO_ORG_ID}"
        folder = "folders/234"
        prod = "projects/modron-test"
        dev = "projects/modron-other-test"

        def _tag(key: str, value: str) -> dict[str, str]:
            return {f"{DEMO_ORG_ID}/{key}": f"{DEMO_ORG_ID}/{key}/{value}"}

        groups = [
            Resource(name=org, payload=ResourceGroup(identifier=DEMO_ORG_ID), resource_group_name=org),
            Resource(
                name=folder,
                parent=org,
                payload=ResourceGroup(identifier="234"),
                resource_group_name=folder,
                tags=_tag("customer_data", "no"),
            ),
            Resource(
                name=prod,
                parent=folder,
                payload=ResourceGroup(identifier="modron-test", display_name="modron-test"),
                resource_group_name=prod,
                tags=_tag("environment", "prod"),
                iam_policy=(Permission(role="roles/owner", principals=("user:admin@example.com",)),),
            ),
            Resource(
                name=dev,
                parent=org,
                payload=ResourceGroup(identifier="modron-other-test", display_name="modron-other-test"),
                resource_group_name=dev,
                tags={**_tag("environment", "dev"), **_tag("employee_data", "yes")},
            ),
        ]
        resources = [
            Resource(
                name="bucket-public",
                parent=prod,
                resource_group_name=prod,
                payload=Bucket(access_type=BucketAccess.PUBLIC, creation_date=now),
            ),
            Resource(
                name="bucket-2",
                parent=prod,
                resource_group_name=prod,
                payload=Bucket(access_type=BucketAccess.PRIVATE, creation_date=now),
            ),
            Resource(
                name="instance-1",
                parent=prod,
                resource_group_name=prod,
                payload=VmInstance(identifier="1", public_ip="203.0.113.10", private_ip="10.0.0.2"),
            ),
            Resource(
                name="gke-node-pool-1",
                parent=dev,
                resource_group_name=dev,
                payload=VmInstance(identifier="2", public_ip="203.0.113.11", private_ip="10.0.0.3"),
            ),
            Resource(
                name="account-1@modron-other-test.iam.gserviceaccount.com[key-1]",
                parent=dev,
                resource_group_name=dev,
                payload=ExportedCredentials(
                    creation_date=now - timedelta(days=400),
                    expiration_date=now + timedelta(days=365),
                ),
            ),
            Resource(
                name="account-2@modron-other-test.iam.gserviceaccount.com[key-2]",
                parent=dev,
                resource_group_name=dev,
                payload=ExportedCredentials(creation_date=now - timedelta(days=10)),
            ),
        ]
        findings = [
            Observation(
                name="OPEN_FIREWALL",
                resource_ref=ResourceRef(group_name=prod, external_id=f"{prod}/firewalls/default-allow-ssh"),
                observed_value="0.0.0.0/0",
                expected_value="restricted source range",
                remediation=Remediation(description="Firewall rule allows SSH from anywhere"),
                severity=Severity.MEDIUM,
                category="MISCONFIGURATION",
                source=ObservationSource.SCC,
            ),
        ]
        return cls(resource_groups=groups, resources=resources, findings=findings, limiters=limiters)

