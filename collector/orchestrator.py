"""
orchestrator.py

Bounded, partial-failure tolerant collection of many resource groups.

collect_and_store_all
  -> filter resource group names
  -> per group (at most `max_parallel_collections` at once):
       audit STARTED
       resources:    fetch group + IAM policy, run typed collectors, persist
       observations: fetch group, run findings collectors, score, persist
       audit COMPLETED / FAILED, flush the audit log
  -> join of per-group errors (None when every group succeeded)

Every remote call goes through the backoff layer; rate limiting is applied by
the collectors themselves (see collector.ratelimiter.rate_limited). One failing
collector never hides the results of its siblings.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any, TypeVar

from collector.backoff import BackoffPolicy, run_with_backoff
from contracts.context import Context
from contracts.errors import (
    CollectorError,
    ContextCancelledError,
    JoinedError,
    ModronError,
    ResourceGroupError,
    join_errors,
)
from contracts.interfaces import FindingsCollector, ResourceGroupFetcher, Storage, TypedCollector
from contracts.model import (
    OPERATION_COLLECTION,
    HierarchyNode,
    Observation,
    Operation,
    OperationStatus,
    Resource,
    TagConfig,
    utc_now,
)
from infra.config import CollectorConfig
from risk.hierarchy import ancestors, compute_hierarchy
from risk.scoring import get_impact, get_risk_score

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYS_PROJECT_RE = re.compile(r"^sys-[0-9]+")
VALID_RESOURCE_GROUP_RE = re.compile(r"((organizations|folders)/\d+|(projects/[-a-z0-9.:]+))")

FOLDERS_PREFIX = "folders/"
ORGANIZATIONS_PREFIX = "organizations/"
PROJECTS_PREFIX = "projects/"


def filter_valid_resource_group_names(names: Iterable[str]) -> list[str]:
    """Drop system projects and names that are not resource groups."""
    out: list[str] = []
    for name in names:
        if SYS_PROJECT_RE.match(name):
            continue
        if not VALID_RESOURCE_GROUP_RE.search(name):
            logger.warning("invalid resource group name: %r", name)
            continue
        out.append(name)
    return out


def choose_collectors(
    rg_name: str,
    project: Mapping[str, T],
    organization: Mapping[str, T],
) -> Mapping[str, T]:
    """Pick the collector set matching the group's prefix.

    Folders have no collectors; unknown prefixes raise ValueError.
    """
    if rg_name.startswith(FOLDERS_PREFIX):
        return {}
    if rg_name.startswith(ORGANIZATIONS_PREFIX):
        return organization
    if rg_name.startswith(PROJECTS_PREFIX):
        return project
    raise ValueError(f"no collectors for {rg_name!r}")


@dataclasses.dataclass(frozen=True)
class CollectorSet:
    """Named collectors, split by the kind of resource group they apply to."""

    project: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    organization: Mapping[str, Any] = dataclasses.field(default_factory=dict)


class Collector:
    """Collects resources and findings of many resource groups into storage."""

    def __init__(
        self,
        *,
        storage: Storage,
        fetch_resource_group: ResourceGroupFetcher,
        resource_collectors: CollectorSet,
        findings_collectors: CollectorSet | None = None,
        tag_config: TagConfig | None = None,
        config: CollectorConfig | None = None,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[Context, float], Awaitable[None]] | None = None,
    ) -> None:
        cfg = config or CollectorConfig()
        self._storage = storage
        self._fetch_resource_group = fetch_resource_group
        self._resource_collectors = resource_collectors
        self._findings_collectors = findings_collectors or CollectorSet()
        self._tag_config = tag_config or TagConfig()
        self._max_parallel = cfg.max_parallel_collections
        self._policy = policy or BackoffPolicy.from_config(cfg)
        self._sleep = sleep

    @property
    def max_parallel_collections(self) -> int:
        return self._max_parallel

    # -----------------------------
    # Entry point
    # -----------------------------

    async def collect_and_store_all(
        self,
        ctx: Context,
        collect_id: str,
        resource_group_names: Sequence[str],
        pre_collected_rgs: Sequence[Resource] = (),
    ) -> JoinedError | None:
        names = filter_valid_resource_group_names(resource_group_names)
        hierarchy = compute_hierarchy(pre_collected_rgs)
        semaphore = asyncio.Semaphore(self._max_parallel)
        errors: list[Exception] = []
        tasks: list[asyncio.Task[Exception | None]] = []

        for rg_name in names:
            try:
                await ctx.run(semaphore.acquire(), on_discard=lambda _: semaphore.release())
            except ContextCancelledError as exc:
                errors.append(ResourceGroupError(resource_group=rg_name, cause=exc))
                continue
            tasks.append(
                asyncio.create_task(self._collect_with_slot(ctx, semaphore, collect_id, rg_name, hierarchy))
            )

        for result in await asyncio.gather(*tasks):
            if result is not None:
                errors.append(result)
        return join_errors(errors)

    async def _collect_with_slot(
        self,
        ctx: Context,
        semaphore: asyncio.Semaphore,
        collect_id: str,
        rg_name: str,
        hierarchy: Mapping[str, HierarchyNode],
    ) -> Exception | None:
        try:
            return await self._collect_and_store_all_in_rg(ctx, collect_id, rg_name, hierarchy)
        finally:
            semaphore.release()

    async def _collect_and_store_all_in_rg(
        self,
        ctx: Context,
        collect_id: str,
        rg_name: str,
        hierarchy: Mapping[str, HierarchyNode],
    ) -> Exception | None:
        extra = {"collect_id": collect_id, "resource_group": rg_name}
        self._log_status(ctx, collect_id, rg_name, OperationStatus.STARTED)
        try:
            logger.info("starting collection of %s", rg_name, extra=extra)
            results = await asyncio.gather(
                self._collect_and_store_resources(ctx, collect_id, rg_name, hierarchy),
                self._collect_and_store_observations(ctx, collect_id, rg_name, hierarchy),
                return_exceptions=True,
            )
            errs: list[BaseException] = []
            for res in results:
                if isinstance(res, Exception):
                    errs.append(res)
                elif isinstance(res, BaseException):
                    raise res
                else:
                    errs.extend(res)
            err = join_errors(errs)
            if err is not None:
                logger.error("collection of %s failed: %s", rg_name, err, extra=extra)
                self._log_status(ctx, collect_id, rg_name, OperationStatus.FAILED, str(err))
                return ResourceGroupError(resource_group=rg_name, cause=err)
            self._log_status(ctx, collect_id, rg_name, OperationStatus.COMPLETED)
            return None
        finally:
            try:
                self._storage.flush_ops_log(ctx)
            except Exception as exc:
                # pending operations are closed on the next start
                logger.warning("flush ops log: %s", exc, extra=extra)

    # -----------------------------
    # Resources
    # -----------------------------

    async def get_resource_group(
        self,
        ctx: Context,
        collect_id: str,
        rg_name: str,
        hierarchy: Mapping[str, HierarchyNode] | None = None,
    ) -> Resource:
        """Fetch the group with its IAM policy, annotated with its ancestors."""
        rg = await run_with_backoff(
            ctx,
            self._fetch_resource_group,
            collect_id,
            rg_name,
            policy=self._policy,
            zero_value=lambda: None,
            name="resource_group",
            **self._backoff_kwargs(),
        )
        if rg is None:
            raise ModronError(f"resource group {rg_name} is not accessible")
        changes: dict[str, Any] = {"collection_uid": collect_id, "timestamp": utc_now()}
        if not rg.ancestors and hierarchy:
            changes["ancestors"] = tuple(ancestors(hierarchy, rg.name))
        return dataclasses.replace(rg, **changes)

    async def list_resource_group_resources(
        self, ctx: Context, collect_id: str, rg_name: str
    ) -> tuple[list[Resource], list[Exception]]:
        """Run every typed collector for the group; partial results are kept."""
        try:
            collectors = choose_collectors(
                rg_name, self._resource_collectors.project, self._resource_collectors.organization
            )
        except ValueError as exc:
            return [], [exc]
        collected, errors = await self._run_collectors(ctx, rg_name, collectors)
        now = utc_now()
        resources = [dataclasses.replace(r, collection_uid=collect_id, timestamp=now) for r in collected]
        return resources, errors

    async def _collect_and_store_resources(
        self,
        ctx: Context,
        collect_id: str,
        rg_name: str,
        hierarchy: Mapping[str, HierarchyNode],
    ) -> list[Exception]:
        try:
            rg = await self.get_resource_group(ctx, collect_id, rg_name, hierarchy)
        except Exception as exc:
            return [exc]
        resources, errors = await self.list_resource_group_resources(ctx, collect_id, rg_name)
        resources.append(rg)
        try:
            await asyncio.to_thread(self._storage.batch_create_resources, ctx, resources)
        except Exception as exc:
            errors.append(exc)
        logger.info(
            "%s found %d resources",
            rg_name,
            len(resources),
            extra={"collect_id": collect_id, "resource_group": rg_name},
        )
        return errors

    # -----------------------------
    # Observations
    # -----------------------------

    async def list_resource_group_observations(
        self, ctx: Context, collect_id: str, rg_name: str
    ) -> tuple[list[Observation], list[Exception]]:
        """Run every findings collector for the group; partial results are kept."""
        try:
            collectors = choose_collectors(
                rg_name, self._findings_collectors.project, self._findings_collectors.organization
            )
        except ValueError as exc:
            return [], [exc]
        collected, errors = await self._run_collectors(ctx, rg_name, collectors)
        now = utc_now()
        observations = [
            dataclasses.replace(o, collection_id=collect_id, timestamp=o.timestamp or now) for o in collected
        ]
        return observations, errors

    async def _collect_and_store_observations(
        self,
        ctx: Context,
        collect_id: str,
        rg_name: str,
        hierarchy: Mapping[str, HierarchyNode],
    ) -> list[Exception]:
        try:
            rg = await self.get_resource_group(ctx, collect_id, rg_name, hierarchy)
        except Exception as exc:
            return [exc]
        observations, errors = await self.list_resource_group_observations(ctx, collect_id, rg_name)

        impact, reason = get_impact(self._tag_config, hierarchy, rg_name)
        scored = [
            dataclasses.replace(
                o,
                impact=impact,
                impact_reason=reason,
                risk_score=get_risk_score(impact, o.severity),
            )
            for o in observations
        ]
        if scored:
            try:
                await asyncio.to_thread(self._storage.batch_create_observations, ctx, scored)
            except Exception as exc:
                errors.append(exc)
        logger.info(
            "%s found %d observations",
            rg.name,
            len(scored),
            extra={"collect_id": collect_id, "resource_group": rg_name},
        )
        return errors

    # -----------------------------
    # Helpers
    # -----------------------------

    async def _run_collectors(
        self,
        ctx: Context,
        rg_name: str,
        collectors: Mapping[str, TypedCollector | FindingsCollector],
    ) -> tuple[list[Any], list[Exception]]:
        names = list(collectors)
        results = await asyncio.gather(
            *(self._run_collector(ctx, name, collectors[name], rg_name) for name in names)
        )
        items: list[Any] = []
        errors: list[Exception] = []
        for collected, err in results:
            items.extend(collected)
            if err is not None:
                errors.append(err)
        return items, errors

    async def _run_collector(
        self,
        ctx: Context,
        name: str,
        call: TypedCollector | FindingsCollector,
        rg_name: str,
    ) -> tuple[list[Any], Exception | None]:
        try:
            collected = await run_with_backoff(
                ctx,
                call,
                rg_name,
                policy=self._policy,
                zero_value=list,
                name=name,
                **self._backoff_kwargs(),
            )
            items = list(collected or [])
        except Exception as exc:
            logger.error(
                "collector %s failed for %s: %s",
                name,
                rg_name,
                exc,
                extra={"collector": name, "resource_group": rg_name},
            )
            return [], CollectorError(collector=name, resource_group=rg_name, cause=exc)
        return items, None

    def _backoff_kwargs(self) -> dict[str, Any]:
        if self._sleep is None:
            return {}
        return {"sleep": self._sleep}

    def _log_status(
        self,
        ctx: Context,
        collect_id: str,
        rg_name: str,
        status: OperationStatus,
        reason: str = "",
    ) -> None:
        logger.info(
            "logging collection status: %s",
            status.value,
            extra={"collect_id": collect_id, "resource_group": rg_name},
        )
        try:
            self._storage.add_operation_log(
                ctx,
                [
                    Operation(
                        id=collect_id,
                        resource_group=rg_name,
                        type=OPERATION_COLLECTION,
                        status=status,
                        reason=reason,
                    )
                ],
            )
        except Exception as exc:
            logger.warning("add operation log: %s", exc, extra={"resource_group": rg_name})
