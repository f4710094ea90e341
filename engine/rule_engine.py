"""
rule_engine.py

Concurrent evaluation of security rules against collected resources.

check_rules
  -> audit scan STARTED for every resource group
  -> store the resource-group hierarchy of the collection
  -> one task per (non-excluded) rule:
       list accepted resources once, check each in a worker thread,
       enrich observations with impact / reason / risk score
  -> receive exactly one result per rule, each receive raced against the
     context (a cancelled context yields one error per pending rule)
  -> stamp, persist and aggregate
  -> audit scan COMPLETED or CANCELLED, flush the audit log

Rules never see a resource whose kind they do not declare.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from contracts.context import Context
from contracts.errors import (
    ContextCancelledError,
    ModronError,
    ResourceTypeNotAcceptedError,
    RuleExecutionError,
    StorageError,
)
from contracts.interfaces import Rule, Storage
from contracts.model import (
    OPERATION_SCAN,
    HierarchyNode,
    Observation,
    ObservationSource,
    Operation,
    OperationStatus,
    Resource,
    StorageFilter,
    TagConfig,
    new_uid,
)
from infra.config import EngineConfig
from risk.hierarchy import compute_hierarchy
from risk.scoring import get_impact, get_risk_score

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _RuleResult:
    rule: str
    observations: list[Observation] = dataclasses.field(default_factory=list)
    errors: list[Exception] = dataclasses.field(default_factory=list)


class RuleEngine:
    """Runs rules over stored resources. Also the EngineHandle given to rules."""

    def __init__(
        self,
        *,
        storage: Storage,
        rules: Sequence[Rule],
        tag_config: TagConfig | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = config or EngineConfig()
        self._storage = storage
        self._rules = list(rules)
        self._tag_config = tag_config or TagConfig()
        self._excluded = frozenset(cfg.excluded_rules)
        self._rule_configs: dict[str, dict[str, Any]] = {k: dict(v) for k, v in cfg.rule_configs.items()}
        self._cache_ttl = cfg.resource_cache_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._resource_cache: dict[str, tuple[Resource, float]] = {}
        self._hierarchies: dict[str, dict[str, HierarchyNode]] = {}

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    # -----------------------------
    # Scan
    # -----------------------------

    async def check_rules(
        self,
        ctx: Context,
        scan_id: str,
        collect_id: str,
        resource_groups: Sequence[str],
        pre_collected_rgs: Sequence[Resource] = (),
    ) -> tuple[list[Observation], list[Exception]]:
        """Check every enabled rule against `resource_groups`.

        Returns whatever observations succeeded together with every error;
        a non-empty error list does not mean the observations are empty.
        """
        extra = {"scan_id": scan_id, "collect_id": collect_id}
        groups = list(resource_groups)
        logger.info("start check rules on %d resource groups", len(groups), extra=extra)
        self._log_scan_status(ctx, scan_id, groups, OperationStatus.STARTED)

        with self._lock:
            self._hierarchies[collect_id] = compute_hierarchy(pre_collected_rgs)

        rules: list[Rule] = []
        for rule in self._rules:
            name = rule.info().name
            if name in self._excluded:
                logger.info("rule %s excluded", name, extra={"rule": name})
                continue
            rules.append(rule)

        queue: asyncio.Queue[_RuleResult] = asyncio.Queue()
        tasks = [
            asyncio.create_task(self._check_rule_async(ctx, rule, collect_id, groups, queue))
            for rule in rules
        ]
        observations: list[Observation] = []
        errors: list[Exception] = []
        pending = {rule.info().name for rule in rules}
        cancelled = False
        try:
            for _ in range(len(rules)):
                try:
                    result = await ctx.run(queue.get())
                except ContextCancelledError as exc:
                    cancelled = True
                    wrapped = ContextCancelledError(
                        f"context cancelled while waiting for rules {', '.join(sorted(pending))}: {exc}"
                    )
                    wrapped.__cause__ = exc
                    errors.append(wrapped)
                    continue
                pending.discard(result.rule)
                stamped, result_errors = await self._process_result(ctx, scan_id, result)
                observations.extend(stamped)
                errors.extend(result_errors)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            with self._lock:
                self._hierarchies.pop(collect_id, None)
            evicted = self.clear_expired_resources()
            if evicted:
                logger.debug("evicted %d expired cached resources", evicted, extra=extra)

        status = OperationStatus.CANCELLED if cancelled else OperationStatus.COMPLETED
        self._log_scan_status(ctx, scan_id, groups, status)
        try:
            self._storage.flush_ops_log(ctx)
        except Exception as exc:
            logger.error("flushing operation log: %s", exc, extra=extra)
        logger.info(
            "scan %s done: %d observations, %d errors",
            scan_id,
            len(observations),
            len(errors),
            extra=extra,
        )
        return observations, errors

    async def _process_result(
        self, ctx: Context, scan_id: str, result: _RuleResult
    ) -> tuple[list[Observation], list[Exception]]:
        errors: list[Exception] = [RuleExecutionError(rule=result.rule, cause=err) for err in result.errors]
        stamped: list[Observation] = []
        for ob in result.observations:
            uid = ob.uid
            if not uid:
                logger.error("observation from rule %s has no uid", result.rule, extra={"rule": result.rule})
                uid = new_uid()
            stamped.append(dataclasses.replace(ob, uid=uid, scan_uid=scan_id, source=ObservationSource.MODRON))
        if stamped:
            try:
                await asyncio.to_thread(self._storage.batch_create_observations, ctx, stamped)
            except Exception as exc:
                errors.append(StorageError(f"creation of observations for rule {result.rule} failed: {exc}"))
        return stamped, errors

    async def _check_rule_async(
        self,
        ctx: Context,
        rule: Rule,
        collect_id: str,
        resource_groups: Sequence[str],
        queue: asyncio.Queue[_RuleResult],
    ) -> None:
        info = rule.info()
        result = _RuleResult(rule=info.name)
        extra = {"rule": info.name, "collect_id": collect_id}
        started = time.monotonic()
        try:
            flt = StorageFilter(
                resource_kinds=frozenset(info.accepted_kinds),
                resource_group_names=tuple(resource_groups),
                collection_id=collect_id,
            )
            try:
                resources = await asyncio.to_thread(self._storage.list_resources, ctx, flt)
            except Exception as exc:
                logger.error("listing accepted resources: %s", exc, extra=extra)
                result.errors.append(ModronError(f"listing accepted resources: {exc}"))
                return
            if not resources:
                logger.warning("no resources found for rule %s", info.name, extra=extra)
                return
            try:
                obs, errs = await asyncio.to_thread(self.check_rule, ctx, rule, resources)
                result.observations = [self._score(collect_id, ob) for ob in obs]
            except Exception as exc:
                logger.error("checking rule %s: %s", info.name, exc, extra=extra)
                result.errors.append(exc)
                return
            result.errors = errs
            if errs:
                logger.error("rule execution failed: %s", errs, extra=extra)
        finally:
            logger.debug(
                "rule %s done in %.3fs",
                info.name,
                time.monotonic() - started,
                extra=extra,
            )
            queue.put_nowait(result)

    def check_rule(
        self, ctx: Context, rule: Rule, resources: Sequence[Resource]
    ) -> tuple[list[Observation], list[Exception]]:
        """Check `rule` against `resources` directly.

        Resources of a kind the rule does not accept are reported as
        ResourceTypeNotAcceptedError and never reach the rule. When a rule
        reports errors for a resource, its observations for that resource
        are dropped.
        """
        info = rule.info()
        observations: list[Observation] = []
        errors: list[Exception] = []
        for resource in resources:
            err = ctx.err()
            if err is not None:
                errors.append(err)
                break
            if resource.kind not in info.accepted_kinds:
                errors.append(ResourceTypeNotAcceptedError(rule=info.name, kind=resource.kind.value))
                continue
            try:
                new_obs, new_errs = rule.check(ctx, self, resource)
            except ContextCancelledError as exc:
                errors.append(exc)
                break
            except Exception as exc:
                errors.append(exc)
                continue
            if new_errs:
                errors.extend(new_errs)
            else:
                observations.extend(new_obs)
        return observations, errors

    def _score(self, collect_id: str, ob: Observation) -> Observation:
        with self._lock:
            hierarchy = self._hierarchies.get(collect_id)
        if hierarchy is None:
            logger.error("no resource group hierarchy found for %r", collect_id)
            return ob
        if not ob.resource_ref.group_name:
            logger.error("observation %s has no group name", ob.uid)
            return ob
        impact, reason = get_impact(self._tag_config, hierarchy, ob.resource_ref.group_name)
        return dataclasses.replace(
            ob,
            impact=impact,
            impact_reason=reason,
            risk_score=get_risk_score(impact, ob.severity),
        )

    # -----------------------------
    # EngineHandle
    # -----------------------------

    def get_children(self, ctx: Context, parent: str) -> list[Resource]:
        try:
            return self._storage.list_resources(ctx, StorageFilter(parent_names=(parent,)))
        except StorageError as exc:
            raise ModronError(f"children of {parent!r} could not be fetched: {exc}") from exc

    def get_resource(self, ctx: Context, name: str) -> Resource:
        """Fetch one resource by name, memoized for `resource_cache_ttl_seconds`."""
        now = self._clock()
        with self._lock:
            cached = self._resource_cache.get(name)
            if cached is not None and now - cached[1] < self._cache_ttl:
                return cached[0]
        try:
            found = self._storage.list_resources(ctx, StorageFilter(limit=1, resource_names=(name,)))
        except StorageError as exc:
            raise ModronError(f"resource {name!r} could not be fetched: {exc}") from exc
        if not found:
            raise ModronError(f"resource {name!r} does not exist")
        with self._lock:
            self._resource_cache[name] = (found[0], now)
        return found[0]

    def clear_expired_resources(self) -> int:
        """Evict cache entries older than the TTL; returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, ts) in self._resource_cache.items() if now - ts >= self._cache_ttl]
            for key in expired:
                del self._resource_cache[key]
        return len(expired)

    def get_hierarchy(self, ctx: Context, collect_id: str) -> dict[str, HierarchyNode]:
        with self._lock:
            hierarchy = self._hierarchies.get(collect_id)
        if hierarchy is None:
            raise ModronError(f"no hierarchy found for {collect_id!r}")
        return hierarchy

    def get_tag_config(self) -> TagConfig:
        return self._tag_config

    def get_rule_config(self, name: str) -> Mapping[str, Any]:
        return dict(self._rule_configs.get(name, {}))

    # -----------------------------
    # Audit
    # -----------------------------

    def _log_scan_status(
        self, ctx: Context, scan_id: str, resource_groups: Sequence[str], status: OperationStatus
    ) -> None:
        logger.info("scan %r status %s for %s", scan_id, status.value, list(resource_groups))
        ops = [
            Operation(id=scan_id, resource_group=rg, type=OPERATION_SCAN, status=status)
            for rg in resource_groups
        ]
        try:
            self._storage.add_operation_log(ctx, ops)
        except Exception as exc:
            logger.warning("log operation: %s", exc)
