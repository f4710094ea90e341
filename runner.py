"""
runner.py

Modron runner (collect resource groups -> store -> scan with rules -> observations).

Pipeline:
  resource groups
    -> collection (typed collectors + findings, bounded, with backoff)
      -> storage (resources, observations, operation log)
        -> scan (every enabled rule, concurrently)
          -> scored observations

Only the in-memory fake cloud is wired as a provider, so runs need --demo.
Tag keys, excluded rules and rule configs come from infra.config
(environment / .env); in demo mode the demo tag keys are used when none are
configured.

Run the demo collection and scan:
python runner.py --demo

Restrict to some resource groups:
python runner.py --demo --resource-group projects/modron-test --resource-group folders/234

Scan only (storage is seeded from the demo fixtures, collectors are not called):
python runner.py --demo --scan-only
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from collector.fakecloud import DEMO_TAG_CONFIG, FakeCloud
from collector.orchestrator import Collector, filter_valid_resource_group_names
from collector.ratelimiter import QuotaLimiters
from contracts.context import Context
from contracts.model import Observation, TagConfig, new_uid
from engine.registry import default_registry
from engine.rule_engine import RuleEngine
from infra.config import Settings, get_settings
from infra.logging_config import clear_run_context, set_run_context, setup_logging
from storage.memstorage import MemStorage
from version import ENGINE_NAME, ENGINE_VERSION, RULEPACK_VERSION, SCHEMA_VERSION

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _make_run_id(kind: str, run_ts: datetime) -> str:
    return f"{kind}-{run_ts.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')}-{new_uid()[:8]}"


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Modron runner (collect resource groups -> scan with rules)")

    parser.add_argument(
        "--resource-group",
        action="append",
        default=None,  # None means "every known resource group"
        help="Resource group to process, e.g. projects/my-project. Repeatable. If omitted, processes all.",
    )
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Use the in-memory fake cloud with demo fixtures.",
    )
    parser.add_argument(
        "--scan-only",
        action="store_true",
        help="Skip collection; scan what storage holds.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=0.0,
        help="Cancel the run after this many seconds (default: no deadline).",
    )

    # Convenience
    parser.add_argument(
        "--print-version",
        action="store_true",
        help="Print engine/rulepack/schema versions and exit.",
    )

    return parser.parse_args(argv)


@dataclass
class RunResult:
    collect_id: str
    scan_id: str
    resource_groups: list[str]
    collection_errors: list[Exception] = field(default_factory=list)
    observations: list[Observation] = field(default_factory=list)
    scan_errors: list[Exception] = field(default_factory=list)


def _tag_config(settings: Settings, demo: bool) -> TagConfig:
    tags = settings.tags.to_tag_config()
    if demo and not (tags.environment or tags.employee_data or tags.customer_data):
        return DEMO_TAG_CONFIG
    return tags


async def run(
    *,
    settings: Settings,
    cloud: FakeCloud,
    storage: MemStorage,
    tag_config: TagConfig,
    resource_groups: Sequence[str] | None,
    scan_only: bool,
    ctx: Context | None = None,
) -> RunResult:
    """Collect then scan `resource_groups` (all of the cloud's when None)."""
    ctx = ctx or Context()
    run_ts = _utc_now()
    collect_id = _make_run_id("collect", run_ts)
    scan_id = _make_run_id("scan", run_ts)
    names = filter_valid_resource_group_names(
        resource_groups if resource_groups is not None else cloud.resource_group_names()
    )
    result = RunResult(collect_id=collect_id, scan_id=scan_id, resource_groups=names)
    pre_collected = cloud.resource_groups()

    set_run_context(collect_id=collect_id)
    try:
        if scan_only:
            logger.info("scan only: seeding storage from fixtures")
            storage.batch_create_resources(ctx, cloud.snapshot(collect_id))
        else:
            collector = Collector(
                storage=storage,
                fetch_resource_group=cloud.resource_group_fetcher(),
                resource_collectors=cloud.resource_collectors(),
                findings_collectors=cloud.findings_collectors(),
                tag_config=tag_config,
                config=settings.collector,
            )
            err = await collector.collect_and_store_all(ctx, collect_id, names, pre_collected)
            if err is not None:
                result.collection_errors.extend(err.errors)

        set_run_context(scan_id=scan_id)
        engine = RuleEngine(
            storage=storage,
            rules=default_registry().list_all(),
            tag_config=tag_config,
            config=settings.engine,
        )
        observations, errors = await engine.check_rules(ctx, scan_id, collect_id, names, pre_collected)
        result.observations = observations
        result.scan_errors = errors
    finally:
        clear_run_context()
    return result


def _print_summary(result: RunResult, storage: MemStorage) -> None:
    print("=== Run summary ===")
    print(f"collect_id: {result.collect_id}")
    print(f"scan_id: {result.scan_id}")
    print(f"resource_groups: {len(result.resource_groups)}")
    for rg in result.resource_groups:
        print(f"  {rg}")

    print(f"engine_name: {ENGINE_NAME}")
    print(f"engine_version: {ENGINE_VERSION}")
    print(f"rulepack_version: {RULEPACK_VERSION}")
    print(f"schema_version: {SCHEMA_VERSION}")

    print(f"operations_logged: {len(storage.operations())}")
    print(f"observations: {len(result.observations)}")
    per_rule = Counter(o.name for o in result.observations)
    if per_rule:
        print("--- Observations per rule ---")
        for name in sorted(per_rule):
            print(f"{name}: {per_rule[name]}")
        print("--- Observations ---")
        for o in sorted(result.observations, key=lambda o: (o.name, o.resource_ref.external_id)):
            print(
                f"- {o.name} {o.resource_ref.external_id} "
                f"severity={o.severity.name} impact={o.impact.name} risk={o.risk_score.name} "
                f"reason={o.impact_reason or '-'}"
            )

    print(f"collection_errors: {len(result.collection_errors)}")
    print(f"scan_errors: {len(result.scan_errors)}")
    if result.collection_errors:
        print("\n--- Collection errors ---")
        for e in result.collection_errors[:10]:
            print(f"- {e}")
    if result.scan_errors:
        print("\n--- Scan errors ---")
        for e in result.scan_errors[:10]:
            print(f"- {e}")


def main(argv: Sequence[str]) -> int:
    args = _parse_args(argv)

    if args.print_version:
        print(f"ENGINE_NAME={ENGINE_NAME}")
        print(f"ENGINE_VERSION={ENGINE_VERSION}")
        print(f"RULEPACK_VERSION={RULEPACK_VERSION}")
        print(f"SCHEMA_VERSION={SCHEMA_VERSION}")
        return 0

    if not args.demo:
        print("[ERROR] No cloud provider configured; run with --demo to use the fake cloud.", file=sys.stderr)
        return 2

    setup_logging()
    settings = get_settings()

    ctx = Context()
    if args.timeout > 0:
        ctx.cancel_after(args.timeout)

    storage = MemStorage()
    cloud = FakeCloud.demo(limiters=QuotaLimiters.from_config(settings.rate_limits))
    result = asyncio.run(
        run(
            settings=settings,
            cloud=cloud,
            storage=storage,
            tag_config=_tag_config(settings, args.demo),
            resource_groups=args.resource_group,
            scan_only=args.scan_only,
            ctx=ctx,
        )
    )

    _print_summary(result, storage)

    if result.collection_errors or result.scan_errors:
        return 2
    return 0


def _console_main() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
