"""
Protocol definitions for dependency injection.

This module defines the explicit interfaces between the pipeline and its
collaborators, enabling:
- Easy fakes in tests (see storage.memstorage, collector.fakecloud)
- Clear contracts between components
- Provider-agnostic orchestration (the collector never imports a cloud SDK)

Usage:
    from contracts.interfaces import Rule, Storage, TypedCollector
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from contracts.context import Context
from contracts.model import (
    HierarchyNode,
    Observation,
    Operation,
    Resource,
    ResourceKind,
    StorageFilter,
    TagConfig,
)

# -----------------------------------------------------------------------------
# Collector contracts
# -----------------------------------------------------------------------------

# One per resource kind: (ctx, resource_group_name) -> resources
TypedCollector = Callable[[Context, str], Awaitable[list[Resource]]]

# Findings-style collectors: (ctx, resource_group_name) -> observations
FindingsCollector = Callable[[Context, str], Awaitable[list[Observation]]]

# Resource group identity + IAM policy: (ctx, collect_id, resource_group_name) -> resource
ResourceGroupFetcher = Callable[[Context, str, str], Awaitable[Resource | None]]


# -----------------------------------------------------------------------------
# Storage
# -----------------------------------------------------------------------------

@runtime_checkable
class Storage(Protocol):
    """Persistence backend. Implementations must be safe for concurrent use
    and raise contracts.errors.StorageError on failure."""

    def batch_create_resources(self, ctx: Context, resources: Sequence[Resource]) -> list[Resource]:
        """Persist resources, return what was stored."""
        ...

    def list_resources(self, ctx: Context, flt: StorageFilter) -> list[Resource]:
        """List resources matching the filter."""
        ...

    def batch_create_observations(self, ctx: Context, observations: Sequence[Observation]) -> list[Observation]:
        """Persist observations, return what was stored."""
        ...

    def list_observations(self, ctx: Context, flt: StorageFilter) -> list[Observation]:
        """List observations matching the filter."""
        ...

    def get_children_of_resource(
        self,
        ctx: Context,
        collection_id: str,
        parent_name: str,
        kind: ResourceKind | None = None,
    ) -> dict[str, HierarchyNode]:
        """Return the direct children of `parent_name` keyed by name."""
        ...

    def add_operation_log(self, ctx: Context, operations: Sequence[Operation]) -> None:
        """Buffer operation records."""
        ...

    def flush_ops_log(self, ctx: Context) -> None:
        """Commit buffered operation records."""
        ...


# -----------------------------------------------------------------------------
# Rules
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class RuleInfo:
    name: str
    accepted_kinds: frozenset[ResourceKind]


@runtime_checkable
class EngineHandle(Protocol):
    """Read-only sibling lookups a rule may perform while checking a resource."""

    def get_children(self, ctx: Context, parent: str) -> list[Resource]:
        ...

    def get_resource(self, ctx: Context, name: str) -> Resource:
        ...

    def get_hierarchy(self, ctx: Context, collect_id: str) -> dict[str, HierarchyNode]:
        ...

    def get_tag_config(self) -> TagConfig:
        ...

    def get_rule_config(self, name: str) -> Mapping[str, Any]:
        ...


@runtime_checkable
class Rule(Protocol):
    """A security check. Must declare every resource kind it consumes."""

    def info(self) -> RuleInfo:
        ...

    def check(
        self, ctx: Context, engine: EngineHandle, resource: Resource
    ) -> tuple[list[Observation], list[Exception]]:
        """Return observations and rule-local errors for one resource."""
        ...
