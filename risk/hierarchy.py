"""
hierarchy.py

Builds the resource-group hierarchy used for tag inheritance.

Only resource-group kind resources become addressable nodes. Every resource
with a parent is attached to its parent node; when the parent is unknown the
resource falls back to the node of its own resource group (unless that group
is empty or is the resource itself). Anything else is logged and dropped.

The hierarchy is a derived, per-query projection: it is rebuilt from the
resources of a collection and never persisted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from contracts.model import HierarchyNode, Resource, ResourceKind

logger = logging.getLogger(__name__)


def compute_hierarchy(resources: Iterable[Resource]) -> dict[str, HierarchyNode]:
    """Return resource-group nodes keyed by name, with children attached."""
    items = list(resources)
    nodes: dict[str, HierarchyNode] = {}
    for r in items:
        if r.kind is ResourceKind.RESOURCE_GROUP:
            nodes[r.name] = HierarchyNode.from_resource(r)

    for r in items:
        if not r.parent:
            continue
        parent = nodes.get(r.parent)
        if parent is None:
            logger.warning("parent %r not found", r.parent, extra={"resource": r.name})
            if not r.resource_group_name:
                logger.error("resource %r has no parent and no resource group", r.name)
                continue
            if r.resource_group_name == r.name:
                logger.error("resource %r is its own parent", r.name)
                continue
            parent = nodes.get(r.resource_group_name)
            if parent is None:
                logger.error("resource group %r not found, is %r orphan?", r.resource_group_name, r.name)
                continue
        child = nodes.get(r.name) if r.kind is ResourceKind.RESOURCE_GROUP else None
        parent.children.append(child or HierarchyNode.from_resource(r))
    return nodes


def ancestors(hierarchy: Mapping[str, HierarchyNode], name: str) -> list[str]:
    """Names of the ancestors of `name`, nearest first. Stops at the root,
    at a missing node or on a cycle."""
    out: list[str] = []
    seen = {name}
    node = hierarchy.get(name)
    while node is not None and node.parent:
        parent = node.parent
        if parent in seen:
            logger.warning("cycle in hierarchy at %r", parent)
            break
        seen.add(parent)
        out.append(parent)
        node = hierarchy.get(parent)
    return out


def merged_tags(hierarchy: Mapping[str, HierarchyNode], name: str) -> dict[str, str]:
    """Tags of `name` merged with those of its ancestors; the nearest wins."""
    merged: dict[str, str] = {}
    seen: set[str] = set()
    current = name
    while current and current not in seen:
        node = hierarchy.get(current)
        if node is None:
            break
        seen.add(current)
        for key, value in node.tags.items():
            merged.setdefault(key, value)
        current = node.parent
    return merged
