"""Contracts shared by every layer of the scanner.

The contracts package defines:
- the domain model (resources, observations, operations, hierarchy nodes)
- the error taxonomy
- the cancellation context threaded through every call
- Protocol definitions for dependency injection (storage, rules, engine)

Main exports:
- Context, Resource, Observation, Operation, HierarchyNode, StorageFilter
- Severity, Impact, ResourceKind, TagConfig
- Rule, RuleInfo, EngineHandle, Storage
- ModronError, JoinedError, join_errors
"""

from contracts import context as context_module
from contracts import errors
from contracts import interfaces
from contracts import model

# Explicit re-exports to satisfy ruff F401
__all__ = [
    "Context",
    "EngineHandle",
    "HierarchyNode",
    "Impact",
    "JoinedError",
    "ModronError",
    "Observation",
    "Operation",
    "Resource",
    "ResourceKind",
    "Rule",
    "RuleInfo",
    "Severity",
    "Storage",
    "StorageFilter",
    "TagConfig",
    "join_errors",
]

# Re-export for convenience
Context = context_module.Context

HierarchyNode = model.HierarchyNode
Impact = model.Impact
Observation = model.Observation
Operation = model.Operation
Resource = model.Resource
ResourceKind = model.ResourceKind
Severity = model.Severity
StorageFilter = model.StorageFilter
TagConfig = model.TagConfig

EngineHandle = interfaces.EngineHandle
Rule = interfaces.Rule
RuleInfo = interfaces.RuleInfo
Storage = interfaces.Storage

JoinedError = errors.JoinedError
ModronError = errors.ModronError
join_errors = errors.join_errors
