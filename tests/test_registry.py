"""Unit tests for the rule registry."""
# pylint: disable=too-few-public-methods

from __future__ import annotations

import pytest

from contracts.context import Context
from contracts.errors import RuleNotFoundError
from contracts.interfaces import EngineHandle, Rule, RuleInfo
from contracts.model import Observation, Resource, ResourceKind
from engine.registry import RuleRegistry, default_registry
from rules.bucket_is_public import BUCKET_IS_PUBLIC
from rules.exported_key_expiry_too_long import EXPORTED_KEY_EXPIRY_TOO_LONG
from rules.vm_has_public_ip import VM_HAS_PUBLIC_IP


class _FakeRule:
    """Rule stub with a configurable name."""

    def __init__(self, name: str) -> None:
        self._info = RuleInfo(name=name, accepted_kinds=frozenset({ResourceKind.BUCKET}))

    def info(self) -> RuleInfo:
        return self._info

    def check(
        self, ctx: Context, engine: EngineHandle, resource: Resource
    ) -> tuple[list[Observation], list[Exception]]:
        return [], []


def test_register_and_get() -> None:
    registry = RuleRegistry()
    rule = _FakeRule("A_RULE")

    assert registry.register(rule) is rule
    assert registry.get("A_RULE") is rule
    assert "A_RULE" in registry
    assert len(registry) == 1


def test_duplicate_registration_raises_key_error() -> None:
    registry = RuleRegistry([_FakeRule("A_RULE")])

    with pytest.raises(KeyError, match="Rule already registered for 'A_RULE'"):
        registry.register(_FakeRule("A_RULE"))


def test_empty_name_is_rejected() -> None:
    with pytest.raises(ValueError):
        RuleRegistry().register(_FakeRule("  "))


def test_unknown_rule_raises_rule_not_found() -> None:
    registry = RuleRegistry()

    with pytest.raises(RuleNotFoundError) as excinfo:
        registry.get("NOPE")
    assert isinstance(excinfo.value, KeyError)
    assert str(excinfo.value) == "could not find rule 'NOPE'"


def test_list_all_is_sorted_by_name() -> None:
    registry = RuleRegistry([_FakeRule("B"), _FakeRule("C"), _FakeRule("A")])

    assert [r.info().name for r in registry.list_all()] == ["A", "B", "C"]
    assert registry.names() == ["A", "B", "C"]


def test_default_registry_holds_builtin_rules() -> None:
    registry = default_registry()

    assert registry.names() == sorted([BUCKET_IS_PUBLIC, EXPORTED_KEY_EXPIRY_TOO_LONG, VM_HAS_PUBLIC_IP])
    assert all(isinstance(rule, Rule) for rule in registry.list_all())
