"""Registry of security rules.

An explicit object rather than import-time global registration: callers build
the registry they need (see `default_registry()`) and hand its rules to the
engine.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from contracts.errors import RuleNotFoundError
from contracts.interfaces import Rule


class RuleRegistry:
    """Name -> rule mapping. Safe for concurrent use."""

    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        self._lock = threading.Lock()
        self._rules: dict[str, Rule] = {}
        for rule in rules:
            self.register(rule)

    def register(self, rule: Rule) -> Rule:
        """Register `rule` under its declared name. Duplicates raise KeyError."""
        name = str(rule.info().name or "").strip()
        if not name:
            raise ValueError("rule name must be non-empty")
        with self._lock:
            if name in self._rules:
                raise KeyError(f"Rule already registered for '{name}'")
            self._rules[name] = rule
        return rule

    def get(self, name: str) -> Rule:
        with self._lock:
            rule = self._rules.get(name)
        if rule is None:
            raise RuleNotFoundError(name)
        return rule

    def list_all(self) -> list[Rule]:
        """Registered rules in deterministic (name) order."""
        with self._lock:
            return [self._rules[name] for name in sorted(self._rules)]

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._rules)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._rules


def default_registry() -> RuleRegistry:
    """Registry holding the built-in rules."""
    from rules import builtin_rules

    return RuleRegistry(builtin_rules())
