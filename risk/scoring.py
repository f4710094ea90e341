"""
scoring.py

Impact and risk classification of findings.

Impact is a property of the resource group, derived from tags inherited down
the hierarchy (see risk.hierarchy.merged_tags):
- environment tag, looked up in the configured impact map (unmapped -> MEDIUM)
- employee_data / customer_data tags set to "yes" -> HIGH

The highest candidate wins (first one on ties); with no candidates the impact
is MEDIUM with an empty reason. The risk score then shifts the finding's
severity by one step up (HIGH impact) or down (LOW impact), saturating at
CRITICAL and INFO.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from contracts.model import HierarchyNode, Impact, Severity, TagConfig
from risk.hierarchy import merged_tags

logger = logging.getLogger(__name__)

LABEL_EMPLOYEE_DATA = "employee_data"
LABEL_CUSTOMER_DATA = "customer_data"

IMPACT_EMPLOYEE_DATA = Impact.HIGH
IMPACT_CUSTOMER_DATA = Impact.HIGH
DEFAULT_IMPACT = Impact.MEDIUM

_ESCALATE: Mapping[Severity, Severity] = {
    Severity.CRITICAL: Severity.CRITICAL,
    Severity.HIGH: Severity.CRITICAL,
    Severity.MEDIUM: Severity.HIGH,
    Severity.LOW: Severity.MEDIUM,
    Severity.INFO: Severity.LOW,
}

_DEESCALATE: Mapping[Severity, Severity] = {
    Severity.CRITICAL: Severity.HIGH,
    Severity.HIGH: Severity.MEDIUM,
    Severity.MEDIUM: Severity.LOW,
    Severity.LOW: Severity.INFO,
    Severity.INFO: Severity.INFO,
}


# -----------------------------
# Tag helpers
# -----------------------------


def human_readable_tag_key(tag_key: str) -> str:
    """Convert "111111111111/employee_data" to "employee_data"."""
    parts = tag_key.split("/", 1)
    if len(parts) != 2:
        logger.warning("unexpected tag key format: %r", tag_key)
        return tag_key
    return parts[1]


def human_readable_tag_value(tag_value: str) -> str:
    """Convert "111111111111/environment/prod" to "prod"."""
    parts = tag_value.split("/", 2)
    if len(parts) != 3:
        logger.warning("unexpected tag value format: %r", tag_value)
        return tag_value
    return parts[2]


# -----------------------------
# Impact
# -----------------------------


def get_environment(tag_config: TagConfig, hierarchy: Mapping[str, HierarchyNode], rg_name: str) -> str:
    """Environment of `rg_name` as inherited through the hierarchy, or ""."""
    if not tag_config.environment:
        return ""
    value = merged_tags(hierarchy, rg_name).get(tag_config.environment)
    if value is None:
        return ""
    return human_readable_tag_value(value)


def impact_from_environment(impact_map: Mapping[str, Impact], env: str) -> Impact:
    impact = impact_map.get(env)
    if impact is None:
        logger.warning("no impact found for environment %r, using %s", env, DEFAULT_IMPACT.name)
        return DEFAULT_IMPACT
    return impact


def _data_flag(
    tags: Mapping[str, str],
    tag_key: str,
    label: str,
    impact: Impact,
    rg_name: str,
) -> tuple[Impact, str] | None:
    if not tag_key or tag_key not in tags:
        return None
    value = human_readable_tag_value(tags[tag_key])
    lowered = value.lower()
    if lowered == "yes":
        return impact, f"{label}={value}"
    if lowered != "no":
        logger.warning("unknown value for label %s: %r", label, value, extra={"resource_group": rg_name})
    return None


def get_impact(
    tag_config: TagConfig,
    hierarchy: Mapping[str, HierarchyNode],
    rg_name: str,
) -> tuple[Impact, str]:
    """Return (impact, reason) for a resource group.

    Pure with respect to its inputs; unknown tag values only produce log output.
    """
    tags = merged_tags(hierarchy, rg_name)
    candidates: list[tuple[Impact, str]] = []

    env = get_environment(tag_config, hierarchy, rg_name)
    if env:
        candidates.append(
            (
                impact_from_environment(tag_config.impact_map, env),
                f"{human_readable_tag_key(tag_config.environment)}={env}",
            )
        )
    for tag_key, label, impact in (
        (tag_config.employee_data, LABEL_EMPLOYEE_DATA, IMPACT_EMPLOYEE_DATA),
        (tag_config.customer_data, LABEL_CUSTOMER_DATA, IMPACT_CUSTOMER_DATA),
    ):
        flagged = _data_flag(tags, tag_key, label, impact, rg_name)
        if flagged is not None:
            candidates.append(flagged)

    if not candidates:
        logger.debug("no facts that would change the impact of %s", rg_name)
        return DEFAULT_IMPACT, ""

    best_impact, best_reason = Impact.UNKNOWN, ""
    for impact, reason in candidates:
        if impact > best_impact:
            best_impact, best_reason = impact, reason
    return best_impact, best_reason


# -----------------------------
# Risk score
# -----------------------------


def get_risk_score(impact: Impact, severity: Severity) -> Severity:
    if impact == Impact.MEDIUM:
        return Severity(severity)
    if impact == Impact.HIGH:
        return _ESCALATE.get(severity, Severity.UNKNOWN)
    if impact == Impact.LOW:
        return _DEESCALATE.get(severity, Severity.UNKNOWN)
    return Severity.UNKNOWN
