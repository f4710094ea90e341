"""Helpers shared by rule implementations."""

from __future__ import annotations

import re

PROJECTS_PREFIX = "projects/"

_BRACKET_SUFFIX_RE = re.compile(r"\[.*\]$")


def readable_resource_name(name: str) -> str:
    """Strip a trailing "[...]" qualifier from a resource name."""
    if "[" not in name or "]" not in name:
        return name
    return _BRACKET_SUFFIX_RE.sub("", name)


def project_id(resource_group_name: str) -> str:
    """Convert "projects/modron-test" to "modron-test"."""
    if resource_group_name.startswith(PROJECTS_PREFIX):
        return resource_group_name[len(PROJECTS_PREFIX):]
    return resource_group_name
