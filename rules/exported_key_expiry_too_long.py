from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from dateutil.relativedelta import relativedelta

from contracts.context import Context
from contracts.interfaces import EngineHandle, RuleInfo
from contracts.model import (
    ExportedCredentials,
    Observation,
    Remediation,
    Resource,
    ResourceKind,
    ResourceRef,
    Severity,
    utc_now,
)
from rules.common import project_id, readable_resource_name

logger = logging.getLogger(__name__)

EXPORTED_KEY_EXPIRY_TOO_LONG = "EXPORTED_KEY_EXPIRY_TOO_LONG"

DEFAULT_EXPIRY_MONTHS = 6
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S +0000 UTC"


class ExportedKeyExpiryTooLongRule:
    """Flags exported credentials older than the rotation period.

    Rule config: {"expiry_months": <int>} (default 6).
    """

    name = EXPORTED_KEY_EXPIRY_TOO_LONG

    def __init__(self, *, now: Callable[[], datetime] = utc_now) -> None:
        self._info = RuleInfo(name=self.name, accepted_kinds=frozenset({ResourceKind.EXPORTED_CREDENTIALS}))
        self._now = now

    def info(self) -> RuleInfo:
        return self._info

    def _expiry_months(self, engine: EngineHandle) -> int:
        raw = engine.get_rule_config(self.name).get("expiry_months", DEFAULT_EXPIRY_MONTHS)
        try:
            months = int(raw)
        except (TypeError, ValueError):
            logger.warning("invalid expiry_months %r for %s, using %d", raw, self.name, DEFAULT_EXPIRY_MONTHS)
            return DEFAULT_EXPIRY_MONTHS
        if months < 1:
            logger.warning("expiry_months must be >= 1, got %d; using %d", months, DEFAULT_EXPIRY_MONTHS)
            return DEFAULT_EXPIRY_MONTHS
        return months

    def check(
        self, ctx: Context, engine: EngineHandle, resource: Resource
    ) -> tuple[list[Observation], list[Exception]]:
        creds = resource.payload
        if not isinstance(creds, ExportedCredentials):
            return [], [TypeError(f"{resource.name}: expected an exported credentials payload")]
        if creds.creation_date is None:
            return [], [ValueError(f"{resource.name}: exported key has no creation date")]

        months = self._expiry_months(engine)
        cutoff = self._now() + relativedelta(months=-months, days=1)
        if creds.creation_date >= cutoff:
            return [], []

        key_name = readable_resource_name(resource.name)
        url = f"https://console.cloud.google.com/apis/credentials?project={project_id(resource.resource_group_name)}"
        ob = Observation(
            name=self.name,
            resource_ref=ResourceRef.of(resource),
            timestamp=utc_now(),
            expected_value="later creation date",
            observed_value=creds.creation_date.strftime(_TIME_FORMAT),
            remediation=Remediation(
                description=f"Exported key [{key_name!r}]({url}) is too long lived",
                recommendation=f"Rotate the exported key [{key_name!r}]({url}) every {months} months",
            ),
            severity=Severity.MEDIUM,
            category="MISCONFIGURATION",
        )
        return [ob], []
