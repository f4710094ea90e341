from __future__ import annotations

import logging

from contracts.context import Context
from contracts.interfaces import EngineHandle, RuleInfo
from contracts.model import (
    Bucket,
    BucketAccess,
    Observation,
    Remediation,
    Resource,
    ResourceKind,
    ResourceRef,
    Severity,
    utc_now,
)

logger = logging.getLogger(__name__)

BUCKET_IS_PUBLIC = "BUCKET_IS_PUBLIC"


class BucketIsPublicRule:
    """Flags buckets readable by anyone."""

    name = BUCKET_IS_PUBLIC

    def __init__(self) -> None:
        self._info = RuleInfo(name=self.name, accepted_kinds=frozenset({ResourceKind.BUCKET}))

    def info(self) -> RuleInfo:
        return self._info

    def check(
        self, ctx: Context, engine: EngineHandle, resource: Resource
    ) -> tuple[list[Observation], list[Exception]]:
        bucket = resource.payload
        if not isinstance(bucket, Bucket):
            return [], [TypeError(f"{resource.name}: expected a bucket payload")]

        if bucket.access_type is BucketAccess.ACCESS_UNKNOWN:
            logger.warning("unknown access type for bucket %r", resource.name)
            return [], []
        if bucket.access_type is not BucketAccess.PUBLIC:
            return [], []

        url = f"https://console.cloud.google.com/storage/browser/{resource.name}"
        ob = Observation(
            name=self.name,
            resource_ref=ResourceRef.of(resource),
            timestamp=utc_now(),
            expected_value=BucketAccess.PRIVATE.value,
            observed_value=bucket.access_type.value,
            remediation=Remediation(
                description=f"Bucket [{resource.name!r}]({url}) is publicly accessible",
                recommendation=(
                    f"Unless strictly needed, restrict the IAM policy of bucket [{resource.name!r}]({url}) "
                    "to prevent unconditional access by anyone. For more details, see "
                    "[here](https://cloud.google.com/storage/docs/using-public-access-prevention)"
                ),
            ),
            severity=Severity.HIGH,
            category="MISCONFIGURATION",
        )
        return [ob], []
