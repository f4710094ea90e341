"""Built-in security rules."""

from __future__ import annotations

from contracts.interfaces import Rule
from rules.bucket_is_public import BucketIsPublicRule
from rules.exported_key_expiry_too_long import ExportedKeyExpiryTooLongRule
from rules.vm_has_public_ip import VmHasPublicIpRule

__all__ = [
    "BucketIsPublicRule",
    "ExportedKeyExpiryTooLongRule",
    "VmHasPublicIpRule",
    "builtin_rules",
]


def builtin_rules() -> list[Rule]:
    """Fresh instances of every built-in rule."""
    return [
        BucketIsPublicRule(),
        ExportedKeyExpiryTooLongRule(),
        VmHasPublicIpRule(),
    ]
