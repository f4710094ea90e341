from __future__ import annotations

from contracts.context import Context
from contracts.interfaces import EngineHandle, RuleInfo
from contracts.model import (
    Observation,
    Remediation,
    Resource,
    ResourceKind,
    ResourceRef,
    Severity,
    VmInstance,
    utc_now,
)
from rules.common import project_id

VM_HAS_PUBLIC_IP = "VM_HAS_PUBLIC_IP"

# GKE node VMs are covered by the cluster rules.
_GKE_NODE_PREFIX = "gke-"
_MAX_NAME_LENGTH = 30


class VmHasPublicIpRule:
    """Flags compute instances with an external IP address."""

    name = VM_HAS_PUBLIC_IP

    def __init__(self) -> None:
        self._info = RuleInfo(name=self.name, accepted_kinds=frozenset({ResourceKind.VM_INSTANCE}))

    def info(self) -> RuleInfo:
        return self._info

    def check(
        self, ctx: Context, engine: EngineHandle, resource: Resource
    ) -> tuple[list[Observation], list[Exception]]:
        vm = resource.payload
        if not isinstance(vm, VmInstance):
            return [], [TypeError(f"{resource.name}: expected a vm instance payload")]

        if not vm.public_ip:
            return [], []
        if resource.name.startswith(_GKE_NODE_PREFIX) or len(resource.name) > _MAX_NAME_LENGTH:
            return [], []

        project = project_id(resource.resource_group_name)
        ob = Observation(
            name=self.name,
            resource_ref=ResourceRef.of(resource),
            timestamp=utc_now(),
            expected_value="empty",
            observed_value=vm.public_ip,
            remediation=Remediation(
                description=f"VM {resource.name!r} has a public IP assigned",
                recommendation=(
                    "Compute instances should not be configured to have external IP addresses. "
                    f"Update network-settings of [{resource.name}]"
                    f"(https://console.cloud.google.com/compute/instances?project={project}). "
                    "You can connect to Linux VMs that do not have public IP addresses by using "
                    "Identity-Aware Proxy for TCP forwarding."
                ),
            ),
            severity=Severity.HIGH,
            category="MISCONFIGURATION",
        )
        return [ob], []
