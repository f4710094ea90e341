"""
model.py

Domain types shared by the collector, the risk scorer, the rule engine and the
storage backends.

- Resource: tagged union over resource kinds. The kind is derived from the type
  of the single payload attached to the resource (see `ResourceKind`).
- Observation: one rule finding against one resource. Immutable; enrichment
  (impact, risk score, scan id) produces copies with `dataclasses.replace`.
- Operation: audit-log record for a collection or a scan of one resource group.
- HierarchyNode: derived projection of resource groups used for tag inheritance.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum, IntEnum
from typing import Union

# -----------------------------
# Enums
# -----------------------------


class Severity(IntEnum):
    """Observation severity. Ordered: UNKNOWN < INFO < ... < CRITICAL."""

    UNKNOWN = 0
    INFO = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5


class Impact(IntEnum):
    """Business impact of a resource group, derived from inherited tags."""

    UNKNOWN = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def parse(cls, value: str) -> Impact:
        """Parse "high" / "IMPACT_HIGH" / "High" into an Impact."""
        text = str(value or "").strip().upper()
        if text.startswith("IMPACT_"):
            text = text[len("IMPACT_"):]
        try:
            return cls[text]
        except KeyError as exc:
            raise ValueError(f"unknown impact: {value!r}") from exc


class ResourceKind(str, Enum):
    BUCKET = "bucket"
    VM_INSTANCE = "vm_instance"
    SERVICE_ACCOUNT = "service_account"
    KUBERNETES_CLUSTER = "kubernetes_cluster"
    NAMESPACE = "namespace"
    POD = "pod"
    DATABASE = "database"
    NETWORK = "network"
    LOAD_BALANCER = "load_balancer"
    API_KEY = "api_key"
    EXPORTED_CREDENTIALS = "exported_credentials"
    RESOURCE_GROUP = "resource_group"
    GROUP = "group"


class BucketAccess(str, Enum):
    ACCESS_UNKNOWN = "ACCESS_UNKNOWN"
    PRIVATE = "PRIVATE"
    PUBLIC = "PUBLIC"


class ObservationSource(str, Enum):
    UNKNOWN = "UNKNOWN"
    MODRON = "MODRON"
    SCC = "SCC"


class OperationStatus(str, Enum):
    STARTED = "STARTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


OPERATION_COLLECTION = "collection"
OPERATION_SCAN = "scan"


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_uid() -> str:
    return str(uuid.uuid4())


# -----------------------------
# Resource payloads (one per kind)
# -----------------------------


@dataclass(frozen=True)
class Bucket:
    access_type: BucketAccess = BucketAccess.ACCESS_UNKNOWN
    creation_date: datetime | None = None
    retention_days: int = 0


@dataclass(frozen=True)
class VmInstance:
    identifier: str = ""
    public_ip: str = ""
    private_ip: str = ""
    service_account: str = ""


@dataclass(frozen=True)
class ServiceAccount:
    email: str = ""
    disabled: bool = False


@dataclass(frozen=True)
class KubernetesCluster:
    master_version: str = ""
    nodes_version: str = ""
    private_cluster: bool = False
    master_authorized_networks: tuple[str, ...] = ()


@dataclass(frozen=True)
class Namespace:
    cluster: str = ""


@dataclass(frozen=True)
class Pod:
    namespace: str = ""
    phase: str = ""
    containers: tuple[str, ...] = ()


@dataclass(frozen=True)
class Database:
    engine: str = ""
    version: str = ""
    tls_required: bool = False
    authorized_networks: tuple[str, ...] = ()


@dataclass(frozen=True)
class Network:
    ips: tuple[str, ...] = ()
    private_google_access_v4: bool = False


@dataclass(frozen=True)
class LoadBalancer:
    lb_type: str = ""
    min_tls_version: str = ""
    user_managed_certificates: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApiKey:
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExportedCredentials:
    creation_date: datetime | None = None
    expiration_date: datetime | None = None
    last_usage: datetime | None = None


@dataclass(frozen=True)
class ResourceGroup:
    identifier: str = ""
    display_name: str = ""


@dataclass(frozen=True)
class Group:
    members: tuple[str, ...] = ()


ResourcePayload = Union[
    Bucket,
    VmInstance,
    ServiceAccount,
    KubernetesCluster,
    Namespace,
    Pod,
    Database,
    Network,
    LoadBalancer,
    ApiKey,
    ExportedCredentials,
    ResourceGroup,
    Group,
]

PAYLOAD_KINDS: Mapping[type, ResourceKind] = {
    Bucket: ResourceKind.BUCKET,
    VmInstance: ResourceKind.VM_INSTANCE,
    ServiceAccount: ResourceKind.SERVICE_ACCOUNT,
    KubernetesCluster: ResourceKind.KUBERNETES_CLUSTER,
    Namespace: ResourceKind.NAMESPACE,
    Pod: ResourceKind.POD,
    Database: ResourceKind.DATABASE,
    Network: ResourceKind.NETWORK,
    LoadBalancer: ResourceKind.LOAD_BALANCER,
    ApiKey: ResourceKind.API_KEY,
    ExportedCredentials: ResourceKind.EXPORTED_CREDENTIALS,
    ResourceGroup: ResourceKind.RESOURCE_GROUP,
    Group: ResourceKind.GROUP,
}


# -----------------------------
# Resource
# -----------------------------


@dataclass(frozen=True)
class Permission:
    role: str
    principals: tuple[str, ...] = ()


@dataclass(frozen=True)
class Resource:
    """A collected cloud resource.

    `name` + `resource_group_name` are stable across collections so updates can
    be correlated; `uid` is generated once when the record is created.
    """

    name: str
    payload: ResourcePayload
    resource_group_name: str = ""
    parent: str = ""
    uid: str = field(default_factory=new_uid)
    display_name: str = ""
    link: str = ""
    collection_uid: str = ""
    timestamp: datetime | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    tags: Mapping[str, str] = field(default_factory=dict)
    ancestors: tuple[str, ...] = ()
    iam_policy: tuple[Permission, ...] = ()

    def __post_init__(self) -> None:
        if type(self.payload) not in PAYLOAD_KINDS:
            raise ValueError(f"unsupported resource payload: {type(self.payload).__name__}")

    @property
    def kind(self) -> ResourceKind:
        return PAYLOAD_KINDS[type(self.payload)]


@dataclass(frozen=True)
class ResourceRef:
    """Weak back-reference from an observation to the resource it is about."""

    uid: str = ""
    group_name: str = ""
    external_id: str = ""

    @classmethod
    def of(cls, resource: Resource) -> ResourceRef:
        return cls(uid=resource.uid, group_name=resource.resource_group_name, external_id=resource.name)


# -----------------------------
# Observation
# -----------------------------

Scalar = Union[str, int, float, bool, None]


@dataclass(frozen=True)
class Remediation:
    description: str = ""
    recommendation: str = ""


@dataclass(frozen=True)
class Observation:
    name: str
    resource_ref: ResourceRef
    uid: str = field(default_factory=new_uid)
    timestamp: datetime | None = None
    expected_value: Scalar = None
    observed_value: Scalar = None
    remediation: Remediation = field(default_factory=Remediation)
    severity: Severity = Severity.UNKNOWN
    impact: Impact = Impact.UNKNOWN
    impact_reason: str = ""
    risk_score: Severity = Severity.UNKNOWN
    category: str = ""
    source: ObservationSource = ObservationSource.UNKNOWN
    scan_uid: str = ""
    collection_id: str = ""


# -----------------------------
# Operation log
# -----------------------------


@dataclass(frozen=True)
class Operation:
    id: str
    resource_group: str
    type: str
    status: OperationStatus
    status_time: datetime = field(default_factory=utc_now)
    reason: str = ""


# -----------------------------
# Hierarchy
# -----------------------------


@dataclass
class HierarchyNode:
    """Derived, per-query projection of a resource used for tag inheritance."""

    name: str
    parent: str = ""
    kind: ResourceKind = ResourceKind.RESOURCE_GROUP
    uid: str = ""
    tags: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    children: list[HierarchyNode] = field(default_factory=list)

    @classmethod
    def from_resource(cls, resource: Resource) -> HierarchyNode:
        return cls(
            name=resource.name,
            parent=resource.parent,
            kind=resource.kind,
            uid=resource.uid,
            tags=dict(resource.tags),
            labels=dict(resource.labels),
        )


# -----------------------------
# Storage filter
# -----------------------------


@dataclass(frozen=True)
class StorageFilter:
    """Optional filters; a None field does not filter.

    `start_time` and `time_offset` must be set together; the window spans
    from `start_time` to `start_time + time_offset` (offset may be negative).
    """

    limit: int | None = None
    resource_names: tuple[str, ...] | None = None
    resource_group_names: tuple[str, ...] | None = None
    resource_kinds: frozenset[ResourceKind] | None = None
    parent_names: tuple[str, ...] | None = None
    collection_id: str | None = None
    start_time: datetime | None = None
    time_offset: timedelta | None = None


# -----------------------------
# Tag configuration
# -----------------------------


@dataclass(frozen=True)
class TagConfig:
    """Tag keys that drive impact classification, immutable for a run.

    Keys are provider tag identifiers (e.g. "123456789/environment"); values
    resolved from the hierarchy look like "123456789/environment/prod".
    """

    environment: str = ""
    employee_data: str = ""
    customer_data: str = ""
    impact_map: Mapping[str, Impact] = field(default_factory=dict)
