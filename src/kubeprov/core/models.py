"""Core data models for kubeprov."""

import hashlib
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kubeprov.core.exceptions import FailureKind

CLUSTER_SCOPE = "cluster"
NAMESPACE_SCOPE = "namespace"


class ClusterPhase(str, Enum):
    """Cluster lifecycle phase."""

    PENDING = "pending"
    CREATING = "creating"
    ACTIVE = "active"
    FAILED = "failed"
    DELETING = "deleting"
    DELETED = "deleted"


# Allowed lifecycle transitions. PENDING never jumps straight to ACTIVE.
PHASE_TRANSITIONS: dict[ClusterPhase, frozenset[ClusterPhase]] = {
    ClusterPhase.PENDING: frozenset({ClusterPhase.CREATING}),
    ClusterPhase.CREATING: frozenset({ClusterPhase.ACTIVE, ClusterPhase.FAILED}),
    ClusterPhase.ACTIVE: frozenset({ClusterPhase.DELETING}),
    ClusterPhase.FAILED: frozenset({ClusterPhase.DELETING}),
    ClusterPhase.DELETING: frozenset({ClusterPhase.DELETED}),
    ClusterPhase.DELETED: frozenset(),
}


class SubnetType(str, Enum):
    """Subnet classification used by the selection rule."""

    PUBLIC = "public"
    PRIVATE = "private"
    ISOLATED = "isolated"


class AuthenticationMode(str, Enum):
    """EKS cluster authentication mode."""

    API = "API"
    API_AND_CONFIG_MAP = "API_AND_CONFIG_MAP"
    CONFIG_MAP = "CONFIG_MAP"


class SubnetSelection(BaseModel):
    """Rule for picking the cluster's subnets out of a VPC."""

    model_config = ConfigDict(frozen=True)

    subnet_type: SubnetType = SubnetType.PUBLIC
    subnet_ids: tuple[str, ...] = Field(
        default=(), description="Explicit subnet ids; bypasses classification"
    )
    one_per_az: bool = False


class ClusterSpec(BaseModel):
    """Desired state of a cluster, immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100)
    vpc_id: str = Field(..., description="Network the cluster is placed in")
    subnet_ids: tuple[str, ...] = Field(..., min_length=1)
    version: str = Field(..., description="Target control-plane version, e.g. 1.28")
    authentication_mode: AuthenticationMode = AuthenticationMode.API_AND_CONFIG_MAP
    bootstrap_cluster_creator_admin: bool = False
    endpoint_public_access: bool = True
    endpoint_private_access: bool = True
    service_role_arn: str
    tags: dict[str, str] = Field(default_factory=dict)

    def request_token(self) -> str:
        """Derive an idempotency token for CreateCluster.

        Identical specs produce identical tokens, so a retried create after an
        ambiguous failure is deduplicated by the provider.

        Returns:
            Token string (64 chars max)
        """
        digest = hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()
        return f"kubeprov-{digest[:48]}"


class ClusterState(BaseModel):
    """Observed state of a cluster.

    Instances are frozen; the provisioning controller produces a new state for
    every phase transition.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    phase: ClusterPhase = ClusterPhase.PENDING
    arn: str | None = None
    endpoint: str | None = None
    certificate_authority: str | None = None
    version: str | None = None
    failure_reason: str | None = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        """Whether the control plane is ready to serve requests."""
        return self.phase == ClusterPhase.ACTIVE


class ExecutionIdentity(BaseModel):
    """Role that automation code runs as."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["execution"] = "execution"
    role_name: str
    role_arn: str
    trust_principal: str


class ManagementApiGrant(BaseModel):
    """Permission for an identity to call the cluster management API."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["management-api"] = "management-api"
    role_name: str
    policy_name: str
    actions: tuple[str, ...]
    resources: tuple[str, ...]


class ClusterPrincipal(BaseModel):
    """Principal as known inside the cluster."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["cluster-principal"] = "cluster-principal"
    principal_arn: str
    username: str | None = None


class AccessScope(BaseModel):
    """Scope of an in-cluster access policy association."""

    model_config = ConfigDict(frozen=True)

    type: str = CLUSTER_SCOPE
    namespaces: tuple[str, ...] = ()

    def covers(self, namespace: str | None) -> bool:
        """Check whether the scope grants access to a namespace.

        Args:
            namespace: Target namespace, None for cluster-scoped objects

        Returns:
            True if covered
        """
        if self.type == CLUSTER_SCOPE:
            return True
        return namespace is not None and namespace in self.namespaces

    def to_api(self) -> dict:
        """Render as the EKS accessScope structure."""
        scope: dict = {"type": self.type}
        if self.type == NAMESPACE_SCOPE:
            scope["namespaces"] = list(self.namespaces)
        return scope


class AccessBinding(BaseModel):
    """In-cluster authorization for a principal."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str
    principal: ClusterPrincipal
    scope: AccessScope
    policy_arn: str
    confirmed: bool = False

    def grants(self, principal_arn: str, namespace: str | None) -> bool:
        """Whether this binding lets ``principal_arn`` read in ``namespace``."""
        return (
            self.confirmed
            and self.principal.principal_arn == principal_arn
            and self.scope.covers(namespace)
        )


class ExecutionRequest(BaseModel):
    """One bounded read against a live cluster."""

    model_config = ConfigDict(frozen=True)

    object_type: str = Field(..., description="Kind, e.g. ConfigMap")
    name: str
    namespace: str | None = "default"
    json_path: str = Field(..., description="Field path, e.g. $.metadata.uid")
    timeout_seconds: float = Field(30.0, gt=0)
    api_version: str | None = Field(None, description="Disambiguates the kind when set")


class ExecutionResult(BaseModel):
    """Outcome of an ExecutionRequest."""

    model_config = ConfigDict(frozen=True)

    success: bool
    value: str | None = None
    failure: FailureKind | None = None
    message: str = ""

    @model_validator(mode="after")
    def check_consistency(self) -> "ExecutionResult":
        """Successful results carry a value; failed ones carry a kind and no value."""
        if self.success and (self.value is None or self.failure is not None):
            raise ValueError("successful result requires a value and no failure kind")
        if not self.success and (self.failure is None or self.value is not None):
            raise ValueError("failed result requires a failure kind and no value")
        return self

    @classmethod
    def ok(cls, value: str) -> "ExecutionResult":
        """Build a successful result."""
        return cls(success=True, value=value)

    @classmethod
    def failed(cls, kind: FailureKind, message: str) -> "ExecutionResult":
        """Build a failed result."""
        return cls(success=False, failure=kind, message=message)


class StackOutput(BaseModel):
    """Named value surfaced at the end of a deployment."""

    key: str
    value: str
    description: str = ""
    reported_at: datetime = Field(default_factory=datetime.utcnow)
