"""Configuration management for kubeprov."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from kubeprov.core.exceptions import ConfigurationError
from kubeprov.core.models import (
    CLUSTER_SCOPE,
    AccessScope,
    AuthenticationMode,
    ExecutionRequest,
    SubnetSelection,
    SubnetType,
)

EKS_SERVICE_PRINCIPAL = "eks.amazonaws.com"
EKS_CLUSTER_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"
EKS_VIEW_ACCESS_POLICY_ARN = "arn:aws:eks::aws:cluster-access-policy/AmazonEKSViewPolicy"


class AWSConfig(BaseModel):
    """AWS configuration."""

    region: str = "us-east-1"
    profile: str | None = None
    account_id: str | None = None


class NetworkConfig(BaseModel):
    """Network placement of the cluster."""

    vpc_id: str
    subnet_type: SubnetType = SubnetType.PUBLIC
    subnet_ids: list[str] = Field(default_factory=list)
    one_per_az: bool = False

    def selection(self) -> SubnetSelection:
        """Build the subnet selection rule."""
        return SubnetSelection(
            subnet_type=self.subnet_type,
            subnet_ids=tuple(self.subnet_ids),
            one_per_az=self.one_per_az,
        )


class ClusterConfig(BaseModel):
    """Control-plane configuration."""

    name: str
    version: str = "1.28"
    authentication_mode: AuthenticationMode = AuthenticationMode.API_AND_CONFIG_MAP
    bootstrap_cluster_creator_admin: bool = False
    endpoint_public_access: bool = True
    endpoint_private_access: bool = True
    service_role_name: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    # When set, replaces the provider's list of supported versions
    supported_versions: list[str] | None = None

    @property
    def resolved_service_role_name(self) -> str:
        """Name of the control-plane service role."""
        return self.service_role_name or f"{self.name}-service-role"


class ProvisioningConfig(BaseModel):
    """Polling and timeout settings for the lifecycle controller."""

    poll_interval_seconds: float = Field(30.0, gt=0)
    ready_timeout_seconds: float = Field(1800.0, gt=0)
    delete_timeout_seconds: float = Field(1200.0, gt=0)
    # Extra attempts for waits that run out of time (cluster ready, binding confirmed)
    timeout_retries: int = Field(2, ge=0)


class AccessConfig(BaseModel):
    """Automation identity and its grants."""

    role_name: str | None = None
    # None trusts the deploying account so the executor can assume the role
    trust_principal: str | None = None
    permitted_actions: list[str] = Field(default_factory=lambda: ["eks:DescribeCluster"])
    access_policy_arn: str = EKS_VIEW_ACCESS_POLICY_ARN
    scope_type: str = CLUSTER_SCOPE
    namespaces: list[str] = Field(default_factory=list)

    def scope(self) -> AccessScope:
        """Build the in-cluster access scope."""
        return AccessScope(type=self.scope_type, namespaces=tuple(self.namespaces))


class ExecutionConfig(BaseModel):
    """Post-provision read."""

    object_type: str = "ConfigMap"
    object_name: str = "kube-root-ca.crt"
    object_namespace: str | None = "default"
    json_path: str = "$.metadata.uid"
    api_version: str | None = None
    timeout_seconds: float = Field(30.0, gt=0)
    timeout_retries: int = Field(2, ge=0)
    assume_role: bool = True

    def request(self) -> ExecutionRequest:
        """Build the execution request."""
        return ExecutionRequest(
            object_type=self.object_type,
            name=self.object_name,
            namespace=self.object_namespace,
            json_path=self.json_path,
            timeout_seconds=self.timeout_seconds,
            api_version=self.api_version,
        )


class OutputsConfig(BaseModel):
    """Where and under which key the result is surfaced."""

    key: str = "demo-output"
    description: str = "Value read from the cluster after provisioning"
    file: str | None = None


class RateLimitsConfig(BaseModel):
    """Rate limiting configuration."""

    aws_api: int = Field(100, gt=0)  # requests per minute


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    output: str = "stdout"


class KubeprovConfig(BaseModel):
    """Main kubeprov configuration."""

    aws: AWSConfig = Field(default_factory=AWSConfig)
    network: NetworkConfig
    cluster: ClusterConfig
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    outputs: OutputsConfig = Field(default_factory=OutputsConfig)
    rate_limits: RateLimitsConfig = Field(default_factory=RateLimitsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("network")
    @classmethod
    def vpc_id_is_filled(cls, network: NetworkConfig) -> NetworkConfig:
        """Reject placeholder network identifiers."""
        if not network.vpc_id.startswith("vpc-"):
            raise ValueError(f"network.vpc_id must be a VPC id, got '{network.vpc_id}'")
        return network

    @property
    def automation_role_name(self) -> str:
        """Name of the automation (kubectl) role."""
        return self.access.role_name or f"{self.cluster.name}-kubectl-role"

    @classmethod
    def from_file(cls, path: str | Path) -> "KubeprovConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            KubeprovConfig instance

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        config_path = Path(path).expanduser()

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with config_path.open() as f:
                data = yaml.safe_load(f)
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration must be a mapping: {config_path}")

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation
        """
        return self.model_dump()
