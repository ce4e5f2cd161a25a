"""Pytest configuration and shared fixtures."""

from typing import Any
from unittest.mock import MagicMock

import pytest
import structlog

from kubeprov.core.config import EKS_VIEW_ACCESS_POLICY_ARN, KubeprovConfig
from kubeprov.core.models import (
    AccessBinding,
    AccessScope,
    ClusterPhase,
    ClusterPrincipal,
    ClusterState,
    ExecutionIdentity,
    ExecutionRequest,
)

ACCOUNT_ID = "123456789012"
CLUSTER_NAME = "eks-test"
CLUSTER_ARN = f"arn:aws:eks:us-east-1:{ACCOUNT_ID}:cluster/{CLUSTER_NAME}"
ROLE_ARN = f"arn:aws:iam::{ACCOUNT_ID}:role/{CLUSTER_NAME}-kubectl-role"


@pytest.fixture(autouse=True)
def reset_structlog():
    """Restore default structlog configuration after each test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def sample_config() -> KubeprovConfig:
    """Provide a sample configuration with fast polling."""
    return KubeprovConfig(
        aws={"region": "us-east-1", "account_id": ACCOUNT_ID},
        network={"vpc_id": "vpc-0abc123"},
        cluster={"name": CLUSTER_NAME, "version": "1.28", "supported_versions": ["1.28", "1.29"]},
        provisioning={
            "poll_interval_seconds": 0.01,
            "ready_timeout_seconds": 1,
            "delete_timeout_seconds": 1,
        },
    )


@pytest.fixture
def mock_aws_client() -> MagicMock:
    """Mock AWS client for testing."""
    aws = MagicMock()
    aws.region = "us-east-1"
    return aws


@pytest.fixture
def active_cluster_description() -> dict[str, Any]:
    """EKS DescribeCluster payload for an ACTIVE cluster."""
    return {
        "name": CLUSTER_NAME,
        "arn": CLUSTER_ARN,
        "status": "ACTIVE",
        "version": "1.28",
        "endpoint": "https://ABCDEF.gr7.us-east-1.eks.amazonaws.com",
        "certificateAuthority": {"data": "Y2VydGlmaWNhdGU="},
    }


@pytest.fixture
def active_cluster() -> ClusterState:
    """ACTIVE cluster state."""
    return ClusterState(
        name=CLUSTER_NAME,
        phase=ClusterPhase.ACTIVE,
        arn=CLUSTER_ARN,
        endpoint="https://ABCDEF.gr7.us-east-1.eks.amazonaws.com",
        certificate_authority="Y2VydGlmaWNhdGU=",
        version="1.28",
    )


@pytest.fixture
def automation_identity() -> ExecutionIdentity:
    """Automation execution identity."""
    return ExecutionIdentity(
        role_name=f"{CLUSTER_NAME}-kubectl-role",
        role_arn=ROLE_ARN,
        trust_principal=f"arn:aws:iam::{ACCOUNT_ID}:root",
    )


@pytest.fixture
def confirmed_binding() -> AccessBinding:
    """Cluster-wide view binding for the automation identity."""
    return AccessBinding(
        cluster_name=CLUSTER_NAME,
        principal=ClusterPrincipal(principal_arn=ROLE_ARN),
        scope=AccessScope(),
        policy_arn=EKS_VIEW_ACCESS_POLICY_ARN,
        confirmed=True,
    )


@pytest.fixture
def uid_request() -> ExecutionRequest:
    """Read of the root CA config map's uid."""
    return ExecutionRequest(
        object_type="ConfigMap",
        name="kube-root-ca.crt",
        namespace="default",
        json_path="$.metadata.uid",
        timeout_seconds=1,
    )


# ==============================================================================
# Pytest Markers
# ==============================================================================


def pytest_configure(config: Any) -> None:
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
