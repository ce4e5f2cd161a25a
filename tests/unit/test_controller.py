"""Tests for the cluster lifecycle controller."""

import asyncio
import time
from typing import Any
from unittest.mock import MagicMock

import pytest

from kubeprov.core.exceptions import (
    InvalidTransitionError,
    ProvisioningTimeoutError,
    RejectedError,
    UnsupportedVersionError,
)
from kubeprov.core.models import ClusterPhase, ClusterSpec, ClusterState
from kubeprov.provisioning.controller import ProvisioningController


@pytest.fixture
def cluster_spec() -> ClusterSpec:
    """Provide a cluster spec."""
    return ClusterSpec(
        name="eks-test",
        vpc_id="vpc-0abc123",
        subnet_ids=("subnet-a", "subnet-b"),
        version="1.28",
        service_role_arn="arn:aws:iam::123456789012:role/eks-test-service-role",
    )


@pytest.fixture
def controller(mock_aws_client: MagicMock) -> ProvisioningController:
    """Controller with fast polling and a fixed version list."""
    mock_aws_client.create_cluster.return_value = {"name": "eks-test", "status": "CREATING"}
    return ProvisioningController(
        mock_aws_client,
        poll_interval=0.01,
        ready_timeout=1,
        delete_timeout=1,
        supported_versions=["1.28", "1.29"],
    )


def _creating() -> ClusterState:
    return ClusterState(name="eks-test", phase=ClusterPhase.CREATING)


def test_rejects_non_positive_settings(mock_aws_client: MagicMock):
    """Test invalid intervals are rejected."""
    with pytest.raises(ValueError):
        ProvisioningController(mock_aws_client, poll_interval=0)


class TestProvision:
    """Tests for provision."""

    @pytest.mark.asyncio
    async def test_provision_returns_creating(
        self, controller: ProvisioningController, cluster_spec: ClusterSpec
    ):
        """Test provision submits the cluster and moves to CREATING."""
        state = await controller.provision(cluster_spec)

        assert state.phase == ClusterPhase.CREATING
        assert controller.state("eks-test") == state
        controller.aws.create_cluster.assert_called_once_with(cluster_spec)

    @pytest.mark.asyncio
    async def test_unsupported_version_before_create(
        self, controller: ProvisioningController, cluster_spec: ClusterSpec
    ):
        """Test an unsupported version fails without any create call."""
        spec = cluster_spec.model_copy(update={"version": "1.10"})

        with pytest.raises(UnsupportedVersionError, match="1.10"):
            await controller.provision(spec)

        controller.aws.create_cluster.assert_not_called()
        assert controller.state("eks-test").phase == ClusterPhase.PENDING

    @pytest.mark.asyncio
    async def test_versions_queried_from_provider(
        self, mock_aws_client: MagicMock, cluster_spec: ClusterSpec
    ):
        """Test the provider's version list is used when none is configured."""
        mock_aws_client.list_supported_versions.return_value = ["1.30"]
        controller = ProvisioningController(mock_aws_client, poll_interval=0.01)

        with pytest.raises(UnsupportedVersionError):
            await controller.provision(cluster_spec)

        mock_aws_client.list_supported_versions.assert_called_once()

    @pytest.mark.asyncio
    async def test_rejected_create_propagates(
        self, controller: ProvisioningController, cluster_spec: ClusterSpec
    ):
        """Test a rejected create raises RejectedError."""
        controller.aws.create_cluster.side_effect = RejectedError("bad subnets")

        with pytest.raises(RejectedError):
            await controller.provision(cluster_spec)


class TestAwaitReady:
    """Tests for await_ready."""

    @pytest.mark.asyncio
    async def test_becomes_active(
        self, controller: ProvisioningController, active_cluster_description: dict[str, Any]
    ):
        """Test polling until ACTIVE fills in endpoint and CA."""
        controller.aws.describe_cluster.side_effect = [
            {"status": "CREATING"},
            {"status": "CREATING"},
            active_cluster_description,
        ]

        state = await controller.await_ready(_creating())

        assert state.phase == ClusterPhase.ACTIVE
        assert state.endpoint == active_cluster_description["endpoint"]
        assert state.certificate_authority == "Y2VydGlmaWNhdGU="
        assert state.arn == active_cluster_description["arn"]
        assert controller.aws.describe_cluster.call_count == 3

    @pytest.mark.asyncio
    async def test_provider_failure(self, controller: ProvisioningController):
        """Test a FAILED cluster raises RejectedError with the health issues."""
        controller.aws.describe_cluster.return_value = {
            "status": "FAILED",
            "health": {"issues": [{"code": "SubnetNotFound", "message": "subnet-a is gone"}]},
        }

        with pytest.raises(RejectedError, match="SubnetNotFound"):
            await controller.await_ready(_creating())

        state = controller.state("eks-test")
        assert state.phase == ClusterPhase.FAILED
        assert "subnet-a is gone" in state.failure_reason

    @pytest.mark.asyncio
    async def test_cluster_disappears(self, controller: ProvisioningController):
        """Test a vanished cluster is treated as rejected."""
        controller.aws.describe_cluster.return_value = None

        with pytest.raises(RejectedError, match="no longer exists"):
            await controller.await_ready(_creating())

    @pytest.mark.asyncio
    async def test_timeout_is_bounded(self, mock_aws_client: MagicMock):
        """Test await_ready returns within the timeout plus one interval."""
        mock_aws_client.describe_cluster.return_value = {"status": "CREATING"}
        controller = ProvisioningController(
            mock_aws_client, poll_interval=0.05, ready_timeout=0.2, supported_versions=["1.28"]
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ProvisioningTimeoutError):
            await controller.await_ready(_creating())
        elapsed = loop.time() - started

        assert elapsed >= 0.2
        # one interval plus scheduling slack
        assert elapsed < 0.2 + 0.05 + 0.2
        assert controller.state("eks-test") is None

    @pytest.mark.asyncio
    async def test_slow_describe_is_bounded(self, mock_aws_client: MagicMock):
        """Test a DescribeCluster call that hangs cannot stretch the wait past its bound."""
        mock_aws_client.describe_cluster.side_effect = lambda name: time.sleep(0.5) or {
            "status": "CREATING"
        }
        controller = ProvisioningController(
            mock_aws_client, poll_interval=0.05, ready_timeout=0.2, supported_versions=["1.28"]
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ProvisioningTimeoutError, match="not ACTIVE"):
            await controller.await_ready(_creating())
        elapsed = loop.time() - started

        assert elapsed < 0.2 + 0.05 + 0.15

    @pytest.mark.asyncio
    async def test_cancellation(self, mock_aws_client: MagicMock):
        """Test a cancelled wait stops polling and raises CancelledError."""
        mock_aws_client.describe_cluster.return_value = {"status": "CREATING"}
        controller = ProvisioningController(mock_aws_client, poll_interval=0.01, ready_timeout=60)

        task = asyncio.create_task(controller.await_ready(_creating()))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        polls = mock_aws_client.describe_cluster.call_count
        await asyncio.sleep(0.05)
        assert mock_aws_client.describe_cluster.call_count == polls

    @pytest.mark.asyncio
    async def test_already_active(self, controller: ProvisioningController, active_cluster):
        """Test an ACTIVE state is returned without polling."""
        assert await controller.await_ready(active_cluster) is active_cluster
        controller.aws.describe_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_pending_state_rejected(self, controller: ProvisioningController):
        """Test waiting on a state that was never submitted."""
        with pytest.raises(InvalidTransitionError):
            await controller.await_ready(ClusterState(name="eks-test"))


class TestTeardown:
    """Tests for teardown and await_deleted."""

    @pytest.mark.asyncio
    async def test_teardown_and_wait(self, controller: ProvisioningController, active_cluster):
        """Test ACTIVE -> DELETING -> DELETED."""
        controller.aws.delete_cluster.return_value = True
        controller.aws.describe_cluster.side_effect = [{"status": "DELETING"}, None]

        state = await controller.teardown(active_cluster)
        assert state.phase == ClusterPhase.DELETING

        state = await controller.await_deleted(state)
        assert state.phase == ClusterPhase.DELETED
        assert state.endpoint is None

    @pytest.mark.asyncio
    async def test_teardown_already_gone(self, controller: ProvisioningController, active_cluster):
        """Test a cluster that is already gone goes straight to DELETED."""
        controller.aws.delete_cluster.return_value = False

        state = await controller.teardown(active_cluster)

        assert state.phase == ClusterPhase.DELETED

    @pytest.mark.asyncio
    async def test_teardown_from_creating_not_allowed(self, controller: ProvisioningController):
        """Test CREATING cannot move to DELETING and no delete is issued."""
        with pytest.raises(InvalidTransitionError):
            await controller.teardown(_creating())

        controller.aws.delete_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_timeout(self, mock_aws_client: MagicMock):
        """Test await_deleted times out while the cluster still exists."""
        mock_aws_client.describe_cluster.return_value = {"status": "DELETING"}
        controller = ProvisioningController(mock_aws_client, poll_interval=0.01, delete_timeout=0.05)

        with pytest.raises(ProvisioningTimeoutError):
            await controller.await_deleted(ClusterState(name="eks-test", phase=ClusterPhase.DELETING))


class TestObserve:
    """Tests for observe."""

    @pytest.mark.asyncio
    async def test_observe_active(
        self, controller: ProvisioningController, active_cluster_description: dict[str, Any]
    ):
        """Test observe maps provider status to a phase."""
        controller.aws.describe_cluster.return_value = active_cluster_description

        state = await controller.observe("eks-test")

        assert state.phase == ClusterPhase.ACTIVE
        assert state.version == "1.28"

    @pytest.mark.asyncio
    async def test_observe_missing(self, controller: ProvisioningController):
        """Test a missing cluster is DELETED."""
        controller.aws.describe_cluster.return_value = None

        state = await controller.observe("eks-test")

        assert state.phase == ClusterPhase.DELETED
