"""Cluster lifecycle controller.

Drives a cluster through ``Pending -> Creating -> Active`` (or ``Failed``) and
``Active/Failed -> Deleting -> Deleted`` by issuing EKS calls and polling
DescribeCluster. Every phase change goes through ``_transition`` which enforces
the state machine; callers only ever see frozen ClusterState snapshots.
"""

import asyncio
from typing import Any

from kubeprov.clients.aws_client import AWSClient
from kubeprov.core.exceptions import (
    InvalidTransitionError,
    ProvisioningTimeoutError,
    RejectedError,
    UnsupportedVersionError,
)
from kubeprov.core.models import PHASE_TRANSITIONS, ClusterPhase, ClusterSpec, ClusterState
from kubeprov.utils.logging import get_logger

logger = get_logger(__name__)

# EKS cluster status -> lifecycle phase
PROVIDER_PHASES: dict[str, ClusterPhase] = {
    "PENDING": ClusterPhase.CREATING,
    "CREATING": ClusterPhase.CREATING,
    "ACTIVE": ClusterPhase.ACTIVE,
    "UPDATING": ClusterPhase.ACTIVE,
    "FAILED": ClusterPhase.FAILED,
    "DELETING": ClusterPhase.DELETING,
}


def _describe_fields(description: dict[str, Any]) -> dict[str, Any]:
    return {
        "arn": description.get("arn"),
        "endpoint": description.get("endpoint"),
        "certificate_authority": (description.get("certificateAuthority") or {}).get("data"),
        "version": description.get("version"),
    }


def _failure_reason(description: dict[str, Any]) -> str:
    issues = (description.get("health") or {}).get("issues") or []
    if not issues:
        return "provider reported status FAILED"
    return "; ".join(f"{i.get('code', 'Unknown')}: {i.get('message', '')}" for i in issues)


class ProvisioningController:
    """Provision, await and tear down EKS control planes."""

    def __init__(
        self,
        aws_client: AWSClient,
        poll_interval: float = 30.0,
        ready_timeout: float = 1800.0,
        delete_timeout: float = 1200.0,
        supported_versions: list[str] | None = None,
    ):
        """Initialize controller.

        Args:
            aws_client: AWS client used for EKS calls
            poll_interval: Seconds between DescribeCluster polls
            ready_timeout: Overall bound for await_ready (seconds)
            delete_timeout: Overall bound for await_deleted (seconds)
            supported_versions: Version allow-list; queried from EKS when None
        """
        if poll_interval <= 0 or ready_timeout <= 0 or delete_timeout <= 0:
            raise ValueError("poll_interval and timeouts must be positive")

        self.aws = aws_client
        self.poll_interval = poll_interval
        self.ready_timeout = ready_timeout
        self.delete_timeout = delete_timeout
        self.supported_versions = supported_versions
        self._states: dict[str, ClusterState] = {}

    def state(self, cluster_name: str) -> ClusterState | None:
        """Latest state this controller holds for a cluster."""
        return self._states.get(cluster_name)

    def _transition(
        self, state: ClusterState, phase: ClusterPhase, **updates: Any
    ) -> ClusterState:
        if phase not in PHASE_TRANSITIONS[state.phase]:
            raise InvalidTransitionError(
                f"Cluster {state.name}: {state.phase.value} -> {phase.value} is not allowed"
            )

        new_state = ClusterState(
            **{**state.model_dump(exclude={"updated_at"}), **updates, "phase": phase}
        )
        self._states[state.name] = new_state

        logger.info(
            "cluster_phase_changed",
            cluster_name=state.name,
            from_phase=state.phase.value,
            to_phase=phase.value,
        )
        return new_state

    async def _describe_within(
        self, cluster_name: str, deadline: float, timeout: float, waiting_for: str
    ) -> dict[str, Any] | None:
        # A slow or throttled describe may run at most one interval past the deadline
        loop = asyncio.get_running_loop()
        budget = max(deadline - loop.time(), 0.0) + self.poll_interval
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.aws.describe_cluster, cluster_name), timeout=budget
            )
        except asyncio.TimeoutError as e:
            logger.error(
                "cluster_describe_timeout", cluster_name=cluster_name, waiting_for=waiting_for
            )
            raise ProvisioningTimeoutError(
                f"Cluster {cluster_name} not {waiting_for} after {timeout:.0f}s",
                resource=cluster_name,
            ) from e

    async def _check_version(self, version: str) -> None:
        supported = self.supported_versions
        if supported is None:
            supported = await asyncio.to_thread(self.aws.list_supported_versions)

        if version not in supported:
            logger.error("unsupported_version", version=version, supported=supported)
            raise UnsupportedVersionError(
                f"Control-plane version {version} is not supported; "
                f"available: {', '.join(sorted(supported)) or 'none'}",
                resource=version,
            )

    async def provision(self, spec: ClusterSpec) -> ClusterState:
        """Submit a cluster for creation.

        Args:
            spec: Desired cluster state

        Returns:
            ClusterState in phase CREATING

        Raises:
            UnsupportedVersionError: Before any create call, if the version is not offered
            RejectedError: If the provider refuses the configuration
        """
        state = ClusterState(name=spec.name)
        self._states[spec.name] = state

        await self._check_version(spec.version)

        description = await asyncio.to_thread(self.aws.create_cluster, spec)
        logger.info(
            "cluster_create_requested",
            cluster_name=spec.name,
            status=description.get("status"),
        )
        return self._transition(state, ClusterPhase.CREATING, **_describe_fields(description))

    async def await_ready(self, state: ClusterState) -> ClusterState:
        """Poll until the cluster is ACTIVE.

        Returns no later than ``ready_timeout`` plus one polling interval.

        Args:
            state: State returned by provision

        Returns:
            ClusterState in phase ACTIVE

        Raises:
            RejectedError: If the provider reports the cluster FAILED or gone
            ProvisioningTimeoutError: If the cluster is not ACTIVE in time
            asyncio.CancelledError: If the wait is cancelled
        """
        if state.phase == ClusterPhase.ACTIVE:
            return state
        if state.phase != ClusterPhase.CREATING:
            raise InvalidTransitionError(
                f"Cluster {state.name} is {state.phase.value}; nothing to wait for"
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        polls = 0

        try:
            while True:
                polls += 1
                description = await self._describe_within(
                    state.name, deadline, self.ready_timeout, "ACTIVE"
                )

                if description is None:
                    state = self._transition(
                        state, ClusterPhase.FAILED, failure_reason="cluster disappeared"
                    )
                    raise RejectedError(
                        f"Cluster {state.name} no longer exists", resource=state.name
                    )

                status = description.get("status", "")
                phase = PROVIDER_PHASES.get(status, ClusterPhase.CREATING)
                logger.debug("cluster_polled", cluster_name=state.name, status=status, poll=polls)

                if phase == ClusterPhase.ACTIVE:
                    return self._transition(
                        state, ClusterPhase.ACTIVE, **_describe_fields(description)
                    )

                if phase in (ClusterPhase.FAILED, ClusterPhase.DELETING):
                    reason = (
                        _failure_reason(description)
                        if phase == ClusterPhase.FAILED
                        else "cluster is being deleted"
                    )
                    state = self._transition(state, ClusterPhase.FAILED, failure_reason=reason)
                    logger.error("cluster_failed", cluster_name=state.name, reason=reason)
                    raise RejectedError(f"Cluster {state.name} failed: {reason}", resource=state.name)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.error(
                        "cluster_ready_timeout",
                        cluster_name=state.name,
                        timeout=self.ready_timeout,
                        polls=polls,
                    )
                    raise ProvisioningTimeoutError(
                        f"Cluster {state.name} not ACTIVE after {self.ready_timeout:.0f}s",
                        resource=state.name,
                    )

                await asyncio.sleep(min(self.poll_interval, remaining))

        except asyncio.CancelledError:
            logger.warning("cluster_ready_wait_cancelled", cluster_name=state.name, polls=polls)
            raise

    async def teardown(self, state: ClusterState) -> ClusterState:
        """Request deletion of a cluster.

        Args:
            state: Cluster in phase ACTIVE or FAILED

        Returns:
            ClusterState in phase DELETING (or DELETED if it was already gone)

        Raises:
            InvalidTransitionError: If the cluster is still being created
        """
        if ClusterPhase.DELETING not in PHASE_TRANSITIONS[state.phase]:
            raise InvalidTransitionError(
                f"Cluster {state.name} is {state.phase.value}; it cannot be deleted yet"
            )

        issued = await asyncio.to_thread(self.aws.delete_cluster, state.name)
        state = self._transition(state, ClusterPhase.DELETING)

        if not issued:
            return self._transition(state, ClusterPhase.DELETED)
        return state

    async def await_deleted(self, state: ClusterState) -> ClusterState:
        """Poll until the cluster no longer exists.

        Args:
            state: State returned by teardown

        Returns:
            ClusterState in phase DELETED

        Raises:
            ProvisioningTimeoutError: If the cluster still exists after delete_timeout
        """
        if state.phase == ClusterPhase.DELETED:
            return state
        if state.phase != ClusterPhase.DELETING:
            raise InvalidTransitionError(f"Cluster {state.name} is not being deleted")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.delete_timeout

        while True:
            description = await self._describe_within(
                state.name, deadline, self.delete_timeout, "deleted"
            )
            if description is None:
                return self._transition(state, ClusterPhase.DELETED, endpoint=None)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisioningTimeoutError(
                    f"Cluster {state.name} still exists after {self.delete_timeout:.0f}s",
                    resource=state.name,
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def observe(self, cluster_name: str) -> ClusterState:
        """Build a state snapshot from the provider's current view.

        Used to pick up an existing cluster (status, destroy) without going
        through provision.

        Args:
            cluster_name: Cluster name

        Returns:
            ClusterState; phase DELETED when the cluster does not exist
        """
        description = await asyncio.to_thread(self.aws.describe_cluster, cluster_name)
        if description is None:
            state = ClusterState(name=cluster_name, phase=ClusterPhase.DELETED)
        else:
            phase = PROVIDER_PHASES.get(description.get("status", ""), ClusterPhase.CREATING)
            state = ClusterState(
                name=cluster_name,
                phase=phase,
                failure_reason=_failure_reason(description) if phase == ClusterPhase.FAILED else None,
                **_describe_fields(description),
            )

        self._states[cluster_name] = state
        return state
