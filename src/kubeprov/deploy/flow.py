"""End-to-end deployment flow.

Sequences subnet selection, the control-plane service role, cluster
provisioning, the automation identity and its grants, the post-provision read
and output reporting. A failure halts the flow and propagates unchanged; no
partial cleanup is attempted so that whatever was created stays inspectable
until ``destroy`` is run.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from kubeprov.access.broker import AccessBroker
from kubeprov.clients.aws_client import AWSClient
from kubeprov.core.config import EKS_CLUSTER_POLICY_ARN, EKS_SERVICE_PRINCIPAL, KubeprovConfig
from kubeprov.core.exceptions import (
    ClusterNotReadyError,
    FailureKind,
    InvalidScopeError,
    KubeprovError,
    ProvisioningTimeoutError,
    UnboundIdentityError,
)
from kubeprov.core.models import (
    AccessBinding,
    ClusterPhase,
    ClusterPrincipal,
    ClusterSpec,
    ClusterState,
    ExecutionIdentity,
    ExecutionRequest,
    ExecutionResult,
    ManagementApiGrant,
    StackOutput,
)
from kubeprov.execution.executor import PostProvisionExecutor
from kubeprov.network.subnets import SubnetResolver
from kubeprov.provisioning.controller import ProvisioningController
from kubeprov.reporting.reporter import ConsoleSink, JsonFileSink, OutputReporter, OutputSink
from kubeprov.utils.logging import bound_context, get_logger, log_error
from kubeprov.utils.rate_limiter import TokenBucket

logger = get_logger(__name__)

T = TypeVar("T")

MANAGED_BY_TAG = {"managed-by": "kubeprov"}


@dataclass
class DeploymentReport:
    """Everything a deploy produced."""

    cluster: ClusterState
    service_identity: ExecutionIdentity
    automation_identity: ExecutionIdentity
    api_grant: ManagementApiGrant
    binding: AccessBinding
    result: ExecutionResult
    output: StackOutput
    subnet_ids: list[str] = field(default_factory=list)


def build_cluster_spec(
    config: KubeprovConfig, subnet_ids: Sequence[str], service_role_arn: str
) -> ClusterSpec:
    """Build the immutable ClusterSpec from configuration and resolved handles."""
    cluster = config.cluster
    return ClusterSpec(
        name=cluster.name,
        vpc_id=config.network.vpc_id,
        subnet_ids=tuple(subnet_ids),
        version=cluster.version,
        authentication_mode=cluster.authentication_mode,
        bootstrap_cluster_creator_admin=cluster.bootstrap_cluster_creator_admin,
        endpoint_public_access=cluster.endpoint_public_access,
        endpoint_private_access=cluster.endpoint_private_access,
        service_role_arn=service_role_arn,
        tags={**MANAGED_BY_TAG, **cluster.tags},
    )


def _last_result(retry_state: RetryCallState) -> ExecutionResult:
    return retry_state.outcome.result()  # type: ignore[union-attr]


class Deployment:
    """Runs deploy/destroy/status for one configured cluster."""

    def __init__(
        self,
        config: KubeprovConfig,
        aws_client: AWSClient | None = None,
        sinks: list[OutputSink] | None = None,
        executor: PostProvisionExecutor | None = None,
        retry_min_wait: float = 1.0,
    ):
        """Initialize deployment.

        Args:
            config: kubeprov configuration
            aws_client: AWS client (built from config when None)
            sinks: Output sinks (console, plus JSON file when configured)
            executor: Post-provision executor (built from config when None)
            retry_min_wait: Backoff multiplier between timed-out waits and reads (seconds)
        """
        self.config = config
        self.aws = aws_client or AWSClient(
            region=config.aws.region,
            profile=config.aws.profile,
            rate_limiter=TokenBucket.per_minute(config.rate_limits.aws_api),
        )

        if sinks is None:
            sinks = [ConsoleSink()]
            if config.outputs.file:
                sinks.append(JsonFileSink(config.outputs.file))

        tags = {**MANAGED_BY_TAG, **config.cluster.tags}
        self.resolver = SubnetResolver(self.aws)
        self.controller = ProvisioningController(
            self.aws,
            poll_interval=config.provisioning.poll_interval_seconds,
            ready_timeout=config.provisioning.ready_timeout_seconds,
            delete_timeout=config.provisioning.delete_timeout_seconds,
            supported_versions=config.cluster.supported_versions,
        )
        self.broker = AccessBroker(self.aws, tags=tags)
        self.executor = executor or PostProvisionExecutor(
            self.aws, assume_role=config.execution.assume_role
        )
        self.reporter = OutputReporter(sinks)
        self.retry_min_wait = retry_min_wait
        self._account_id = config.aws.account_id

    async def account_id(self) -> str:
        """Account id from configuration, else from the caller identity."""
        if self._account_id is None:
            self._account_id = await asyncio.to_thread(self.aws.get_account_id)
        return self._account_id

    async def automation_trust_principal(self) -> str:
        """Principal trusted by the automation role."""
        if self.config.access.trust_principal:
            return self.config.access.trust_principal
        return f"arn:aws:iam::{await self.account_id()}:root"

    async def automation_role_arn(self) -> str:
        """ARN of the automation role, derived from its name."""
        return f"arn:aws:iam::{await self.account_id()}:role/{self.config.automation_role_name}"

    async def deploy(self) -> DeploymentReport:
        """Run the full deployment.

        Returns:
            DeploymentReport

        Raises:
            KubeprovError: The first failure, unchanged
        """
        config = self.config
        with bound_context(cluster_name=config.cluster.name):
            try:
                subnet_ids = await asyncio.to_thread(
                    self.resolver.select_subnets, config.network.vpc_id, config.network.selection()
                )

                service_identity = await self.broker.create_execution_identity(
                    EKS_SERVICE_PRINCIPAL,
                    config.cluster.resolved_service_role_name,
                    managed_policies=[EKS_CLUSTER_POLICY_ARN],
                    description=f"EKS control plane role for {config.cluster.name}",
                )

                spec = build_cluster_spec(config, subnet_ids, service_identity.role_arn)
                state = await self.controller.provision(spec)
                state = await self.retry_timeouts(
                    "await_ready", self.controller.await_ready, state
                )

                automation = await self.broker.create_execution_identity(
                    await self.automation_trust_principal(),
                    config.automation_role_name,
                    description=f"Post-provision automation for {config.cluster.name}",
                )
                if not state.arn:
                    raise InvalidScopeError(
                        f"Cluster {state.name} has no ARN; refusing to grant API access on '*'",
                        resource=state.name,
                    )
                grant = await self.broker.grant_api_permission(
                    automation,
                    config.access.permitted_actions,
                    [state.arn],
                    policy_name="describe",
                )
                binding = await self.retry_timeouts(
                    "bind_cluster_access",
                    self.broker.bind_cluster_access,
                    state,
                    automation,
                    config.access.scope(),
                    config.access.access_policy_arn,
                )

                result = await self.run_post_provision(state, automation, [binding])
                output = self.reporter.report(
                    result, config.outputs.key, config.outputs.description
                )

            except KubeprovError as e:
                log_error(logger, e, operation="deploy")
                raise

        logger.info("deployment_complete", output_key=output.key)
        return DeploymentReport(
            cluster=state,
            service_identity=service_identity,
            automation_identity=automation,
            api_grant=grant,
            binding=binding,
            result=result,
            output=output,
            subnet_ids=subnet_ids,
        )

    async def retry_timeouts(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        """Await ``func``, retrying when it runs out of time.

        ProvisioningTimeoutError is retried ``provisioning.timeout_retries``
        times with exponential backoff, then re-raised. Any other failure
        propagates on the first attempt.
        """
        attempts = self.config.provisioning.timeout_retries + 1

        def before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "wait_timed_out_retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=attempts,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ProvisioningTimeoutError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.retry_min_wait, max=10),
            before_sleep=before_sleep,
            reraise=True,
        )
        return await retrying(func, *args)

    async def run_post_provision(
        self,
        cluster: ClusterState,
        identity: ExecutionIdentity,
        bindings: Sequence[AccessBinding],
        request: ExecutionRequest | None = None,
    ) -> ExecutionResult:
        """Execute the configured read, retrying timed-out attempts.

        Only Timeout results are retried (``execution.timeout_retries`` extra
        attempts with exponential backoff); NotFound and InvalidPath are
        returned on the first attempt.
        """
        request = request or self.config.execution.request()
        attempts = self.config.execution.timeout_retries + 1

        def before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "execution_retry",
                attempt=retry_state.attempt_number,
                max_attempts=attempts,
            )

        retrying = AsyncRetrying(
            retry=retry_if_result(lambda r: r.failure == FailureKind.TIMEOUT),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.retry_min_wait, max=10),
            before_sleep=before_sleep,
            retry_error_callback=_last_result,
        )
        return await retrying(self.executor.execute, cluster, identity, request, bindings)

    async def read_object(self, request: ExecutionRequest | None = None) -> ExecutionResult:
        """Run a read against an already deployed cluster.

        The automation identity and its binding are reconstructed from
        configuration; the binding must still be present on the cluster.

        Raises:
            ClusterNotReadyError: If the cluster is not ACTIVE
            UnboundIdentityError: If the automation role's binding is missing
        """
        config = self.config
        state = await self.controller.observe(config.cluster.name)
        if not state.is_active:
            raise ClusterNotReadyError(
                f"Cluster {state.name} is {state.phase.value}", resource=state.name
            )

        role_arn = await self.automation_role_arn()
        identity = ExecutionIdentity(
            role_name=config.automation_role_name,
            role_arn=role_arn,
            trust_principal=await self.automation_trust_principal(),
        )
        binding = AccessBinding(
            cluster_name=state.name,
            principal=ClusterPrincipal(principal_arn=role_arn),
            scope=config.access.scope(),
            policy_arn=config.access.access_policy_arn,
        )
        try:
            binding = await self.broker.confirm_binding(binding)
        except ProvisioningTimeoutError as e:
            raise UnboundIdentityError(
                f"{role_arn} has no access binding on {state.name}; run deploy first",
                resource=role_arn,
            ) from e

        return await self.run_post_provision(state, identity, [binding], request)

    async def status(self) -> ClusterState:
        """Current provider view of the cluster."""
        return await self.controller.observe(self.config.cluster.name)

    async def destroy(self) -> ClusterState:
        """Tear down everything deploy created.

        Order: in-cluster access, cluster, automation role, service role.
        Resources that are already gone are skipped.

        Returns:
            Final cluster state (DELETED)

        Raises:
            ClusterNotReadyError: If the cluster is still being created
        """
        config = self.config
        with bound_context(cluster_name=config.cluster.name):
            try:
                state = await self.controller.observe(config.cluster.name)

                if state.phase == ClusterPhase.CREATING:
                    raise ClusterNotReadyError(
                        f"Cluster {state.name} is still being created; retry destroy once it settles",
                        resource=state.name,
                    )

                if state.phase == ClusterPhase.ACTIVE:
                    await self.broker.revoke_cluster_access(
                        state.name, await self.automation_role_arn()
                    )

                if state.phase in (ClusterPhase.ACTIVE, ClusterPhase.FAILED):
                    state = await self.controller.teardown(state)
                if state.phase == ClusterPhase.DELETING:
                    state = await self.controller.await_deleted(state)

                await self.broker.delete_execution_identity(config.automation_role_name)
                await self.broker.delete_execution_identity(
                    config.cluster.resolved_service_role_name
                )

            except KubeprovError as e:
                log_error(logger, e, operation="destroy")
                raise

        logger.info("destroy_complete")
        return state
