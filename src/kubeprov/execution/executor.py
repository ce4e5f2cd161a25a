"""Post-provision executor: one bounded read against a live cluster."""

import asyncio
import time
from collections.abc import Callable, Sequence

from kubeprov.clients.aws_client import AWSClient
from kubeprov.clients.kubernetes_client import KubernetesClient
from kubeprov.core.exceptions import (
    AWSError,
    ClusterNotReadyError,
    FailureKind,
    InvalidPathError,
    ObjectNotFoundError,
    ProvisioningTimeoutError,
    UnboundIdentityError,
)
from kubeprov.core.models import (
    AccessBinding,
    ClusterState,
    ExecutionIdentity,
    ExecutionRequest,
    ExecutionResult,
)
from kubeprov.utils.field_path import extract_string, parse_path
from kubeprov.utils.logging import get_logger
from kubeprov.utils.retry import retry_on_exception

logger = get_logger(__name__)

KubernetesClientFactory = Callable[..., KubernetesClient]


class PostProvisionExecutor:
    """Reads one object field from a cluster as a given identity.

    The read has no side effects, so repeating a request against an unchanged
    cluster yields the same result.
    """

    def __init__(
        self,
        aws_client: AWSClient,
        assume_role: bool = True,
        session_name: str = "kubeprov-executor",
        client_factory: KubernetesClientFactory = KubernetesClient,
    ):
        """Initialize executor.

        Args:
            aws_client: Base AWS client (deployer credentials)
            assume_role: Run as the execution identity; when False the base
                client's credentials are used as-is
            session_name: STS session name for the assumed role
            client_factory: Builds the scoped Kubernetes connection
        """
        self.aws = aws_client
        self.assume_role = assume_role
        self.session_name = session_name
        self.client_factory = client_factory

    @staticmethod
    def _require_binding(
        identity: ExecutionIdentity,
        namespace: str | None,
        bindings: Sequence[AccessBinding],
        cluster: ClusterState,
    ) -> AccessBinding:
        for binding in bindings:
            if binding.cluster_name == cluster.name and binding.grants(
                identity.role_arn, namespace
            ):
                return binding
        raise UnboundIdentityError(
            f"No confirmed access binding lets {identity.role_arn} read "
            f"{namespace or 'cluster-scoped'} objects on {cluster.name}",
            resource=identity.role_arn,
        )

    async def execute(
        self,
        cluster: ClusterState,
        identity: ExecutionIdentity,
        request: ExecutionRequest,
        bindings: Sequence[AccessBinding],
    ) -> ExecutionResult:
        """Run the request and return its result.

        Args:
            cluster: Cluster state; must be ACTIVE
            identity: Identity to run as
            request: Object to read and the field to extract
            bindings: Access bindings known for the cluster

        Returns:
            ExecutionResult; failures are Timeout, NotFound or InvalidPath

        Raises:
            ClusterNotReadyError: If the cluster is not ACTIVE
            UnboundIdentityError: If no confirmed binding covers the request
        """
        if not cluster.is_active:
            raise ClusterNotReadyError(
                f"Cluster {cluster.name} is {cluster.phase.value}", resource=cluster.name
            )
        # Rechecked once discovery tells whether the kind is namespaced
        self._require_binding(identity, request.namespace, bindings, cluster)

        log = logger.bind(
            cluster_name=cluster.name,
            object_type=request.object_type,
            object_name=request.name,
            namespace=request.namespace,
        )

        try:
            parse_path(request.json_path)
        except InvalidPathError as e:
            log.warning("execution_invalid_path", path=request.json_path)
            return ExecutionResult.failed(FailureKind.INVALID_PATH, str(e))

        log.info("execution_started", timeout=request.timeout_seconds)
        deadline = time.monotonic() + request.timeout_seconds
        try:
            value = await asyncio.wait_for(
                self._read(cluster, identity, request, bindings, deadline),
                timeout=request.timeout_seconds,
            )
        except (asyncio.TimeoutError, ProvisioningTimeoutError):
            log.warning("execution_timed_out", timeout=request.timeout_seconds)
            return ExecutionResult.failed(
                FailureKind.TIMEOUT,
                f"Read of {request.object_type} {request.name} exceeded {request.timeout_seconds}s",
            )
        except ObjectNotFoundError as e:
            log.warning("execution_object_not_found")
            return ExecutionResult.failed(FailureKind.NOT_FOUND, str(e))
        except InvalidPathError as e:
            log.warning("execution_path_unresolved", path=request.json_path)
            return ExecutionResult.failed(FailureKind.INVALID_PATH, str(e))

        log.info("execution_succeeded")
        return ExecutionResult.ok(value)

    @retry_on_exception(exceptions=(AWSError,), max_attempts=5, min_wait=2, max_wait=10)
    def _identity_client(self, identity: ExecutionIdentity) -> AWSClient:
        # New roles take a few seconds to become assumable
        if not self.assume_role:
            return self.aws
        return AWSClient.from_assumed_role(
            identity.role_arn, self.aws.region, self.session_name, base=self.aws
        )

    async def _read(
        self,
        cluster: ClusterState,
        identity: ExecutionIdentity,
        request: ExecutionRequest,
        bindings: Sequence[AccessBinding],
        deadline: float,
    ) -> str:
        # Blocking calls run in worker threads; a timeout cancels this coroutine
        # and exits the connection block before execute returns
        aws = await asyncio.to_thread(self._identity_client, identity)

        # DescribeCluster as the identity, through its management-API grant
        description = await asyncio.to_thread(aws.describe_cluster, cluster.name)
        if description is None:
            raise ObjectNotFoundError(f"Cluster {cluster.name} not found", resource=cluster.name)

        token = await asyncio.to_thread(aws.generate_cluster_token, cluster.name)
        with self.client_factory(
            endpoint=description["endpoint"],
            certificate_authority=description["certificateAuthority"]["data"],
            token=token,
            request_timeout=request.timeout_seconds,
            deadline=deadline,
        ) as k8s:
            resource = await asyncio.to_thread(
                k8s.resolve, request.object_type, request.api_version
            )
            namespace = (request.namespace or "default") if resource.namespaced else None
            self._require_binding(identity, namespace, bindings, cluster)

            obj = await asyncio.to_thread(
                k8s.get_object,
                kind=request.object_type,
                name=request.name,
                namespace=namespace,
                api_version=request.api_version,
            )

        return extract_string(obj, request.json_path)
