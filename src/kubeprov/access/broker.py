"""Access broker: execution identities, management-API grants and cluster bindings.

Three separate grants are involved in running automation against a cluster,
and the broker keeps each one as its own value:

* ``ExecutionIdentity``: the IAM role the automation runs as.
* ``ManagementApiGrant``: the IAM permissions that identity has on the EKS
  management API (e.g. ``eks:DescribeCluster`` on one cluster ARN).
* ``AccessBinding``: the access entry and access policy that admit the
  identity inside the cluster, scoped cluster-wide or to namespaces.
"""

import asyncio
import re
from collections.abc import Sequence

from kubeprov.clients.aws_client import AWSClient
from kubeprov.core.exceptions import (
    ClusterNotReadyError,
    InvalidScopeError,
    ProvisioningTimeoutError,
)
from kubeprov.core.models import (
    CLUSTER_SCOPE,
    NAMESPACE_SCOPE,
    AccessBinding,
    AccessScope,
    ClusterPrincipal,
    ClusterState,
    ExecutionIdentity,
    ManagementApiGrant,
)
from kubeprov.utils.logging import get_logger

logger = get_logger(__name__)

_ACTION_PATTERN = re.compile(r"^[a-z0-9-]+:[A-Za-z0-9*]+$")
_ACCESS_POLICY_PATTERN = re.compile(r"^arn:aws[a-z-]*:eks::aws:cluster-access-policy/[A-Za-z0-9]+$")


def validate_scope(scope: AccessScope) -> None:
    """Reject scopes EKS does not recognize.

    Raises:
        InvalidScopeError: For an unknown type, a namespace scope without
            namespaces, or a cluster scope with namespaces
    """
    if scope.type not in (CLUSTER_SCOPE, NAMESPACE_SCOPE):
        raise InvalidScopeError(f"Unknown access scope type: {scope.type}", resource=scope.type)
    if scope.type == NAMESPACE_SCOPE and not scope.namespaces:
        raise InvalidScopeError("Namespace scope requires at least one namespace")
    if scope.type == CLUSTER_SCOPE and scope.namespaces:
        raise InvalidScopeError("Cluster scope does not take namespaces")


class AccessBroker:
    """Creates identities and grants for cluster automation."""

    def __init__(
        self,
        aws_client: AWSClient,
        tags: dict[str, str] | None = None,
        confirm_attempts: int = 5,
        confirm_interval: float = 2.0,
    ):
        """Initialize broker.

        Args:
            aws_client: AWS client used for IAM and EKS calls
            tags: Tags applied to created roles
            confirm_attempts: DescribeAssociatedPolicies checks before giving up
            confirm_interval: Seconds between confirmation checks
        """
        self.aws = aws_client
        self.tags = tags or {}
        self.confirm_attempts = max(1, confirm_attempts)
        self.confirm_interval = confirm_interval

    async def create_execution_identity(
        self,
        trust_principal: str,
        role_name: str,
        managed_policies: Sequence[str] = (),
        description: str = "",
    ) -> ExecutionIdentity:
        """Create (or adopt) a role that automation runs as.

        Args:
            trust_principal: Service principal or AWS principal ARN allowed to assume it
            role_name: Role name
            managed_policies: Managed policy ARNs to attach
            description: Role description

        Returns:
            ExecutionIdentity
        """
        role = await asyncio.to_thread(
            self.aws.create_role, role_name, trust_principal, description, self.tags
        )
        for policy_arn in managed_policies:
            await asyncio.to_thread(self.aws.attach_role_policy, role_name, policy_arn)

        identity = ExecutionIdentity(
            role_name=role["RoleName"],
            role_arn=role["Arn"],
            trust_principal=trust_principal,
        )
        logger.info("execution_identity_ready", role_arn=identity.role_arn)
        return identity

    async def grant_api_permission(
        self,
        identity: ExecutionIdentity,
        permitted_actions: Sequence[str],
        resource_scope: Sequence[str],
        policy_name: str = "management-api",
    ) -> ManagementApiGrant:
        """Allow an identity to call the cluster management API.

        Args:
            identity: Identity receiving the permission
            permitted_actions: IAM actions, e.g. ["eks:DescribeCluster"]
            resource_scope: Resource ARNs the actions apply to
            policy_name: Inline policy name

        Returns:
            ManagementApiGrant

        Raises:
            InvalidScopeError: If an action or resource is malformed, or IAM rejects the policy
        """
        if not permitted_actions:
            raise InvalidScopeError("At least one permitted action is required")
        bad_actions = [a for a in permitted_actions if not _ACTION_PATTERN.match(a)]
        if bad_actions:
            raise InvalidScopeError(f"Malformed IAM actions: {', '.join(bad_actions)}")

        if not resource_scope:
            raise InvalidScopeError("At least one resource is required")
        bad_resources = [r for r in resource_scope if r != "*" and not r.startswith("arn:")]
        if bad_resources:
            raise InvalidScopeError(f"Malformed resource ARNs: {', '.join(bad_resources)}")

        document = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": list(permitted_actions),
                    "Resource": list(resource_scope),
                }
            ],
        }
        await asyncio.to_thread(self.aws.put_role_policy, identity.role_name, policy_name, document)

        return ManagementApiGrant(
            role_name=identity.role_name,
            policy_name=policy_name,
            actions=tuple(permitted_actions),
            resources=tuple(resource_scope),
        )

    async def bind_cluster_access(
        self,
        cluster: ClusterState,
        identity: ExecutionIdentity,
        scope: AccessScope,
        policy_arn: str,
    ) -> AccessBinding:
        """Admit an identity into the cluster and confirm the binding.

        Args:
            cluster: Cluster state; must be ACTIVE
            identity: Identity to admit
            scope: Cluster-wide or namespaced scope
            policy_arn: EKS cluster access policy ARN

        Returns:
            Confirmed AccessBinding

        Raises:
            ClusterNotReadyError: If the cluster is not ACTIVE
            InvalidScopeError: If the scope or policy is not recognized
            ProvisioningTimeoutError: If the association is never observed
        """
        if not cluster.is_active:
            raise ClusterNotReadyError(
                f"Cluster {cluster.name} is {cluster.phase.value}; access can only be bound when active",
                resource=cluster.name,
            )
        validate_scope(scope)
        if not _ACCESS_POLICY_PATTERN.match(policy_arn):
            raise InvalidScopeError(f"Not a cluster access policy ARN: {policy_arn}", resource=policy_arn)

        entry = await asyncio.to_thread(self.aws.create_access_entry, cluster.name, identity.role_arn)
        await asyncio.to_thread(
            self.aws.associate_access_policy, cluster.name, identity.role_arn, policy_arn, scope
        )

        binding = AccessBinding(
            cluster_name=cluster.name,
            principal=ClusterPrincipal(
                principal_arn=identity.role_arn, username=entry.get("username")
            ),
            scope=scope,
            policy_arn=policy_arn,
        )
        return await self.confirm_binding(binding)

    async def confirm_binding(self, binding: AccessBinding) -> AccessBinding:
        """Wait until the provider reports the policy association.

        Raises:
            ProvisioningTimeoutError: If not observed within confirm_attempts
        """
        for attempt in range(1, self.confirm_attempts + 1):
            associated = await asyncio.to_thread(
                self.aws.list_associated_access_policies,
                binding.cluster_name,
                binding.principal.principal_arn,
            )
            for policy in associated:
                if (
                    policy.get("policyArn") == binding.policy_arn
                    and (policy.get("accessScope") or {}).get("type") == binding.scope.type
                ):
                    logger.info(
                        "access_binding_confirmed",
                        cluster_name=binding.cluster_name,
                        principal_arn=binding.principal.principal_arn,
                        attempt=attempt,
                    )
                    return binding.model_copy(update={"confirmed": True})

            if attempt < self.confirm_attempts:
                await asyncio.sleep(self.confirm_interval)

        raise ProvisioningTimeoutError(
            f"Access policy {binding.policy_arn} not observed for "
            f"{binding.principal.principal_arn} on {binding.cluster_name}",
            resource=binding.cluster_name,
        )

    async def revoke_cluster_access(self, cluster_name: str, principal_arn: str) -> bool:
        """Remove an identity's access entry and associations.

        Returns:
            True if an entry was removed
        """
        return await asyncio.to_thread(self.aws.delete_access_entry, cluster_name, principal_arn)

    async def delete_execution_identity(self, role_name: str) -> bool:
        """Delete a role and its policies.

        Returns:
            True if the role was removed
        """
        return await asyncio.to_thread(self.aws.delete_role, role_name)
