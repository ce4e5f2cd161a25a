"""AWS client for EKS, IAM, STS and EC2 operations."""

import base64
import json
from typing import Any, cast

import boto3
from botocore.exceptions import ClientError
from botocore.model import ServiceId
from botocore.signers import RequestSigner

from kubeprov.core.exceptions import (
    AWSError,
    ClusterNotReadyError,
    InvalidScopeError,
    RejectedError,
)
from kubeprov.core.models import AccessScope, ClusterSpec
from kubeprov.utils.logging import get_logger
from kubeprov.utils.rate_limiter import TokenBucket, rate_limited
from kubeprov.utils.retry import retry_on_throttling

logger = get_logger(__name__)

# Provider refused the request as submitted; retrying will not help.
REJECTION_ERROR_CODES = frozenset(
    {
        "InvalidParameterException",
        "InvalidRequestException",
        "UnsupportedAvailabilityZoneException",
        "ResourceLimitExceededException",
        "AccessDeniedException",
        "AccessDenied",
        "ValidationError",
        "LimitExceeded",
        "MalformedPolicyDocument",
    }
)

TOKEN_PREFIX = "k8s-aws-v1."
TOKEN_EXPIRES_IN = 60


def error_code(error: ClientError) -> str:
    """Extract the AWS error code from a ClientError."""
    return cast(str, error.response.get("Error", {}).get("Code", "Unknown"))


def error_message(error: ClientError) -> str:
    """Extract the AWS error message from a ClientError."""
    return cast(str, error.response.get("Error", {}).get("Message", str(error)))


def trust_policy_for(principal: str) -> dict[str, Any]:
    """Build an assume-role trust policy for a principal.

    Args:
        principal: Service principal (``lambda.amazonaws.com``) or AWS principal ARN

    Returns:
        IAM policy document
    """
    if principal.startswith("arn:"):
        principal_block = {"AWS": principal}
    else:
        principal_block = {"Service": principal}

    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": principal_block,
                "Action": "sts:AssumeRole",
            }
        ],
    }


class AWSClient:
    """AWS client for STS, EKS, IAM and EC2 operations.

    Every provider call goes through ``_call`` which applies the client's rate
    limiter and retries throttling errors with exponential backoff. Public
    methods translate the remaining ``ClientError`` codes into the failure
    taxonomy.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str | None = None,
        session: boto3.Session | None = None,
        rate_limiter: TokenBucket | None = None,
    ):
        """Initialize AWS client.

        Args:
            region: AWS region
            profile: AWS profile name (optional)
            session: Existing boto3 session (optional, overrides profile)
            rate_limiter: Token bucket shared by all calls of this client (optional)
        """
        self.region = region
        self.profile = profile
        self.rate_limiter = rate_limiter

        if session:
            self.session = session
        elif profile:
            self.session = boto3.Session(profile_name=profile, region_name=region)
        else:
            self.session = boto3.Session(region_name=region)

        self.sts = self.session.client("sts")
        self.eks = self.session.client("eks")
        self.iam = self.session.client("iam")
        self.ec2 = self.session.client("ec2")

        logger.debug("aws_client_initialized", region=region, profile=profile)

    @classmethod
    def from_assumed_role(
        cls,
        role_arn: str,
        region: str = "us-east-1",
        session_name: str | None = None,
        base: "AWSClient | None" = None,
    ) -> "AWSClient":
        """Create AWSClient from an assumed IAM role.

        Args:
            role_arn: IAM role ARN to assume
            region: AWS region
            session_name: Session name (defaults to 'kubeprov-session')
            base: Client whose credentials perform the assumption (optional)

        Returns:
            New AWSClient with assumed role credentials

        Raises:
            AWSError: If role assumption fails
        """
        source = base or cls(region=region)
        assumed_session = source.assume_role(role_arn, session_name)
        return cls(region=region, session=assumed_session, rate_limiter=source.rate_limiter)

    @retry_on_throttling()
    @rate_limited
    def _call(self, service: Any, operation: str, **kwargs: Any) -> dict[str, Any]:
        return cast(dict[str, Any], getattr(service, operation)(**kwargs))

    # ------------------------------------------------------------------
    # STS
    # ------------------------------------------------------------------

    def assume_role(self, role_arn: str, session_name: str | None = None) -> boto3.Session:
        """Assume an IAM role and return a new session.

        Args:
            role_arn: IAM role ARN to assume
            session_name: Session name (defaults to 'kubeprov-session')

        Returns:
            New boto3 session with assumed role credentials

        Raises:
            AWSError: If role assumption fails
        """
        session_name = session_name or "kubeprov-session"

        try:
            logger.info("assuming_role", role_arn=role_arn, session_name=session_name)
            response = self._call(
                self.sts,
                "assume_role",
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=3600,
            )
        except ClientError as e:
            code = error_code(e)
            logger.error("role_assumption_failed", role_arn=role_arn, error_code=code)
            raise AWSError(f"Failed to assume role {role_arn}: {code}") from e

        credentials = response["Credentials"]
        logger.info("role_assumed_successfully", role_arn=role_arn)
        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.region,
        )

    def get_account_id(self) -> str:
        """Return the account id of the current credentials.

        Raises:
            AWSError: If the caller identity cannot be resolved
        """
        try:
            response = self._call(self.sts, "get_caller_identity")
        except ClientError as e:
            raise AWSError(f"Failed to resolve caller identity: {error_code(e)}") from e
        return cast(str, response["Account"])

    def generate_cluster_token(self, cluster_name: str) -> str:
        """Generate a bearer token for the EKS Kubernetes API.

        This is what ``aws eks get-token`` does: a presigned STS
        GetCallerIdentity URL carrying the cluster name header, base64 encoded.

        Args:
            cluster_name: Name of the EKS cluster

        Returns:
            Token string

        Raises:
            AWSError: If no credentials are available
        """
        credentials = self.session.get_credentials()
        if credentials is None:
            raise AWSError(f"No AWS credentials available to build a token for {cluster_name}")

        signer = RequestSigner(
            ServiceId("sts"),
            self.region,
            "sts",
            "v4",
            credentials,
            self.session.events,
        )
        request_params = {
            "method": "GET",
            "url": f"https://sts.{self.region}.amazonaws.com/?Action=GetCallerIdentity&Version=2011-06-15",
            "body": {},
            "headers": {"x-k8s-aws-id": cluster_name},
            "context": {},
        }
        presigned_url = signer.generate_presigned_url(
            request_params,
            region_name=self.region,
            expires_in=TOKEN_EXPIRES_IN,
            operation_name="GetCallerIdentity",
        )

        token_b64 = base64.urlsafe_b64encode(presigned_url.encode("utf-8")).decode("utf-8")
        logger.debug("cluster_token_generated", cluster_name=cluster_name)
        return TOKEN_PREFIX + token_b64.rstrip("=")

    # ------------------------------------------------------------------
    # EKS cluster lifecycle
    # ------------------------------------------------------------------

    def list_supported_versions(self) -> list[str]:
        """List control-plane versions the provider currently offers.

        Returns:
            Version strings, e.g. ["1.29", "1.30"]

        Raises:
            AWSError: If the versions cannot be listed
        """
        versions: list[str] = []
        kwargs: dict[str, Any] = {}

        try:
            while True:
                response = self._call(self.eks, "describe_cluster_versions", **kwargs)
                for entry in response.get("clusterVersions", []):
                    status = entry.get("versionStatus") or entry.get("status") or ""
                    if status.upper() != "UNSUPPORTED":
                        versions.append(entry["clusterVersion"])
                next_token = response.get("nextToken")
                if not next_token:
                    break
                kwargs["nextToken"] = next_token
        except ClientError as e:
            code = error_code(e)
            logger.error("list_versions_failed", error_code=code)
            raise AWSError(f"Failed to list supported cluster versions: {code}") from e

        logger.debug("supported_versions_listed", versions=versions)
        return versions

    def create_cluster(self, spec: ClusterSpec) -> dict[str, Any]:
        """Create an EKS cluster, adopting an existing one with the same name.

        Args:
            spec: Desired cluster state

        Returns:
            Cluster description dictionary

        Raises:
            RejectedError: If the provider refuses the configuration
            AWSError: For any other provider error
        """
        request = {
            "name": spec.name,
            "version": spec.version,
            "roleArn": spec.service_role_arn,
            "resourcesVpcConfig": {
                "subnetIds": list(spec.subnet_ids),
                "endpointPublicAccess": spec.endpoint_public_access,
                "endpointPrivateAccess": spec.endpoint_private_access,
            },
            "accessConfig": {
                "authenticationMode": spec.authentication_mode.value,
                "bootstrapClusterCreatorAdminPermissions": spec.bootstrap_cluster_creator_admin,
            },
            "clientRequestToken": spec.request_token(),
        }
        if spec.tags:
            request["tags"] = dict(spec.tags)

        try:
            logger.info("creating_cluster", cluster_name=spec.name, version=spec.version)
            response = self._call(self.eks, "create_cluster", **request)
            return cast(dict[str, Any], response["cluster"])

        except ClientError as e:
            code = error_code(e)
            if code == "ResourceInUseException":
                logger.info("cluster_already_exists", cluster_name=spec.name)
                existing = self.describe_cluster(spec.name)
                if existing is not None:
                    return existing

            logger.error("create_cluster_failed", cluster_name=spec.name, error_code=code)
            if code in REJECTION_ERROR_CODES:
                raise RejectedError(
                    f"Cluster {spec.name} rejected: {code}: {error_message(e)}",
                    resource=spec.name,
                ) from e
            raise AWSError(f"Failed to create cluster {spec.name}: {code}") from e

    def describe_cluster(self, cluster_name: str) -> dict[str, Any] | None:
        """Describe an EKS cluster.

        Args:
            cluster_name: Name of the EKS cluster

        Returns:
            Cluster description, or None if the cluster does not exist

        Raises:
            AWSError: If the cluster cannot be described
        """
        try:
            response = self._call(self.eks, "describe_cluster", name=cluster_name)
            return cast(dict[str, Any], response["cluster"])

        except ClientError as e:
            code = error_code(e)
            if code == "ResourceNotFoundException":
                logger.debug("cluster_not_found", cluster_name=cluster_name)
                return None
            logger.error("describe_cluster_failed", cluster_name=cluster_name, error_code=code)
            raise AWSError(f"Failed to describe cluster {cluster_name}: {code}") from e

    def delete_cluster(self, cluster_name: str) -> bool:
        """Request deletion of an EKS cluster.

        Args:
            cluster_name: Name of the EKS cluster

        Returns:
            True if a delete was issued, False if the cluster was already gone

        Raises:
            RejectedError: If the cluster cannot be deleted in its current state
            AWSError: For any other provider error
        """
        try:
            logger.info("deleting_cluster", cluster_name=cluster_name)
            self._call(self.eks, "delete_cluster", name=cluster_name)
            return True

        except ClientError as e:
            code = error_code(e)
            if code == "ResourceNotFoundException":
                logger.info("cluster_already_deleted", cluster_name=cluster_name)
                return False
            logger.error("delete_cluster_failed", cluster_name=cluster_name, error_code=code)
            if code in REJECTION_ERROR_CODES or code == "ResourceInUseException":
                raise RejectedError(
                    f"Cluster {cluster_name} cannot be deleted: {code}: {error_message(e)}",
                    resource=cluster_name,
                ) from e
            raise AWSError(f"Failed to delete cluster {cluster_name}: {code}") from e

    # ------------------------------------------------------------------
    # EKS access entries
    # ------------------------------------------------------------------

    def create_access_entry(self, cluster_name: str, principal_arn: str) -> dict[str, Any]:
        """Create an access entry, adopting an existing one.

        Args:
            cluster_name: Name of the EKS cluster
            principal_arn: IAM principal to admit

        Returns:
            Access entry dictionary

        Raises:
            ClusterNotReadyError: If the cluster does not exist or is not accepting entries
            RejectedError: If the provider refuses the principal
        """
        try:
            logger.info(
                "creating_access_entry", cluster_name=cluster_name, principal_arn=principal_arn
            )
            response = self._call(
                self.eks,
                "create_access_entry",
                clusterName=cluster_name,
                principalArn=principal_arn,
                type="STANDARD",
            )
            return cast(dict[str, Any], response["accessEntry"])

        except ClientError as e:
            code = error_code(e)
            if code == "ResourceInUseException":
                logger.info("access_entry_already_exists", principal_arn=principal_arn)
                response = self._call(
                    self.eks,
                    "describe_access_entry",
                    clusterName=cluster_name,
                    principalArn=principal_arn,
                )
                return cast(dict[str, Any], response["accessEntry"])

            logger.error("create_access_entry_failed", cluster_name=cluster_name, error_code=code)
            if code == "ResourceNotFoundException":
                raise ClusterNotReadyError(
                    f"Cluster {cluster_name} is not accepting access entries: {code}",
                    resource=cluster_name,
                ) from e
            if code in REJECTION_ERROR_CODES:
                raise RejectedError(
                    f"Access entry for {principal_arn} rejected: {code}: {error_message(e)}",
                    resource=principal_arn,
                ) from e
            raise AWSError(f"Failed to create access entry on {cluster_name}: {code}") from e

    def associate_access_policy(
        self,
        cluster_name: str,
        principal_arn: str,
        policy_arn: str,
        scope: AccessScope,
    ) -> dict[str, Any]:
        """Associate an access policy with an access entry.

        Args:
            cluster_name: Name of the EKS cluster
            principal_arn: IAM principal of the access entry
            policy_arn: Cluster access policy ARN
            scope: Cluster-wide or namespaced scope

        Returns:
            Associated access policy dictionary

        Raises:
            InvalidScopeError: If the provider does not recognize the policy or scope
        """
        try:
            response = self._call(
                self.eks,
                "associate_access_policy",
                clusterName=cluster_name,
                principalArn=principal_arn,
                policyArn=policy_arn,
                accessScope=scope.to_api(),
            )
            logger.info(
                "access_policy_associated",
                cluster_name=cluster_name,
                principal_arn=principal_arn,
                policy_arn=policy_arn,
            )
            return cast(dict[str, Any], response.get("associatedAccessPolicy", {}))

        except ClientError as e:
            code = error_code(e)
            logger.error("associate_access_policy_failed", policy_arn=policy_arn, error_code=code)
            if code in ("InvalidParameterException", "InvalidRequestException"):
                raise InvalidScopeError(
                    f"Scope {scope.type} with policy {policy_arn} not accepted: {error_message(e)}",
                    resource=policy_arn,
                ) from e
            if code == "ResourceNotFoundException":
                raise ClusterNotReadyError(
                    f"Access entry for {principal_arn} not found on {cluster_name}",
                    resource=cluster_name,
                ) from e
            raise AWSError(f"Failed to associate access policy {policy_arn}: {code}") from e

    def list_associated_access_policies(
        self, cluster_name: str, principal_arn: str
    ) -> list[dict[str, Any]]:
        """List access policies associated with an access entry.

        Args:
            cluster_name: Name of the EKS cluster
            principal_arn: IAM principal of the access entry

        Returns:
            List of associated access policy dictionaries (empty if the entry is missing)
        """
        policies: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {"clusterName": cluster_name, "principalArn": principal_arn}

        try:
            while True:
                response = self._call(self.eks, "list_associated_access_policies", **kwargs)
                policies.extend(response.get("associatedAccessPolicies", []))
                next_token = response.get("nextToken")
                if not next_token:
                    return policies
                kwargs["nextToken"] = next_token

        except ClientError as e:
            code = error_code(e)
            if code == "ResourceNotFoundException":
                return []
            raise AWSError(f"Failed to list access policies for {principal_arn}: {code}") from e

    def delete_access_entry(self, cluster_name: str, principal_arn: str) -> bool:
        """Delete an access entry and its policy associations.

        Returns:
            True if deleted, False if it did not exist
        """
        try:
            self._call(
                self.eks,
                "delete_access_entry",
                clusterName=cluster_name,
                principalArn=principal_arn,
            )
            logger.info("access_entry_deleted", cluster_name=cluster_name, principal_arn=principal_arn)
            return True

        except ClientError as e:
            code = error_code(e)
            if code == "ResourceNotFoundException":
                return False
            raise AWSError(f"Failed to delete access entry for {principal_arn}: {code}") from e

    # ------------------------------------------------------------------
    # IAM
    # ------------------------------------------------------------------

    def create_role(
        self,
        role_name: str,
        trust_principal: str,
        description: str = "",
        tags: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create an IAM role, adopting an existing one with the same name.

        Args:
            role_name: Role name
            trust_principal: Principal allowed to assume the role
            description: Role description
            tags: Role tags

        Returns:
            Role dictionary (``RoleName``, ``Arn``, ...)

        Raises:
            RejectedError: If IAM refuses the trust policy or name
        """
        request: dict[str, Any] = {
            "RoleName": role_name,
            "AssumeRolePolicyDocument": json.dumps(trust_policy_for(trust_principal)),
            "Description": description,
        }
        if tags:
            request["Tags"] = [{"Key": k, "Value": v} for k, v in sorted(tags.items())]

        try:
            logger.info("creating_role", role_name=role_name, trust_principal=trust_principal)
            response = self._call(self.iam, "create_role", **request)
            return cast(dict[str, Any], response["Role"])

        except ClientError as e:
            code = error_code(e)
            if code == "EntityAlreadyExists":
                logger.info("role_already_exists", role_name=role_name)
                response = self._call(self.iam, "get_role", RoleName=role_name)
                return cast(dict[str, Any], response["Role"])

            logger.error("create_role_failed", role_name=role_name, error_code=code)
            if code in REJECTION_ERROR_CODES:
                raise RejectedError(
                    f"Role {role_name} rejected: {code}: {error_message(e)}",
                    resource=role_name,
                ) from e
            raise AWSError(f"Failed to create role {role_name}: {code}") from e

    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        """Attach a managed policy to a role."""
        try:
            self._call(self.iam, "attach_role_policy", RoleName=role_name, PolicyArn=policy_arn)
            logger.info("managed_policy_attached", role_name=role_name, policy_arn=policy_arn)

        except ClientError as e:
            code = error_code(e)
            logger.error("attach_role_policy_failed", role_name=role_name, error_code=code)
            if code in ("NoSuchEntity", "InvalidInput"):
                raise InvalidScopeError(
                    f"Managed policy {policy_arn} not attachable: {error_message(e)}",
                    resource=policy_arn,
                ) from e
            raise AWSError(f"Failed to attach {policy_arn} to {role_name}: {code}") from e

    def put_role_policy(self, role_name: str, policy_name: str, document: dict[str, Any]) -> None:
        """Create or replace an inline role policy.

        Raises:
            InvalidScopeError: If IAM rejects the policy document
        """
        try:
            self._call(
                self.iam,
                "put_role_policy",
                RoleName=role_name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(document),
            )
            logger.info("inline_policy_put", role_name=role_name, policy_name=policy_name)

        except ClientError as e:
            code = error_code(e)
            logger.error("put_role_policy_failed", role_name=role_name, error_code=code)
            if code in ("MalformedPolicyDocument", "InvalidInput"):
                raise InvalidScopeError(
                    f"Policy {policy_name} rejected: {error_message(e)}",
                    resource=role_name,
                ) from e
            raise AWSError(f"Failed to put policy {policy_name} on {role_name}: {code}") from e

    def delete_role(self, role_name: str) -> bool:
        """Delete a role after removing its inline and attached policies.

        Returns:
            True if deleted, False if the role did not exist
        """
        try:
            inline = self._call(self.iam, "list_role_policies", RoleName=role_name)
            for policy_name in inline.get("PolicyNames", []):
                self._call(self.iam, "delete_role_policy", RoleName=role_name, PolicyName=policy_name)

            attached = self._call(self.iam, "list_attached_role_policies", RoleName=role_name)
            for policy in attached.get("AttachedPolicies", []):
                self._call(
                    self.iam, "detach_role_policy", RoleName=role_name, PolicyArn=policy["PolicyArn"]
                )

            self._call(self.iam, "delete_role", RoleName=role_name)
            logger.info("role_deleted", role_name=role_name)
            return True

        except ClientError as e:
            code = error_code(e)
            if code == "NoSuchEntity":
                return False
            logger.error("delete_role_failed", role_name=role_name, error_code=code)
            raise AWSError(f"Failed to delete role {role_name}: {code}") from e

    # ------------------------------------------------------------------
    # EC2
    # ------------------------------------------------------------------

    def describe_subnets(self, vpc_id: str) -> list[dict[str, Any]]:
        """List the subnets of a VPC."""
        return self._describe_vpc_items("describe_subnets", "Subnets", vpc_id)

    def describe_route_tables(self, vpc_id: str) -> list[dict[str, Any]]:
        """List the route tables of a VPC."""
        return self._describe_vpc_items("describe_route_tables", "RouteTables", vpc_id)

    def _describe_vpc_items(self, operation: str, key: str, vpc_id: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {"Filters": [{"Name": "vpc-id", "Values": [vpc_id]}]}

        try:
            while True:
                response = self._call(self.ec2, operation, **kwargs)
                items.extend(response.get(key, []))
                next_token = response.get("NextToken")
                if not next_token:
                    return items
                kwargs["NextToken"] = next_token

        except ClientError as e:
            code = error_code(e)
            logger.error("ec2_describe_failed", operation=operation, vpc_id=vpc_id, error_code=code)
            raise AWSError(f"Failed to {operation} for {vpc_id}: {code}") from e
