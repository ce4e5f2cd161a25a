"""Custom exceptions for kubeprov."""

from enum import Enum


class FailureKind(str, Enum):
    """Classification of a failed lifecycle step."""

    REJECTED = "Rejected"
    TIMEOUT = "Timeout"
    CLUSTER_NOT_READY = "ClusterNotReady"
    INVALID_SCOPE = "InvalidScope"
    NOT_FOUND = "NotFound"
    INVALID_PATH = "InvalidPath"
    UNSUPPORTED_VERSION = "UnsupportedVersion"
    UNBOUND = "Unbound"


class KubeprovError(Exception):
    """Base exception for all kubeprov errors."""


class ConfigurationError(KubeprovError):
    """Configuration-related errors."""


class AWSError(KubeprovError):
    """AWS operation failed for a reason outside the failure taxonomy."""


class KubernetesError(KubeprovError):
    """Kubernetes operation failed for a reason outside the failure taxonomy."""


class ProvisioningFailure(KubeprovError):
    """A lifecycle step failed with a well-defined FailureKind.

    Subclasses pin ``kind``; callers that only care about the category can
    catch this class and switch on ``error.kind``.
    """

    kind: FailureKind = FailureKind.REJECTED

    def __init__(self, message: str, *, resource: str | None = None):
        """Initialize failure.

        Args:
            message: Human readable description
            resource: Name or ARN of the resource involved (optional)
        """
        super().__init__(message)
        self.message = message
        self.resource = resource

    @classmethod
    def for_kind(cls, kind: FailureKind, message: str, **kwargs) -> "ProvisioningFailure":
        """Build the subclass that matches a FailureKind.

        Args:
            kind: Failure kind
            message: Error message
            **kwargs: Forwarded to the constructor

        Returns:
            ProvisioningFailure subclass instance
        """
        return _FAILURE_CLASSES.get(kind, cls)(message, **kwargs)


class RejectedError(ProvisioningFailure):
    """The provider refused a create or update request."""

    kind = FailureKind.REJECTED


class ProvisioningTimeoutError(ProvisioningFailure):
    """A bounded wait expired."""

    kind = FailureKind.TIMEOUT


class ClusterNotReadyError(ProvisioningFailure):
    """An operation needed an ACTIVE cluster."""

    kind = FailureKind.CLUSTER_NOT_READY


class InvalidScopeError(ProvisioningFailure):
    """An access scope or permission set was not recognized."""

    kind = FailureKind.INVALID_SCOPE


class ObjectNotFoundError(ProvisioningFailure):
    """The requested Kubernetes object does not exist."""

    kind = FailureKind.NOT_FOUND


class InvalidPathError(ProvisioningFailure):
    """A field path could not be parsed or resolved."""

    kind = FailureKind.INVALID_PATH


class UnsupportedVersionError(ProvisioningFailure):
    """The requested control-plane version is not offered by the provider."""

    kind = FailureKind.UNSUPPORTED_VERSION


class UnboundIdentityError(ProvisioningFailure):
    """No confirmed access binding covers the identity and request."""

    kind = FailureKind.UNBOUND


_FAILURE_CLASSES: dict[FailureKind, type[ProvisioningFailure]] = {
    FailureKind.REJECTED: RejectedError,
    FailureKind.TIMEOUT: ProvisioningTimeoutError,
    FailureKind.CLUSTER_NOT_READY: ClusterNotReadyError,
    FailureKind.INVALID_SCOPE: InvalidScopeError,
    FailureKind.NOT_FOUND: ObjectNotFoundError,
    FailureKind.INVALID_PATH: InvalidPathError,
    FailureKind.UNSUPPORTED_VERSION: UnsupportedVersionError,
    FailureKind.UNBOUND: UnboundIdentityError,
}


class InvalidTransitionError(KubeprovError):
    """A lifecycle transition outside the state machine was requested."""
