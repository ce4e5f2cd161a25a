"""Kubernetes client for reading objects from a freshly provisioned cluster."""

import base64
import os
import tempfile
import time
from collections.abc import Callable
from types import TracebackType
from typing import Any

import urllib3
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError, ResourceNotUniqueError
from kubernetes.dynamic.resource import Resource

from kubeprov.core.exceptions import (
    KubernetesError,
    ObjectNotFoundError,
    ProvisioningTimeoutError,
)
from kubeprov.utils.logging import get_logger

logger = get_logger(__name__)


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, urllib3.exceptions.TimeoutError):
        return True
    return isinstance(error, urllib3.exceptions.MaxRetryError) and isinstance(
        error.reason, urllib3.exceptions.TimeoutError
    )


class BoundedDynamicClient(DynamicClient):
    """DynamicClient that puts a timeout on every request, discovery included."""

    def __init__(
        self, api_client: client.ApiClient, request_timeout: Callable[[], float | None]
    ):
        # Discovery starts inside DynamicClient.__init__
        self._request_timeout = request_timeout
        super().__init__(api_client)

    def request(self, method: str, path: str, body: Any = None, **params: Any) -> Any:
        timeout = self._request_timeout()
        if timeout is not None:
            params.setdefault("_request_timeout", timeout)
        return super().request(method, path, body=body, **params)


class KubernetesClient:
    """Scoped connection to a cluster's Kubernetes API.

    Use as a context manager: the API connection pool and the temporary CA
    bundle only exist inside the ``with`` block and are released on every exit
    path. When a deadline is given, no request outlives it.
    """

    def __init__(
        self,
        endpoint: str,
        certificate_authority: str,
        token: str,
        request_timeout: float | None = None,
        deadline: float | None = None,
    ):
        """Initialize Kubernetes client.

        Args:
            endpoint: API server URL
            certificate_authority: Base64 encoded cluster CA bundle
            token: Bearer token
            request_timeout: Per-request timeout in seconds (optional)
            deadline: ``time.monotonic()`` value after which requests are refused (optional)
        """
        self.endpoint = endpoint
        self.certificate_authority = certificate_authority
        self.request_timeout = request_timeout
        self.deadline = deadline
        self._token = token
        self._api_client: client.ApiClient | None = None
        self._dynamic: BoundedDynamicClient | None = None
        self._ca_path: str | None = None

    def __enter__(self) -> "KubernetesClient":
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def open(self) -> None:
        """Open the API connection.

        Raises:
            KubernetesError: If the CA bundle cannot be decoded
        """
        try:
            ca_bytes = base64.b64decode(self.certificate_authority)
        except (ValueError, TypeError) as e:
            raise KubernetesError("Cluster certificate authority is not valid base64") from e

        fd, self._ca_path = tempfile.mkstemp(prefix="kubeprov-ca-", suffix=".crt")
        with os.fdopen(fd, "wb") as f:
            f.write(ca_bytes)

        configuration = client.Configuration()
        configuration.host = self.endpoint
        configuration.ssl_ca_cert = self._ca_path
        configuration.verify_ssl = True
        configuration.api_key = {"authorization": self._token}
        configuration.api_key_prefix = {"authorization": "Bearer"}

        self._api_client = client.ApiClient(configuration)
        logger.debug("k8s_connection_opened", endpoint=self.endpoint)

    def close(self) -> None:
        """Release the API connection and the temporary CA bundle."""
        self._dynamic = None
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None
        if self._ca_path is not None:
            try:
                os.unlink(self._ca_path)
            except FileNotFoundError:
                pass
            self._ca_path = None
        logger.debug("k8s_connection_closed", endpoint=self.endpoint)

    @property
    def api_client(self) -> client.ApiClient:
        """The open API client."""
        if self._api_client is None:
            raise KubernetesError("Kubernetes connection is not open")
        return self._api_client

    def remaining_timeout(self) -> float | None:
        """Timeout for the next request.

        Raises:
            ProvisioningTimeoutError: If the deadline has passed
        """
        if self.deadline is None:
            return self.request_timeout

        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise ProvisioningTimeoutError(f"Deadline passed for requests to {self.endpoint}")
        if self.request_timeout is None:
            return remaining
        return min(self.request_timeout, remaining)

    def resolve(self, kind: str, api_version: str | None = None) -> Resource:
        """Look up the API resource serving a kind.

        Args:
            kind: Object kind (e.g. "ConfigMap")
            api_version: Group/version to disambiguate the kind (optional)

        Returns:
            Discovered resource; ``namespaced`` tells whether objects live in a namespace

        Raises:
            ObjectNotFoundError: If the kind is not served
            ProvisioningTimeoutError: If discovery runs out of time
            KubernetesError: For any other discovery failure
        """
        lookup: dict[str, str] = {"kind": kind}
        if api_version:
            lookup["api_version"] = api_version

        try:
            self.remaining_timeout()
            if self._dynamic is None:
                self._dynamic = BoundedDynamicClient(
                    self.api_client, request_timeout=self.remaining_timeout
                )
            return self._dynamic.resources.get(**lookup)
        except (urllib3.exceptions.TimeoutError, urllib3.exceptions.MaxRetryError) as e:
            if _is_timeout(e):
                raise ProvisioningTimeoutError(f"API discovery timed out for {kind}") from e
            raise KubernetesError(f"API discovery failed for {kind}: {e}") from e
        except ApiException as e:
            logger.error("api_discovery_failed", kind=kind, status=e.status)
            raise KubernetesError(f"API discovery failed: {e.status} {e.reason}") from e
        except ResourceNotFoundError as e:
            raise ObjectNotFoundError(f"Unknown object type: {kind}", resource=kind) from e
        except ResourceNotUniqueError as e:
            raise KubernetesError(
                f"Object type {kind} is served by several API groups; set api_version"
            ) from e

    def get_object(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
        api_version: str | None = None,
    ) -> dict[str, Any]:
        """Read a single object of any kind.

        Args:
            kind: Object kind (e.g. "ConfigMap")
            name: Object name
            namespace: Namespace for namespaced kinds
            api_version: Group/version to disambiguate the kind (optional)

        Returns:
            Object as a plain dictionary

        Raises:
            ObjectNotFoundError: If the kind or the object does not exist
            ProvisioningTimeoutError: If the read runs out of time
            KubernetesError: For any other API failure
        """
        resource = self.resolve(kind, api_version)

        params: dict[str, Any] = {"name": name}
        if resource.namespaced:
            params["namespace"] = namespace or "default"
        timeout = self.remaining_timeout()
        if timeout is not None:
            params["_request_timeout"] = timeout

        try:
            logger.debug("getting_object", kind=kind, name=name, namespace=namespace)
            obj = resource.get(**params)

        except (urllib3.exceptions.TimeoutError, urllib3.exceptions.MaxRetryError) as e:
            if _is_timeout(e):
                raise ProvisioningTimeoutError(
                    f"Timed out reading {kind} {name}", resource=name
                ) from e
            raise KubernetesError(f"Failed to reach the API server for {kind} {name}: {e}") from e
        except ApiException as e:
            if e.status == 404:
                logger.warning("object_not_found", kind=kind, name=name, namespace=namespace)
                raise ObjectNotFoundError(
                    f"{kind} {name} not found in {namespace or 'cluster scope'}",
                    resource=name,
                ) from e

            logger.error("get_object_failed", kind=kind, name=name, status=e.status)
            raise KubernetesError(f"Failed to get {kind} {name}: {e.status} {e.reason}") from e

        logger.info("object_retrieved", kind=kind, name=name, namespace=namespace)
        return obj.to_dict()
