"""
Exceptions for sandbox lifecycle orchestration.

Exception Hierarchy:
    SandboxError (base)
    ├── ConfigurationError - caller/setup mistake, never retried
    ├── ProvisioningError - sandbox creation or reconnection failed
    ├── RestorationError - writing files into the sandbox failed
    ├── DevServerError - dev server did not bind its port in time
    ├── DeploymentError - build (fatal) or transport (fallback/retry) failure
    ├── FragmentNotFoundError - fragment update target is gone
    └── ProviderError - raised by a SandboxProvider implementation
        ├── SandboxNotFoundError - remote sandbox no longer exists
        └── TransientProviderError - safe to retry
"""

from enum import Enum
from typing import Any


class SandboxError(Exception):
    """
    Base exception for all sandbox lifecycle errors.

    Attributes:
        message: Human-readable error description
        details: Optional dictionary with additional context
        sandbox_id: ID of the affected sandbox (if known)
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        sandbox_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.sandbox_id = sandbox_id

    def __str__(self) -> str:
        base_msg = self.message
        if self.sandbox_id:
            base_msg = f"[Sandbox {self.sandbox_id}] {base_msg}"
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            base_msg = f"{base_msg} ({detail_str})"
        return base_msg

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "sandbox_id": self.sandbox_id,
        }


class ConfigurationError(SandboxError):
    """
    Raised for caller or setup mistakes.

    Example: asking for a bare base image without naming a template,
    or deploying without DEPLOYMENT_PLANE_URL configured.
    """

    pass


class ProvisioningError(SandboxError):
    """Raised when remote compute creation or reconnection fails."""

    pass


class RestorationError(SandboxError):
    """
    Raised when a file cannot be written into the sandbox.

    Partial writes are not rolled back; restoring again is safe.
    """

    def __init__(self, message: str, path: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        return result


class DevServerError(SandboxError):
    """Raised when the dev server has no tunnel for its port after launch."""

    def __init__(self, message: str, port: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.port = port


# =============================================================================
# Deployment
# =============================================================================

class DeploymentFailureKind(str, Enum):
    """Whether a deployment failed while building or while shipping."""
    BUILD = "build"
    TRANSPORT = "transport"


class TransportFailure(str, Enum):
    """Typed classification of an upload attempt's failure."""
    CONNECTION_CLOSED = "connection_closed"  # Deployment plane reset the connection
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"                # curl/node could not complete the request
    HTML_RESPONSE = "html_response"          # Endpoint unreachable or misconfigured
    SERVER_ERROR = "server_error"            # JSON payload carrying "error"
    NO_URL = "no_url"                        # Response parsed but no usable URL


TRANSIENT_TRANSPORT_FAILURES = frozenset({TransportFailure.CONNECTION_CLOSED})


class DeploymentError(SandboxError):
    """
    Raised when a deployment fails.

    Build failures (kind=BUILD) are fatal: they are never retried and never
    fall back to the alternate upload strategy. Transport failures carry a
    TransportFailure classification.
    """

    def __init__(
        self,
        message: str,
        kind: DeploymentFailureKind = DeploymentFailureKind.TRANSPORT,
        transport_failure: TransportFailure | None = None,
        logs: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.kind = kind
        self.transport_failure = transport_failure
        self.logs = logs

    @property
    def is_build_failure(self) -> bool:
        return self.kind == DeploymentFailureKind.BUILD

    @property
    def is_transient(self) -> bool:
        return self.transport_failure in TRANSIENT_TRANSPORT_FAILURES

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update({
            "kind": self.kind.value,
            "transport_failure": self.transport_failure.value if self.transport_failure else None,
        })
        return result


# =============================================================================
# Provider
# =============================================================================

class ProviderError(SandboxError):
    """Raised by SandboxProvider implementations."""

    retryable = False


class SandboxNotFoundError(ProviderError):
    """The remote sandbox (or image) no longer exists."""

    retryable = False


class TransientProviderError(ProviderError):
    """A provider call failed in a way that is safe to retry."""

    retryable = True


class FragmentNotFoundError(SandboxError):
    """A working-fragment update named a fragment that no longer exists."""

    def __init__(self, message: str, fragment_id: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.fragment_id = fragment_id
