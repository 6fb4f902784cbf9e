"""
lxc-gpu-passthrough Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, batch summaries, and programmatic error handling.
"""

from typing import Optional, Dict, Any


class PassthroughError(Exception):
    """
    Base exception for all passthrough errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Precondition failures
# =============================================================================

class PreconditionFailure(PassthroughError):
    """Base for failures detected before any mutation happens."""
    pass


class EmptyInventoryError(PreconditionFailure):
    """No GPU device nodes exist on the host."""
    def __init__(self, checked: Optional[list] = None):
        super().__init__(
            "No NVIDIA device nodes found on the host. "
            "Is the host driver installed and loaded?",
            code="EMPTY_INVENTORY",
            details={"checked": [str(p) for p in (checked or [])]},
            recoverable=False,
        )


class ContainerNotRunningError(PreconditionFailure):
    """A live check was requested on a stopped container."""
    def __init__(self, ctid: str, status: str):
        super().__init__(
            f"Container {ctid} is not running (status: {status})",
            code="CONTAINER_NOT_RUNNING",
            details={"ctid": ctid, "status": status},
        )


class ContainerNotFoundError(PreconditionFailure):
    """Container does not exist on this host."""
    def __init__(self, ctid: str):
        super().__init__(
            f"Container {ctid} does not exist",
            code="CONTAINER_NOT_FOUND",
            details={"ctid": ctid},
            recoverable=False,
        )


class NotProxmoxHostError(PreconditionFailure):
    """The tool is not running on a Proxmox VE host."""
    def __init__(self, marker: str):
        super().__init__(
            "This command must be run on a Proxmox VE host",
            code="NOT_PROXMOX",
            details={"missing": marker},
            recoverable=False,
        )


# =============================================================================
# Cleanup
# =============================================================================

class CleanupResidual(PassthroughError):
    """
    Vendor files remained after the automatic cleanup pass.

    Carried as a warning on the cleanup result, never raised.
    """
    def __init__(self, ctid: str, count: int, sample: Optional[list] = None):
        super().__init__(
            f"{count} NVIDIA-related file(s) remain in container {ctid} after cleanup",
            code="CLEANUP_RESIDUAL",
            details={"ctid": ctid, "count": count, "sample": sample or []},
        )


# =============================================================================
# Configuration document errors
# =============================================================================

class ConfigWriteFailure(PassthroughError):
    """Backing up or writing a container configuration failed."""
    def __init__(self, ctid: str, stage: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Failed to {stage} configuration of container {ctid}",
            code="CONFIG_WRITE_FAILED",
            details={"ctid": ctid, "stage": stage},
            cause=cause,
            recoverable=False,
        )


# =============================================================================
# Container lifecycle errors
# =============================================================================

class ContainerLifecycleFailure(PassthroughError):
    """Base for start/stop failures."""
    pass


class ContainerStartError(ContainerLifecycleFailure):
    """Failed to start a container."""
    def __init__(self, ctid: str, reason: str):
        super().__init__(
            f"Failed to start container {ctid}: {reason}",
            code="CONTAINER_START_FAILED",
            details={"ctid": ctid, "reason": reason},
        )


class ContainerStopError(ContainerLifecycleFailure):
    """Failed to stop a container."""
    def __init__(self, ctid: str, reason: str):
        super().__init__(
            f"Failed to stop container {ctid}: {reason}",
            code="CONTAINER_STOP_FAILED",
            details={"ctid": ctid, "reason": reason},
        )


class CommandError(PassthroughError):
    """A collaborator command could not be executed at all."""
    def __init__(self, command: list, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Could not run {' '.join(command)}: {reason}",
            code="COMMAND_FAILED",
            details={"command": list(command), "reason": reason},
            cause=cause,
        )


# =============================================================================
# Verification
# =============================================================================

class VerificationFailure(PassthroughError):
    """GPU was not usable inside the container after remediation."""
    def __init__(self, ctid: str, reason: str, remediation_attempted: bool = False):
        super().__init__(
            f"GPU verification failed for container {ctid}: {reason}",
            code="VERIFICATION_FAILED",
            details={
                "ctid": ctid,
                "reason": reason,
                "remediation_attempted": remediation_attempted,
            },
        )


# =============================================================================
# Batch control
# =============================================================================

class UserCancelled(PassthroughError):
    """Operator declined to continue a batch."""
    def __init__(self, remaining: Optional[list] = None):
        super().__init__(
            "Batch cancelled by user",
            code="USER_CANCELLED",
            details={"remaining": list(remaining or [])},
        )


# =============================================================================
# Settings errors
# =============================================================================

class ConfigError(PassthroughError):
    """Base for settings errors."""
    pass


class InvalidConfigError(ConfigError):
    """Invalid settings value."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
        )


class MissingConfigError(ConfigError):
    """Required settings file missing."""
    def __init__(self, field: str):
        super().__init__(
            f"Missing required configuration: {field}",
            code="MISSING_CONFIG",
            details={"field": field},
        )


# =============================================================================
# Template errors
# =============================================================================

class TemplateError(PassthroughError):
    """Template-related errors."""
    pass


class TemplateNotFoundError(TemplateError):
    """Template not found."""
    def __init__(self, template_name: str):
        super().__init__(
            f"Template not found: {template_name}",
            code="TEMPLATE_NOT_FOUND",
            details={"template": template_name},
        )


class TemplateRenderError(TemplateError):
    """Template rendering failed."""
    def __init__(self, template_name: str, reason: str):
        super().__init__(
            f"Failed to render template '{template_name}': {reason}",
            code="TEMPLATE_RENDER_FAILED",
            details={"template": template_name, "reason": reason},
        )
