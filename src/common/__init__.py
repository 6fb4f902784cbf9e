"""
lxc-gpu-passthrough Common Utilities

Shared exceptions, logging and decorators.
"""

from .exceptions import (
    PassthroughError, PreconditionFailure, EmptyInventoryError,
    ContainerNotRunningError, ContainerNotFoundError, NotProxmoxHostError,
    CleanupResidual, ConfigWriteFailure, ContainerLifecycleFailure,
    ContainerStartError, ContainerStopError, CommandError, VerificationFailure,
    UserCancelled, ConfigError, InvalidConfigError, MissingConfigError,
    TemplateError, TemplateNotFoundError, TemplateRenderError,
)
from .decorators import require_root, timed
from .logging_config import setup_logging, log_success, LogContext, SUCCESS

__all__ = [
    # Exceptions
    "PassthroughError", "PreconditionFailure", "EmptyInventoryError",
    "ContainerNotRunningError", "ContainerNotFoundError", "NotProxmoxHostError",
    "CleanupResidual", "ConfigWriteFailure", "ContainerLifecycleFailure",
    "ContainerStartError", "ContainerStopError", "CommandError", "VerificationFailure",
    "UserCancelled", "ConfigError", "InvalidConfigError", "MissingConfigError",
    "TemplateError", "TemplateNotFoundError", "TemplateRenderError",
    # Decorators
    "require_root", "timed",
    # Logging
    "setup_logging", "log_success", "LogContext", "SUCCESS",
]
