"""Framework error definitions."""

import hashlib
from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Transient, retry immediately
    MEDIUM = "medium"     # Retry with backoff
    HIGH = "high"         # Fails the run
    CRITICAL = "critical" # Security boundary crossed


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Network, timeout - will likely resolve
    PERMANENT = "permanent"       # Config error, missing selector - won't resolve
    EXTERNAL = "external"         # Store or login provider issue
    VALIDATION = "validation"     # Input validation failure
    SAFETY = "safety"             # Domain scope triggered


class FrameworkError(Exception):
    """Base exception for all framework errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("run_id", "")),
            str(self.context.get("action_id", "")),
            str(self.context.get("selector", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(FrameworkError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class NavigationError(FrameworkError):
    """A URL could not be parsed or classified."""

    def __init__(self, message: str, url: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["url"] = url


class WorkflowNotFoundError(FrameworkError):
    """Requested workflow does not exist in the store."""

    def __init__(self, workflow_id: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(f"Workflow {workflow_id} not found", **kwargs)
        self.context["workflow_id"] = workflow_id


class LoginError(FrameworkError):
    """Authentication before a run failed."""

    def __init__(self, message: str, login_url: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["login_url"] = login_url


class StepExecutionError(FrameworkError):
    """A browser primitive failed for a workflow step."""

    def __init__(
        self,
        message: str,
        action_id: Optional[str] = None,
        action_type: Optional[str] = None,
        selector: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.context["action_id"] = action_id
        self.context["action_type"] = action_type
        self.context["selector"] = selector


class ScopeViolationError(StepExecutionError):
    """Replay attempted to navigate outside the permitted domain scope."""

    def __init__(self, message: str, domain: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.SAFETY)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["domain"] = domain


class PersistenceError(FrameworkError):
    """Workflow or run store operation failed."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["operation"] = operation


class TaskError(FrameworkError):
    """Misuse of a stateful component (e.g. capture after stop)."""

    def __init__(self, message: str, component: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["component"] = component
