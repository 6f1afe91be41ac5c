"""Core framework components."""

from .config import ConfigLoader, RetryConfig, RunnerConfig
from .state import StateManager
from .errors import (
    FrameworkError,
    ConfigError,
    NavigationError,
    WorkflowNotFoundError,
    LoginError,
    StepExecutionError,
    ScopeViolationError,
    PersistenceError,
    TaskError,
)

__all__ = [
    "ConfigLoader",
    "RetryConfig",
    "RunnerConfig",
    "StateManager",
    "FrameworkError",
    "ConfigError",
    "NavigationError",
    "WorkflowNotFoundError",
    "LoginError",
    "StepExecutionError",
    "ScopeViolationError",
    "PersistenceError",
    "TaskError",
]
