"""Orchestration module."""

from .interfaces import LoginForm, LoginOutcome
from .retry import RetryPolicy, RetryOutcome
from .runner import AgentRunner

__all__ = ["LoginForm", "LoginOutcome", "RetryPolicy", "RetryOutcome", "AgentRunner"]
