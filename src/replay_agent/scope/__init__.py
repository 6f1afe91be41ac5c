"""Domain scoping for capture and replay."""

from .domain import DomainScope, DomainScopeConfig, ScopeReason
from .recorder import CaptureRecorder

__all__ = ["DomainScope", "DomainScopeConfig", "ScopeReason", "CaptureRecorder"]
