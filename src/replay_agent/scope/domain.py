"""
Domain Scope - decides whether a navigation stays inside the target system.

One DomainScope instance belongs to exactly one capture or replay session.
It classifies every observed URL, keeps the ordered navigation history and
derives the pause state of the session from the most recent navigation.
Query-time methods never raise: navigation input is untrusted and an
unparsable URL is simply denied.
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlsplit

import idna
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import ConfigError


logger = structlog.get_logger()


DEFAULT_SSO_PROVIDERS = (
    "*.auth0.com",
    "*.okta.com",
    "*.microsoftonline.com",
    "accounts.google.com",
    "login.salesforce.com",
)

INVALID_DOMAIN = "invalid"
RECENT_EVENTS_LIMIT = 10

_HOST_RE = re.compile(r"^[a-z0-9_-]+(\.[a-z0-9_-]+)*$")
_IPV6_RE = re.compile(r"^[0-9a-f:.]+$")


class ScopeReason(str, Enum):
    BASE_DOMAIN = "base_domain"
    # Not emitted: subdomains report BASE_DOMAIN with metadata is_subdomain
    SUBDOMAIN = "subdomain"
    SSO_PROVIDER = "sso_provider"
    EXPLICIT_ALLOWLIST = "explicit_allowlist"
    DENIED = "denied"


# ==================== Configuration ====================

def normalize_domain(value: str) -> str:
    """Lower-case a domain entry; a full URL is reduced to its hostname."""
    value = value.strip().lower()
    if "://" in value:
        value = urlsplit(value).hostname or ""
    return value.rstrip(".")


def _normalize_list(values: Any, field_name: str) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str) or not isinstance(values, (list, tuple, set, frozenset)):
        raise ValueError(f"{field_name} must be a list of strings")

    seen: list[str] = []
    for entry in values:
        if not isinstance(entry, str):
            raise ValueError(f"{field_name} entries must be strings, got {type(entry).__name__}")
        domain = normalize_domain(entry)
        if domain and domain not in seen:
            seen.append(domain)
    return seen


class DomainScopeConfig(BaseModel):
    """Validated domain scope settings."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    base_domain: str = Field(alias="baseDomain")
    allowed_domains: list[str] = Field(default_factory=list, alias="allowedDomains")
    sso_providers: list[str] = Field(default_factory=list, alias="ssoProviders")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("base_domain", mode="before")
    @classmethod
    def _check_base_domain(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("base domain must be a string")
        domain = normalize_domain(value)
        if not domain:
            raise ValueError("Base domain is required")
        return domain

    @field_validator("allowed_domains", "sso_providers", mode="before")
    @classmethod
    def _check_domain_lists(cls, value: Any, info) -> list[str]:
        return _normalize_list(value, info.field_name)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


# ==================== Matchers ====================

@dataclass(frozen=True)
class ExactHost:
    """Matches one hostname exactly."""
    host: str

    def matches(self, host: str) -> bool:
        return host == self.host


@dataclass(frozen=True)
class SuffixWildcard:
    """`*.suffix` - matches the suffix itself and any host below it."""
    suffix: str

    def matches(self, host: str) -> bool:
        return host == self.suffix or host.endswith("." + self.suffix)


DomainMatcher = Union[ExactHost, SuffixWildcard]


def build_matcher(pattern: str) -> DomainMatcher:
    if pattern.startswith("*."):
        return SuffixWildcard(pattern[2:])
    return ExactHost(pattern)


# ==================== Results ====================

@dataclass(frozen=True)
class DomainScopeResult:
    is_allowed: bool
    reason: ScopeReason
    domain: str
    url: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NavigationEvent:
    url: str
    domain: str
    allowed: bool
    reason: ScopeReason
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "domain": self.domain,
            "allowed": self.allowed,
            "reason": self.reason.value,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class RecordingState:
    is_paused: bool = False
    current_domain: Optional[str] = None
    reason: Optional[str] = None
    allowed_domains: tuple[str, ...] = ()


@dataclass(frozen=True)
class DomainStats:
    total_navigations: int = 0
    allowed_navigations: int = 0
    denied_navigations: int = 0
    sso_navigations: int = 0
    domains_visited: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalNavigations": self.total_navigations,
            "allowedNavigations": self.allowed_navigations,
            "deniedNavigations": self.denied_navigations,
            "ssoNavigations": self.sso_navigations,
            "domainsVisited": list(self.domains_visited),
        }


def sanitize_url(url: Any) -> str:
    """Drop query string and fragment so tokens never reach history or logs."""
    if not isinstance(url, str):
        return ""
    return url.split("#", 1)[0].split("?", 1)[0]


def extract_hostname(url: Any) -> Optional[str]:
    """Lower-cased hostname of an absolute URL, or None when unparsable."""
    if not isinstance(url, str) or not url.strip():
        return None
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        return None

    if not parts.scheme or not host:
        return None

    host = host.rstrip(".")
    if not host.isascii():
        try:
            host = idna.encode(host, uts46=True).decode("ascii")
        except idna.IDNAError:
            return None

    if _HOST_RE.match(host) or (":" in host and _IPV6_RE.match(host)):
        return host
    return None


# ==================== Domain Scope ====================

class DomainScope:
    """
    Domain-scoped recording policy with flexible allowlist management.

    Decision order (first match wins):
    1. base domain or any subdomain of it
    2. SSO provider (exact host or `*.suffix`)
    3. explicit allowlist (exact host or `*.suffix`)
    4. denied

    A config without SSO providers gets DEFAULT_SSO_PROVIDERS.

    Not safe for concurrent writers: one instance per active session.
    """

    def __init__(self, config: Union[DomainScopeConfig, Mapping[str, Any]]):
        self._config = self.validate_config(config)
        if not self._config.sso_providers:
            self._config.sso_providers = list(DEFAULT_SSO_PROVIDERS)
        self._sso_matchers = [build_matcher(p) for p in self._config.sso_providers]
        self._allow_matchers = [build_matcher(p) for p in self._config.allowed_domains]
        self._events: list[NavigationEvent] = []

    @staticmethod
    def validate_config(raw: Any) -> DomainScopeConfig:
        """Validate and normalise raw settings; raises ConfigError."""
        if isinstance(raw, DomainScopeConfig):
            raw = raw.model_dump()
        if not isinstance(raw, Mapping):
            raise ConfigError(
                f"Domain scope config must be a mapping, got {type(raw).__name__}"
            )
        try:
            return DomainScopeConfig.model_validate(dict(raw))
        except ValidationError as e:
            raise ConfigError(f"Invalid domain scope config: {e}")

    @classmethod
    def from_login_metadata(cls, metadata: Mapping[str, Any]) -> "DomainScope":
        """Build a scope from stored login metadata."""
        base_domain = metadata.get("baseDomain") or metadata.get("base_domain")
        if not base_domain:
            raise ConfigError("Base domain is required in login metadata")

        sso = metadata.get("ssoProviders") or metadata.get("sso_providers")
        return cls({
            "base_domain": base_domain,
            "allowed_domains": metadata.get("allowedDomains") or metadata.get("allowed_domains") or [],
            "sso_providers": sso or [],
            "metadata": dict(metadata),
        })

    @property
    def base_domain(self) -> str:
        return self._config.base_domain

    # ==================== Classification ====================

    def is_allowed_domain(self, url: Any) -> DomainScopeResult:
        """Classify a URL. Never raises."""
        host = extract_hostname(url)
        safe_url = sanitize_url(url)

        if host is None:
            return DomainScopeResult(
                is_allowed=False,
                reason=ScopeReason.DENIED,
                domain=INVALID_DOMAIN,
                url=safe_url,
                metadata={"error": "Invalid URL format"},
            )

        base = self._config.base_domain
        if host == base or host.endswith("." + base):
            return DomainScopeResult(
                is_allowed=True,
                reason=ScopeReason.BASE_DOMAIN,
                domain=host,
                url=safe_url,
                metadata={"base_domain": base, "is_subdomain": host != base},
            )

        matcher = self._first_match(self._sso_matchers, host)
        if matcher is not None:
            return DomainScopeResult(
                is_allowed=True,
                reason=ScopeReason.SSO_PROVIDER,
                domain=host,
                url=safe_url,
                metadata={"matched": _pattern_of(matcher)},
            )

        matcher = self._first_match(self._allow_matchers, host)
        if matcher is not None:
            return DomainScopeResult(
                is_allowed=True,
                reason=ScopeReason.EXPLICIT_ALLOWLIST,
                domain=host,
                url=safe_url,
                metadata={"matched": _pattern_of(matcher)},
            )

        return DomainScopeResult(
            is_allowed=False,
            reason=ScopeReason.DENIED,
            domain=host,
            url=safe_url,
            metadata={
                "base_domain": base,
                "allowed_domains": list(self._config.allowed_domains),
                "sso_providers": list(self._config.sso_providers),
            },
        )

    @staticmethod
    def _first_match(matchers: list[DomainMatcher], host: str) -> Optional[DomainMatcher]:
        return next((m for m in matchers if m.matches(host)), None)

    # ==================== Recording ====================

    def record_navigation(self, url: Any) -> NavigationEvent:
        """Classify and append a navigation; the pause state follows from it."""
        result = self.is_allowed_domain(url)
        event = NavigationEvent(
            url=result.url,
            domain=result.domain,
            allowed=result.is_allowed,
            reason=result.reason,
            timestamp=time.time(),
            metadata=result.metadata,
        )
        self._events.append(event)

        if event.allowed:
            logger.debug(
                "navigation_allowed",
                domain=event.domain,
                reason=event.reason.value,
            )
        else:
            logger.warning(
                "navigation_denied",
                domain=event.domain,
                url=event.url,
                base_domain=self._config.base_domain,
            )

        return event

    def add_allowed_domain(self, domain: str) -> None:
        """Extend the allowlist; effective on the next classification."""
        normalized = normalize_domain(domain) if isinstance(domain, str) else ""
        if not normalized or normalized in self._config.allowed_domains:
            return
        self._config.allowed_domains.append(normalized)
        self._allow_matchers.append(build_matcher(normalized))
        logger.info("allowed_domain_added", domain=normalized)

    def get_recording_state(self) -> RecordingState:
        allowed = (
            self._config.base_domain,
            *self._config.allowed_domains,
            *self._config.sso_providers,
        )
        if not self._events:
            return RecordingState(allowed_domains=allowed)

        last = self._events[-1]
        return RecordingState(
            is_paused=not last.allowed,
            current_domain=last.domain,
            reason=None if last.allowed
            else f"Recording paused: outside target system ({last.domain})",
            allowed_domains=allowed,
        )

    def get_navigation_history(self) -> list[NavigationEvent]:
        return list(self._events)

    def get_domain_stats(self) -> DomainStats:
        visited: dict[str, None] = {}
        for event in self._events:
            visited.setdefault(event.domain, None)

        allowed = sum(1 for e in self._events if e.allowed)
        return DomainStats(
            total_navigations=len(self._events),
            allowed_navigations=allowed,
            denied_navigations=len(self._events) - allowed,
            sso_navigations=sum(
                1 for e in self._events if e.reason == ScopeReason.SSO_PROVIDER
            ),
            domains_visited=tuple(visited),
        )

    def get_config(self) -> DomainScopeConfig:
        return self._config.model_copy(deep=True)

    def get_summary(self) -> dict[str, Any]:
        """Debug view: config, stats, state and the last few events."""
        return {
            "config": self._config.model_dump(),
            "stats": self.get_domain_stats(),
            "state": self.get_recording_state(),
            "recent_events": self._events[-RECENT_EVENTS_LIMIT:],
        }

    def clear_history(self) -> None:
        self._events = []


def _pattern_of(matcher: DomainMatcher) -> str:
    if isinstance(matcher, SuffixWildcard):
        return f"*.{matcher.suffix}"
    return matcher.host
