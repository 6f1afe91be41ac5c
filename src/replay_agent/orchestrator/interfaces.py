"""Capabilities the runner depends on, injected at construction."""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from ..core.models import LoginConfig, RunHandle, StepResult, Workflow


@dataclass(frozen=True)
class LoginForm:
    """Located login form selectors; no password field means a two-step form."""
    username_selector: str
    password_selector: Optional[str] = None
    submit_selector: Optional[str] = None
    tenant_selector: Optional[str] = None

    @property
    def multi_step(self) -> bool:
        return self.password_selector is None


@dataclass(frozen=True)
class LoginOutcome:
    success: bool
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class WorkflowStore(Protocol):
    async def find_workflow(self, workflow_id: str) -> Optional[Workflow]: ...


@runtime_checkable
class RunStore(Protocol):
    async def create_run(self, workflow_id: str) -> RunHandle: ...

    async def update_run(self, handle: RunHandle, patch: dict[str, Any]) -> None: ...

    async def create_step_record(self, handle: RunHandle, step: StepResult) -> None: ...


@runtime_checkable
class BrowserDriver(Protocol):
    """Browser primitives; timeouts are milliseconds."""

    async def navigate(self, url: str, timeout: int) -> None: ...

    async def click(self, selector: str, timeout: int) -> None: ...

    async def type(self, selector: str, value: str, timeout: int) -> None: ...

    async def select(self, selector: str, value: str, timeout: int) -> None: ...

    async def hover(self, selector: str, timeout: int) -> None: ...

    async def wait_for_selector(self, selector: str, timeout: int) -> None: ...

    async def download(self, selector: str, timeout: int) -> Optional[str]: ...

    async def screenshot(self) -> Optional[bytes]: ...

    def current_url(self) -> str: ...


@runtime_checkable
class LoginExecutor(Protocol):
    async def detect_form(self, page: Any) -> Optional[LoginForm]: ...

    async def perform_login(
        self, page: Any, form: LoginForm, credentials: LoginConfig
    ) -> LoginOutcome: ...


@runtime_checkable
class SessionCapability(Protocol):
    """Reuse of an authenticated browser session between runs."""

    async def apply_session_to_page(self, page: Any, session: dict[str, Any]) -> None: ...

    async def validate_session(self, page: Any) -> bool: ...

    async def capture_session_data(self, page: Any) -> dict[str, Any]: ...

    def encrypt_session_data(self, session: dict[str, Any]) -> str: ...

    def decrypt_session_data(self, blob: str) -> dict[str, Any]: ...
