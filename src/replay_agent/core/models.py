"""
Workflow, logic and run data models.

Stored and configured data (workflows, logic specs, run configuration) are
pydantic models so they can be loaded from YAML/JSON and from the camelCase
payloads produced by the recorder and the logic compiler. Run records are
plain dataclasses created by the runner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionType(str, Enum):
    """Browser primitive a recorded action replays as."""
    GOTO = "goto"
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    HOVER = "hover"
    WAIT_FOR_SELECTOR = "waitForSelector"
    DOWNLOAD = "download"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ActionType"]:
        aliases = {
            "navigate": cls.GOTO,
            "wait_for_selector": cls.WAIT_FOR_SELECTOR,
            "waitforselector": cls.WAIT_FOR_SELECTOR,
        }
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


class Operator(str, Enum):
    """
    Closed set of condition operators.

    Anything that is not a known operator parses to UNKNOWN, which always
    evaluates to False.
    """
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "Operator":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class RuleActionType(str, Enum):
    """What a matching rule does to the step it guards."""
    SKIP = "skip"
    RETRY = "retry"
    WAIT = "wait"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "RuleActionType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# ==================== Workflow ====================

class WorkflowAction(BaseModel):
    """A single recorded action. Immutable once persisted."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    order: int = 0
    type: ActionType
    selector: Optional[str] = None
    value: Optional[str] = None
    url: Optional[str] = None
    timeout: int = Field(default=30000, gt=0)  # milliseconds
    retry_count: int = Field(default=3, ge=0, alias="retryCount")
    dependencies: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_stored_action(cls, data: Any) -> Any:
        # Stored rows look like {"id", "order", "action": {...}}
        if isinstance(data, dict) and isinstance(data.get("action"), dict) and "type" not in data:
            merged = dict(data["action"])
            merged.setdefault("id", data.get("id"))
            if "order" in data:
                merged["order"] = data["order"]
            return merged
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: Any) -> ActionType:
        return ActionType(value)

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class Condition(BaseModel):
    """A {variable, operator, value} triple evaluated against bindings."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    variable: str = Field(min_length=1)
    operator: Operator = Operator.EQ
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _parse_operator(cls, value: Any) -> Operator:
        return Operator.parse(value)


class RuleAction(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: RuleActionType
    value: Any = None

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: Any) -> RuleActionType:
        return RuleActionType.parse(value)


class Rule(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    condition: Condition
    action: RuleAction
    priority: int = 0
    enabled: bool = True


class Loop(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    variable: str = Field(min_length=1)
    iterator: str = Field(min_length=1)
    actions: list[str] = Field(default_factory=list)
    break_condition: Optional[Condition] = Field(default=None, alias="breakCondition")
    max_iterations: Optional[int] = Field(default=None, gt=0, alias="maxIterations")


class LogicSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timeout: int = Field(default=30000, gt=0)
    retry_attempts: int = Field(default=3, ge=0, alias="retryAttempts")
    screenshot_on_error: bool = Field(default=True, alias="screenshotOnError")
    debug_mode: bool = Field(default=False, alias="debugMode")


class LogicSpec(BaseModel):
    """Compiled rule/loop layer attached to a workflow."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rules: list[Rule] = Field(default_factory=list)
    loops: list[Loop] = Field(default_factory=list)
    settings: LogicSettings = Field(default_factory=LogicSettings)

    @field_validator("rules", "loops", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class Workflow(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    actions: list[WorkflowAction] = Field(default_factory=list)
    logic_spec: Optional[LogicSpec] = Field(default=None, alias="logicSpec")

    def ordered_actions(self) -> list[WorkflowAction]:
        """Actions in declared order (stable for equal `order`)."""
        return sorted(self.actions, key=lambda a: a.order)


# ==================== Run configuration ====================

class LoginConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    username: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)
    tenant: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _require_http_url(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"login url must be an absolute http(s) URL, got {value!r}")
        return value


class RunOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    headless: bool = True
    timeout: Optional[int] = Field(default=None, gt=0)  # run-level, milliseconds
    concurrency: int = Field(default=1, ge=1)


class RunConfig(BaseModel):
    """Per-run input. `login_config` is validated when the run authenticates."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requires_login: bool = Field(default=False, alias="requiresLogin")
    login_config: Optional[Union[LoginConfig, dict[str, Any]]] = Field(
        default=None, alias="loginConfig"
    )
    variables: dict[str, Any] = Field(default_factory=dict)
    logic_spec: Optional[LogicSpec] = Field(default=None, alias="logicSpec")
    options: RunOptions = Field(default_factory=RunOptions)

    @field_validator("options", mode="before")
    @classmethod
    def _default_options(cls, value: Any) -> Any:
        return RunOptions() if value is None else value


# ==================== Run records ====================

@dataclass(frozen=True)
class RunHandle:
    """Identifies a persisted run record."""
    id: str
    workflow_id: str
    started_at: datetime = field(default_factory=utcnow)


@dataclass
class StepResult:
    """Outcome of one executed (or skipped) step instance."""
    action_id: str
    status: StepStatus
    attempts: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = field(default_factory=utcnow)
    screenshot: Optional[bytes] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "actionId": self.action_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "metadata": self.metadata,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "hasScreenshot": self.screenshot is not None,
        }


@dataclass(frozen=True)
class RunSummary:
    total_steps: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0

    @classmethod
    def from_steps(cls, steps: list[StepResult]) -> "RunSummary":
        return cls(
            total_steps=len(steps),
            success_count=sum(1 for s in steps if s.status == StepStatus.SUCCESS),
            failure_count=sum(1 for s in steps if s.status == StepStatus.FAILED),
            skipped_count=sum(1 for s in steps if s.status == StepStatus.SKIPPED),
        )

    def aggregate_status(self) -> RunStatus:
        """success iff no failures; partial iff mixed; failed iff all executed steps failed."""
        if self.failure_count == 0:
            return RunStatus.SUCCESS
        if self.success_count > 0:
            return RunStatus.PARTIAL
        return RunStatus.FAILED

    def to_dict(self) -> dict[str, int]:
        return {
            "totalSteps": self.total_steps,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "skippedCount": self.skipped_count,
        }


_METADATA_KEYS = {
    "login_required": "loginRequired",
    "login_success": "loginSuccess",
    "evaluated_rules": "evaluatedRules",
    "loop_contexts": "loopContexts",
    "session_reused": "sessionReused",
    "scope_paused": "scopePaused",
    "timed_out": "timedOut",
}


@dataclass(frozen=True)
class RunResult:
    """Final, immutable outcome of AgentRunner.run()."""
    run_id: Optional[str]
    workflow_id: str
    status: RunStatus
    steps: tuple[StepResult, ...] = ()
    summary: RunSummary = field(default_factory=RunSummary)
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "summary": self.summary.to_dict(),
            "metadata": {_METADATA_KEYS.get(k, k): v for k, v in self.metadata.items()},
            "error": self.error,
        }
