"""
Agent runner - replays a stored workflow against a live browser page.

A run loads the workflow, optionally authenticates, expands loops into step
instances, then executes each instance sequentially under the rule layer and
the retry policy. Every outcome, including early failures, is returned as a
RunResult; run() itself never raises.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from ..browser.driver import PlaywrightDriver
from ..core.config import RunnerConfig
from ..core.errors import (
    FrameworkError,
    LoginError,
    PersistenceError,
    ScopeViolationError,
    StepExecutionError,
    WorkflowNotFoundError,
)
from ..core.models import (
    ActionType,
    LoginConfig,
    LogicSpec,
    RunConfig,
    RunHandle,
    RunResult,
    RunStatus,
    RunSummary,
    StepResult,
    StepStatus,
    Workflow,
    WorkflowAction,
    utcnow,
)
from ..rules.binder import VariableBinder
from ..rules.evaluator import RuleEvaluator
from ..rules.loops import LoopExpander, StepInstance
from ..scope.domain import DomainScope
from .interfaces import BrowserDriver, LoginExecutor, RunStore, SessionCapability, WorkflowStore
from .retry import RetryPolicy


logger = structlog.get_logger()

SELECTOR_ACTIONS = {
    ActionType.CLICK,
    ActionType.TYPE,
    ActionType.SELECT,
    ActionType.HOVER,
    ActionType.WAIT_FOR_SELECTOR,
    ActionType.DOWNLOAD,
}


@dataclass
class _RunContext:
    """Mutable state of one in-flight run."""
    handle: RunHandle
    workflow: Workflow
    config: RunConfig
    logic: Optional[LogicSpec]
    steps: list[StepResult] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    evaluated_rules: int = 0
    last_url: Optional[str] = None
    session_blob: Optional[str] = None
    abort_error: Optional[str] = None


class AgentRunner:
    """
    Executes stored workflows as an agent.

    Every external capability is injected: the workflow and run stores, the
    login executor, session reuse, and the browser driver factory. One runner
    drives one page; use separate runners for concurrent runs.
    """

    def __init__(
        self,
        workflow_store: WorkflowStore,
        run_store: RunStore,
        login_executor: Optional[LoginExecutor] = None,
        session: Optional[SessionCapability] = None,
        driver_factory: Callable[[Any], BrowserDriver] = PlaywrightDriver,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[RunnerConfig] = None,
        domain_scope: Optional[DomainScope] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.workflow_store = workflow_store
        self.run_store = run_store
        self.login_executor = login_executor
        self.session = session
        self.config = config or RunnerConfig()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config.retry)
        self.domain_scope = domain_scope

        self._driver_factory = driver_factory
        self._sleep = sleep
        self._browser: Any = None
        self._page: Any = None
        self._driver: Optional[BrowserDriver] = None
        self._cancelled = False

    @property
    def is_initialized(self) -> bool:
        return self._driver is not None

    async def initialize(self, browser: Any, page: Any) -> None:
        """Bind the browser handles this runner will drive."""
        self._browser = browser
        self._page = page
        self._driver = self._driver_factory(page)
        logger.info("runner_initialized")

    async def cleanup(self) -> None:
        """Release browser handles. Safe to call more than once."""
        if self._driver is None and self._page is None:
            return
        self._browser = None
        self._page = None
        self._driver = None
        logger.info("runner_cleaned_up")

    def cancel(self) -> None:
        """Request the in-flight run to stop before its next step."""
        self._cancelled = True

    # ==================== Run ====================

    async def run(
        self,
        workflow_id: str,
        config: Union[RunConfig, Mapping[str, Any], None] = None,
    ) -> RunResult:
        """Execute a workflow and return its final result."""
        ctx: Optional[_RunContext] = None
        try:
            started = await self._start(workflow_id, config)
            if isinstance(started, RunResult):
                return started
            ctx = started
            return await self._execute(ctx)
        except Exception as e:
            logger.exception("run_crashed", workflow_id=workflow_id)
            error = f"Unexpected error: {e}"
            if ctx is not None:
                return await self._finalize(ctx, RunStatus.FAILED, error)
            return RunResult(
                run_id=None,
                workflow_id=workflow_id,
                status=RunStatus.FAILED,
                error=error,
            )
        finally:
            self._cancelled = False

    async def _start(
        self,
        workflow_id: str,
        raw_config: Union[RunConfig, Mapping[str, Any], None],
    ) -> Union[_RunContext, RunResult]:
        """Load the workflow and open the run record, or fail before one exists."""
        if not self.is_initialized:
            return self._early_failure(workflow_id, "Agent runner not initialized")

        try:
            config = self._parse_config(raw_config)
        except ValidationError as e:
            return self._early_failure(workflow_id, f"Invalid run config: {e}")

        try:
            workflow = await self.workflow_store.find_workflow(workflow_id)
        except Exception as e:
            error = PersistenceError(f"Failed to load workflow: {e}", operation="find_workflow")
            return self._early_failure(workflow_id, error.message)

        if workflow is None:
            return self._early_failure(workflow_id, WorkflowNotFoundError(workflow_id).message)

        try:
            handle = await self.run_store.create_run(workflow_id)
        except Exception as e:
            error = PersistenceError(f"Failed to create run: {e}", operation="create_run")
            return self._early_failure(workflow_id, error.message)

        # Each run is its own replay session
        if self.domain_scope is not None:
            self.domain_scope.clear_history()

        logic = config.logic_spec or workflow.logic_spec
        ctx = _RunContext(handle=handle, workflow=workflow, config=config, logic=logic)
        ctx.metadata.update(
            login_required=config.requires_login,
            login_success=not config.requires_login,
            variables=sorted(config.variables),
            rule_ids=[r.id for r in logic.rules] if logic else [],
            loop_contexts=[],
        )
        return ctx

    async def _execute(self, ctx: _RunContext) -> RunResult:
        workflow, config, logic = ctx.workflow, ctx.config, ctx.logic
        log = logger.bind(run_id=ctx.handle.id, workflow_id=workflow.id)
        log.info(
            "run_started",
            actions=len(workflow.actions),
            requires_login=config.requires_login,
            has_logic=logic is not None,
        )

        # Authentication gate
        if config.requires_login:
            login_error = await self._authenticate(ctx)
            if login_error is not None:
                log.warning("login_failed", detail=login_error)
                return await self._finalize(ctx, RunStatus.FAILED, f"Login failed: {login_error}")
            ctx.metadata["login_success"] = True
            log.info("login_succeeded", session_reused=ctx.metadata.get("session_reused", False))

        # Loop expansion
        plan = LoopExpander(logic.loops if logic else ()).expand(
            workflow.ordered_actions(), config.variables
        )
        ctx.metadata["loop_contexts"] = [c.to_dict() for c in plan.loop_contexts]
        evaluator = RuleEvaluator(logic.rules if logic else ())

        await self._execute_steps(ctx, plan.instances, evaluator)

        if ctx.abort_error is not None:
            return await self._finalize(ctx, RunStatus.FAILED, ctx.abort_error)

        return await self._finalize(ctx, None, None)

    def _parse_config(self, raw: Union[RunConfig, Mapping[str, Any], None]) -> RunConfig:
        if raw is None:
            return RunConfig()
        if isinstance(raw, RunConfig):
            return raw
        return RunConfig.model_validate(dict(raw))

    def _early_failure(self, workflow_id: str, error: str) -> RunResult:
        """Failure before any run record exists."""
        logger.warning("run_rejected", workflow_id=workflow_id, error=error)
        return RunResult(
            run_id=None,
            workflow_id=workflow_id,
            status=RunStatus.FAILED,
            error=error,
        )

    async def _finalize(
        self,
        ctx: _RunContext,
        status: Optional[RunStatus],
        error: Optional[str],
    ) -> RunResult:
        """Aggregate, persist and freeze the run outcome."""
        summary = RunSummary.from_steps(ctx.steps)
        if status is None:
            status = summary.aggregate_status()

        ctx.metadata["evaluated_rules"] = ctx.evaluated_rules
        if self.domain_scope is not None:
            ctx.metadata["scope_paused"] = self.domain_scope.get_recording_state().is_paused

        result = RunResult(
            run_id=ctx.handle.id,
            workflow_id=ctx.workflow.id,
            status=status,
            steps=tuple(ctx.steps),
            summary=summary,
            metadata=dict(ctx.metadata),
            error=error,
        )

        patch = {
            "status": status,
            "summary": summary.to_dict(),
            "metadata": result.to_dict()["metadata"],
            "error": error,
        }
        if ctx.session_blob is not None:
            patch["session_data"] = ctx.session_blob

        try:
            await self.run_store.update_run(ctx.handle, patch)
        except Exception as e:
            error = PersistenceError(f"Failed to finalize run: {e}", operation="update_run").message
            result = replace(result, status=RunStatus.FAILED, error=error)

        logger.info(
            "run_completed",
            run_id=result.run_id,
            workflow_id=result.workflow_id,
            status=result.status.value,
            total_steps=summary.total_steps,
            success=summary.success_count,
            failed=summary.failure_count,
            skipped=summary.skipped_count,
            error=result.error,
        )
        return result

    # ==================== Login ====================

    async def _authenticate(self, ctx: _RunContext) -> Optional[str]:
        """Log in before the steps run. Returns a failure detail, or None on success."""
        raw = ctx.config.login_config
        if raw is None:
            return "login configuration is missing"

        try:
            login = raw if isinstance(raw, LoginConfig) else LoginConfig.model_validate(raw)
        except ValidationError as e:
            # Field names only, never the offending values
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            return f"invalid login configuration ({', '.join(fields)})"

        timeout_ms = login.options.get("timeout") or self.config.login_timeout_ms
        try:
            await asyncio.wait_for(self._login(ctx, login, timeout_ms), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return f"timed out after {timeout_ms}ms"
        except LoginError as e:
            return e.message
        except Exception as e:
            return str(e) or type(e).__name__
        return None

    async def _login(self, ctx: _RunContext, login: LoginConfig, timeout_ms: int) -> None:
        if await self._reuse_session(ctx, login):
            return

        if self.login_executor is None:
            raise LoginError("no login executor configured", login_url=login.url)

        await self._driver.navigate(login.url, timeout_ms)

        form = await self.login_executor.detect_form(self._page)
        if form is None:
            raise LoginError("login form not found", login_url=login.url)

        outcome = await self.login_executor.perform_login(self._page, form, login)
        if not outcome.success:
            raise LoginError(outcome.error or "credentials rejected", login_url=login.url)

        if self.session is not None:
            data = await self.session.capture_session_data(self._page)
            ctx.session_blob = self.session.encrypt_session_data(data)

    async def _reuse_session(self, ctx: _RunContext, login: LoginConfig) -> bool:
        blob = login.options.get("session_data")
        if self.session is None or not blob:
            return False

        try:
            data = self.session.decrypt_session_data(blob)
            await self.session.apply_session_to_page(self._page, data)
            valid = await self.session.validate_session(self._page)
        except Exception as e:
            logger.warning("session_reuse_failed", run_id=ctx.handle.id, error=str(e))
            return False

        if valid:
            ctx.metadata["session_reused"] = True
        return valid

    # ==================== Steps ====================

    async def _execute_steps(
        self,
        ctx: _RunContext,
        instances: list[StepInstance],
        evaluator: RuleEvaluator,
    ) -> None:
        loop = asyncio.get_running_loop()
        run_timeout = ctx.config.options.timeout
        deadline = loop.time() + run_timeout / 1000 if run_timeout else None

        for instance in instances:
            if self._cancelled:
                ctx.metadata["cancelled"] = True
                ctx.abort_error = "Run cancelled"
                logger.info("run_cancelled", run_id=ctx.handle.id, completed_steps=len(ctx.steps))
                return

            remaining = None if deadline is None else deadline - loop.time()
            try:
                if remaining is not None and remaining <= 0:
                    raise asyncio.TimeoutError()
                step = await asyncio.wait_for(
                    self._execute_instance(ctx, instance, evaluator), timeout=remaining
                )
            except asyncio.TimeoutError:
                # The interrupted instance leaves no step result behind
                ctx.metadata["timed_out"] = True
                ctx.abort_error = f"Run timed out after {run_timeout}ms"
                logger.warning(
                    "run_timed_out",
                    run_id=ctx.handle.id,
                    timeout_ms=run_timeout,
                    completed_steps=len(ctx.steps),
                )
                return

            ctx.steps.append(step)

            try:
                await self.run_store.create_step_record(ctx.handle, step)
            except Exception as e:
                ctx.abort_error = PersistenceError(
                    f"Failed to record step {step.action_id}: {e}",
                    operation="create_step_record",
                ).message
                logger.error("step_persist_failed", run_id=ctx.handle.id, action_id=step.action_id)
                return

    async def _execute_instance(
        self,
        ctx: _RunContext,
        instance: StepInstance,
        evaluator: RuleEvaluator,
    ) -> StepResult:
        action = instance.action
        started_at = utcnow()
        metadata: dict[str, Any] = {"action_type": action.type.value}
        if instance.loop_id is not None:
            metadata["loop_id"] = instance.loop_id
            metadata["iteration"] = instance.iteration

        log = logger.bind(run_id=ctx.handle.id, action_id=action.id, action_type=action.type.value)

        if (
            self.domain_scope is not None
            and action.type != ActionType.GOTO
            and self.domain_scope.get_recording_state().is_paused
        ):
            metadata["scope_paused"] = True
            log.info("step_skipped", reason="scope_paused")
            return StepResult(action.id, StepStatus.SKIPPED, 0, metadata, started_at, utcnow())

        decision = evaluator.decide(instance.bindings)
        ctx.evaluated_rules += decision.evaluated
        metadata["rule_results"] = decision.trace

        if decision.skip:
            log.info("step_skipped", reason="rule", rules=decision.matched_rule_ids)
            return StepResult(action.id, StepStatus.SKIPPED, 0, metadata, started_at, utcnow())

        if decision.wait_ms > 0:
            metadata["waited_ms"] = decision.wait_ms
            await self._sleep(decision.wait_ms / 1000)

        binder = VariableBinder(instance.bindings)
        resolved = binder.resolve_action(action)
        unresolved = binder.unresolved(action)
        if unresolved:
            metadata["unresolved"] = unresolved

        if action.type == ActionType.GOTO and self.domain_scope is not None and resolved["url"]:
            violation = self._check_navigation(ctx, action, resolved["url"])
            if violation is not None:
                metadata["error"] = violation.message
                metadata["error_type"] = type(violation).__name__
                log.warning("step_failed", error=violation.message, attempts=1)
                return StepResult(action.id, StepStatus.FAILED, 1, metadata, started_at, utcnow())

        timeout_ms = self._step_timeout(ctx, action)
        policy = self._policy_for(ctx, action).extended(decision.extra_attempts)

        outcome = await policy.execute(
            lambda: self._perform(action, resolved, timeout_ms),
            sleep=self._sleep,
        )

        if outcome.success:
            if outcome.result is not None:
                metadata["download_path"] = outcome.result
            self._observe_current_url(ctx)
            log.debug("step_succeeded", attempts=outcome.attempts)
            return StepResult(
                action.id, StepStatus.SUCCESS, outcome.attempts, metadata, started_at, utcnow()
            )

        metadata["error"] = str(outcome.error)
        metadata["error_type"] = type(outcome.error).__name__
        log.warning("step_failed", error=str(outcome.error), attempts=outcome.attempts)

        screenshot = None
        if self._screenshot_on_error(ctx):
            screenshot = await self._capture_screenshot(log)

        return StepResult(
            action.id,
            StepStatus.FAILED,
            outcome.attempts,
            metadata,
            started_at,
            utcnow(),
            screenshot,
        )

    def _policy_for(self, ctx: _RunContext, action: WorkflowAction) -> RetryPolicy:
        if ctx.logic is not None:
            return self.retry_policy.with_attempts(ctx.logic.settings.retry_attempts)
        return self.retry_policy.with_attempts(action.retry_count)

    def _step_timeout(self, ctx: _RunContext, action: WorkflowAction) -> int:
        if "timeout" in action.model_fields_set:
            return action.timeout
        if ctx.logic is not None:
            return ctx.logic.settings.timeout
        return self.config.default_step_timeout_ms

    def _screenshot_on_error(self, ctx: _RunContext) -> bool:
        if ctx.logic is not None:
            return ctx.logic.settings.screenshot_on_error
        return self.config.screenshot_on_error

    async def _capture_screenshot(self, log) -> Optional[bytes]:
        try:
            return await self._driver.screenshot()
        except Exception as e:
            log.warning("screenshot_failed", error=str(e))
            return None

    # ==================== Domain scope ====================

    def _check_navigation(
        self,
        ctx: _RunContext,
        action: WorkflowAction,
        url: str,
    ) -> Optional[ScopeViolationError]:
        event = self.domain_scope.record_navigation(url)
        ctx.last_url = url
        if event.allowed:
            return None
        return ScopeViolationError(
            f"Navigation to {event.domain} is outside the permitted scope",
            domain=event.domain,
            action_id=action.id,
            action_type=action.type.value,
        )

    def _observe_current_url(self, ctx: _RunContext) -> None:
        if self.domain_scope is None:
            return
        url = self._driver.current_url()
        if url and url != ctx.last_url:
            self.domain_scope.record_navigation(url)
            ctx.last_url = url

    # ==================== Primitives ====================

    async def _perform(
        self,
        action: WorkflowAction,
        resolved: dict[str, Optional[str]],
        timeout_ms: int,
    ) -> Optional[str]:
        """Run one primitive under the step timeout, normalising failures."""
        try:
            return await asyncio.wait_for(
                self._dispatch(action, resolved, timeout_ms),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise StepExecutionError(
                f"Step {action.id} timed out after {timeout_ms}ms",
                action_id=action.id,
                action_type=action.type.value,
                selector=resolved["selector"],
            )
        except FrameworkError:
            raise
        except Exception as e:
            raise StepExecutionError(
                str(e) or type(e).__name__,
                action_id=action.id,
                action_type=action.type.value,
                selector=resolved["selector"],
            )

    async def _dispatch(
        self,
        action: WorkflowAction,
        resolved: dict[str, Optional[str]],
        timeout_ms: int,
    ) -> Optional[str]:
        driver = self._driver
        selector = resolved["selector"]
        value = resolved["value"]

        if action.type == ActionType.GOTO:
            if not resolved["url"]:
                raise self._missing(action, "url")
            await driver.navigate(resolved["url"], timeout_ms)
            return None

        if action.type in SELECTOR_ACTIONS and not selector:
            raise self._missing(action, "selector")

        if action.type == ActionType.CLICK:
            await driver.click(selector, timeout_ms)
        elif action.type == ActionType.TYPE:
            await driver.type(selector, value or "", timeout_ms)
        elif action.type == ActionType.SELECT:
            if value is None:
                raise self._missing(action, "value")
            await driver.select(selector, value, timeout_ms)
        elif action.type == ActionType.HOVER:
            await driver.hover(selector, timeout_ms)
        elif action.type == ActionType.WAIT_FOR_SELECTOR:
            await driver.wait_for_selector(selector, timeout_ms)
        elif action.type == ActionType.DOWNLOAD:
            return await driver.download(selector, timeout_ms)
        return None

    @staticmethod
    def _missing(action: WorkflowAction, param: str) -> StepExecutionError:
        return StepExecutionError(
            f"{action.type.value} action {action.id} requires a {param}",
            action_id=action.id,
            action_type=action.type.value,
            selector=action.selector,
            retryable=False,
        )
