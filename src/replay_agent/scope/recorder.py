"""Capture gate: records browser actions only while inside the domain scope."""

from typing import Any, Optional

import structlog
from pydantic import ValidationError

from ..core.errors import TaskError
from ..core.models import ActionType, Workflow, WorkflowAction
from .domain import DomainScope, NavigationEvent


logger = structlog.get_logger()


class CaptureRecorder:
    """
    Collects captured actions for one recording session.

    The session's DomainScope decides what gets recorded: while the scope is
    paused (last navigation left the target system) captured actions are
    dropped instead of appended.
    """

    def __init__(self, scope: DomainScope, workflow_id: str):
        self.scope = scope
        self.workflow_id = workflow_id
        self._captured: list[dict[str, Any]] = []
        self._dropped = 0
        self._stopped = False

    @property
    def is_recording(self) -> bool:
        return not self._stopped and not self.scope.get_recording_state().is_paused

    def observe_navigation(self, url: Any) -> NavigationEvent:
        """Feed an observed page navigation to the scope."""
        event = self.scope.record_navigation(url)
        if not event.allowed:
            logger.info(
                "recording_paused",
                workflow_id=self.workflow_id,
                domain=event.domain,
            )
        return event

    def capture(self, action: dict[str, Any]) -> bool:
        """Append a captured action; returns False when it was dropped."""
        if self._stopped:
            raise TaskError("Capture session already stopped", component="recorder")

        action = dict(action)
        action_type = ActionType(action.get("type"))

        if action_type == ActionType.GOTO:
            self.observe_navigation(action.get("url"))
        elif not action.get("selector"):
            action["selector"] = "body"

        if self.scope.get_recording_state().is_paused:
            self._dropped += 1
            logger.debug(
                "action_dropped",
                workflow_id=self.workflow_id,
                action_type=action_type.value,
            )
            return False

        self._captured.append(action)
        return True

    def stop(self) -> list[WorkflowAction]:
        """End the session and return the captured actions in capture order."""
        self._stopped = True
        actions = []
        for index, raw in enumerate(self._captured):
            data = dict(raw)
            data.setdefault("id", f"{self.workflow_id}-action-{index + 1}")
            data["order"] = index
            try:
                actions.append(WorkflowAction.model_validate(data))
            except ValidationError as e:
                raise TaskError(
                    f"Captured action {index} is invalid: {e}", component="recorder"
                )

        logger.info(
            "capture_stopped",
            workflow_id=self.workflow_id,
            captured=len(actions),
            dropped=self._dropped,
        )
        return actions

    def to_workflow(self, name: Optional[str] = None) -> Workflow:
        actions = self.stop()
        return Workflow(id=self.workflow_id, name=name or self.workflow_id, actions=actions)

    def stats(self) -> dict[str, Any]:
        return {
            "captured": len(self._captured),
            "dropped": self._dropped,
            "scope": self.scope.get_domain_stats().to_dict(),
        }
