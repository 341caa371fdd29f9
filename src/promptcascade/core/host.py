"""Headless CascadeHost with recorded run state.

BaseCascadeHost keeps progress and notifications in memory and answers
dialogs with fixed defaults. Interactive frontends subclass it and override
the ``show_*`` methods.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from promptcascade.core.control import RunControl
from promptcascade.core.protocols import ActionPreview, Notification, QuestionPrompt
from promptcascade.core.types import ErrorAction, PromptNode

logger = logging.getLogger(__name__)


@dataclass
class ProgressRecord:
    node_id: str
    name: str
    detail: str


class BaseCascadeHost:
    """Host that records run state and answers dialogs non-interactively.

    Args:
        control: Cancel/pause token; a new one is created if omitted.
        error_action: Answer to every retry/skip/stop dialog.
        approve_previews: Answer to every child-creation preview.
    """

    def __init__(
        self,
        control: RunControl | None = None,
        error_action: ErrorAction = ErrorAction.STOP,
        approve_previews: bool = True,
    ) -> None:
        self.control = control or RunControl()
        self.error_action = error_action
        self.approve_previews = approve_previews

        self.total_levels = 0
        self.total_nodes = 0
        self.running = False
        self.current_level = 0
        self.current_node_id: str | None = None
        self.completed: list[ProgressRecord] = []
        self.skipped: list[ProgressRecord] = []
        self.notifications: list[Notification] = []
        self.collected_question_vars: dict[str, str] = {}

    # -- run-state callbacks ------------------------------------------------

    def start_cascade(self, total_levels: int, total_nodes: int) -> None:
        self.total_levels = total_levels
        self.total_nodes = total_nodes
        self.running = True
        self.completed.clear()
        self.skipped.clear()
        self.collected_question_vars.clear()

    def update_progress(self, level: int, name: str, index: int, node_id: str) -> None:
        self.current_level = level
        self.current_node_id = node_id

    def mark_complete(self, node_id: str, name: str, response: str) -> None:
        self.completed.append(ProgressRecord(node_id, name, response))

    def mark_skipped(self, node_id: str, name: str, reason: str) -> None:
        self.skipped.append(ProgressRecord(node_id, name, reason))

    def complete_cascade(self) -> None:
        self.running = False
        self.current_node_id = None

    # -- pause / cancel -----------------------------------------------------

    def is_cancelled(self) -> bool:
        return self.control.is_cancelled

    async def check_paused(self) -> bool:
        return await self.control.wait_while_paused()

    def on_cancel(self, handler: Callable[[], Awaitable[None] | None]) -> Callable[[], None]:
        return self.control.on_cancel(handler)

    # -- dialogs ------------------------------------------------------------

    async def show_error(self, node: PromptNode, error: BaseException) -> ErrorAction:
        return self.error_action

    async def show_action_preview(self, preview: ActionPreview) -> bool:
        return self.approve_previews

    async def show_question(self, question: QuestionPrompt) -> str | None:
        return None

    def add_collected_question_var(self, name: str, value: str) -> None:
        self.collected_question_vars[name] = value

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)
        log = logger.warning if notification.level in ("warning", "error") else logger.info
        log(
            "cascade_notification: level=%s, title=%s, code=%s",
            notification.level,
            notification.title,
            notification.code,
        )
