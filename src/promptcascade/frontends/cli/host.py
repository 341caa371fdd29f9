"""Terminal host for cascade runs.

Prints progress and notifications with rich and asks the user through
prompt_toolkit. With ``interactive=False`` every dialog falls back to the
BaseCascadeHost defaults, so runs can be scripted.
"""

from __future__ import annotations

import json
from typing import Any

from prompt_toolkit import PromptSession
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax

from promptcascade.core.control import RunControl
from promptcascade.core.host import BaseCascadeHost
from promptcascade.core.protocols import (
    ActionPreview,
    CascadeEvent,
    CascadeEventType,
    Notification,
    QuestionPrompt,
)
from promptcascade.core.types import ErrorAction, PromptNode

LEVEL_STYLES = {
    "success": "green",
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
}

ERROR_CHOICES = {
    "r": ErrorAction.RETRY,
    "retry": ErrorAction.RETRY,
    "s": ErrorAction.SKIP,
    "skip": ErrorAction.SKIP,
    "x": ErrorAction.STOP,
    "stop": ErrorAction.STOP,
}

PREVIEW_JSON_CHARS = 2000


def _truncate(text: str, limit: int = 120) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


class RichCascadeHost(BaseCascadeHost):
    """CascadeHost and EventSink for the terminal.

    Args:
        console: Output console.
        interactive: Ask the user; otherwise use the fixed defaults.
        control: Cancel/pause token.
        error_action: Non-interactive answer to retry/skip/stop.
        approve_previews: Non-interactive answer to child-creation previews.
        verbose: Print full responses instead of one-line summaries.
    """

    def __init__(
        self,
        console: Console | None = None,
        interactive: bool = True,
        control: RunControl | None = None,
        error_action: ErrorAction = ErrorAction.STOP,
        approve_previews: bool = True,
        verbose: bool = False,
    ) -> None:
        super().__init__(control=control, error_action=error_action, approve_previews=approve_previews)
        self.console = console or Console()
        self.interactive = interactive
        self.verbose = verbose
        self._session: PromptSession[str] | None = None

    async def _ask(self, message: str) -> str | None:
        """One line of input; None when the user aborts the prompt."""
        if self._session is None:
            self._session = PromptSession()
        try:
            return (await self._session.prompt_async(message)).strip()
        except (KeyboardInterrupt, EOFError):
            return None

    # -- run-state callbacks ------------------------------------------------

    def start_cascade(self, total_levels: int, total_nodes: int) -> None:
        super().start_cascade(total_levels, total_nodes)
        self.console.print(
            f"[bold]Running cascade[/] [dim]({total_nodes} prompt(s) in {total_levels} level(s))[/]"
        )

    def update_progress(self, level: int, name: str, index: int, node_id: str) -> None:
        super().update_progress(level, name, index, node_id)
        self.console.print(f"[cyan]▶[/] [dim]L{level}[/] {escape(name)}")

    def mark_complete(self, node_id: str, name: str, response: str) -> None:
        super().mark_complete(node_id, name, response)
        if self.verbose:
            self.console.print(Panel(escape(response), title=escape(name), border_style="green"))
        else:
            self.console.print(f"  [green]✓[/] [dim]{escape(_truncate(response))}[/]")

    def mark_skipped(self, node_id: str, name: str, reason: str) -> None:
        super().mark_skipped(node_id, name, reason)
        self.console.print(f"[yellow]–[/] {escape(name)} [dim]({escape(_truncate(reason, 80))})[/]")

    def complete_cascade(self) -> None:
        super().complete_cascade()
        self.console.print(
            f"[bold]Done:[/] {len(self.completed)} completed, {len(self.skipped)} skipped"
        )

    def notify(self, notification: Notification) -> None:
        super().notify(notification)
        # Per-node success is already shown by mark_complete
        if notification.level == "success" and notification.title.startswith("Completed:"):
            return
        style = LEVEL_STYLES.get(notification.level, "white")
        line = f"[{style}]{escape(notification.title)}[/]"
        if notification.description:
            line += f" [dim]{escape(notification.description)}[/]"
        if notification.code and notification.level == "error":
            line += f" [dim]({notification.code})[/]"
        self.console.print(line)

    # -- dialogs ------------------------------------------------------------

    async def show_error(self, node: PromptNode, error: BaseException) -> ErrorAction:
        self.console.print(
            Panel(escape(str(error)), title=f"{escape(node.display_name)} failed", border_style="red")
        )
        if not self.interactive:
            return self.error_action
        while True:
            answer = await self._ask("[r]etry, [s]kip or stop [x]? ")
            if answer is None:
                return ErrorAction.STOP
            choice = ERROR_CHOICES.get(answer.lower())
            if choice is not None:
                return choice
            self.console.print("[dim]Please answer r, s or x.[/]")

    async def show_action_preview(self, preview: ActionPreview) -> bool:
        rendered = json.dumps(preview.json_response, indent=2)
        if len(rendered) > PREVIEW_JSON_CHARS:
            rendered = rendered[:PREVIEW_JSON_CHARS] + "\n…"
        self.console.print(
            Panel(
                Syntax(rendered, "json", word_wrap=True),
                title=f"{escape(preview.node_name)}: {preview.action} will create {preview.item_count} prompt(s)",
                border_style="cyan",
            )
        )
        if not self.interactive:
            return self.approve_previews
        answer = await self._ask("Create these prompts? [Y/n] ")
        return answer is not None and answer.lower() in ("", "y", "yes")

    async def show_question(self, question: QuestionPrompt) -> str | None:
        if not self.interactive:
            return None
        header = f"{escape(question.node_name)} asks ({question.attempt}/{question.max_questions})"
        body = escape(question.question)
        if question.description:
            body += f"\n\n[dim]{escape(question.description)}[/]"
        self.console.print(Panel(body, title=header, border_style="magenta"))
        return await self._ask(f"{question.variable_name}> ")

    # -- events -------------------------------------------------------------

    async def emit(self, event: CascadeEvent) -> None:
        if event.type == CascadeEventType.TREE_REFRESH_NEEDED:
            count = event.data.get("created_count", 0)
            self.console.print(f"  [cyan]+[/] [dim]{count} prompt(s) added to the tree[/]")
        elif event.type == CascadeEventType.VARIABLES_UPDATED:
            names: list[Any] = [*event.data.get("created", []), *event.data.get("updated", [])]
            self.console.print(f"  [cyan]=[/] [dim]variables set: {', '.join(map(str, names))}[/]")
