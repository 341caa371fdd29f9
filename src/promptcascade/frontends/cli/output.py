"""Output formatting utilities for CLI commands."""

from __future__ import annotations

from typing import Any

from rich.markup import escape
from rich.tree import Tree

OUTPUT_PREVIEW_CHARS = 80


def _label(prompt: dict[str, Any], show_output: bool) -> str:
    label = f"[bold]{escape(prompt.get('name') or 'Untitled')}[/] [dim]{escape(str(prompt.get('id')))}[/]"
    tags = []
    if prompt.get("is_assistant"):
        tags.append("[magenta]assistant[/]")
    if prompt.get("node_type") == "action":
        action = prompt.get("post_action") or "no action"
        tags.append(f"[cyan]action: {escape(action)}[/]")
    if prompt.get("auto_run_children"):
        tags.append("[cyan]auto-run[/]")
    if prompt.get("exclude_from_cascade"):
        tags.append("[yellow]excluded[/]")
    if tags:
        label += " " + " ".join(tags)

    if show_output and prompt.get("output"):
        text = " ".join(str(prompt["output"]).split())
        if len(text) > OUTPUT_PREVIEW_CHARS:
            text = text[: OUTPUT_PREVIEW_CHARS - 1] + "…"
        label += f"\n[green]{escape(text)}[/]"
    return label


def render_tree(prompts: list[dict[str, Any]], title: str, show_output: bool = False) -> Tree:
    """Rich tree for the nested prompt documents of a tree file."""
    root = Tree(f"[bold]{escape(title)}[/]")

    def add(branch: Tree, prompt: dict[str, Any]) -> None:
        node = branch.add(_label(prompt, show_output))
        for child in prompt.get("children") or []:
            add(node, child)

    for prompt in prompts:
        add(root, prompt)
    return root
