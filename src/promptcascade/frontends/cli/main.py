"""CLI entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point for the CLI."""
    import importlib.util

    if importlib.util.find_spec("rich_click") is None:
        print("CLI dependencies not installed. Run: pip install promptcascade")
        sys.exit(1)

    _run_cli()


def _run_cli() -> None:
    """CLI runner."""
    cli = _build_cli()
    cli()


def _build_cli() -> Any:
    """CLI definition."""
    import rich_click as click

    # Configure rich-click styling
    click.rich_click.USE_RICH_MARKUP = True
    click.rich_click.USE_MARKDOWN = True
    click.rich_click.SHOW_ARGUMENTS = True
    click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
    click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
    click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
    click.rich_click.ERRORS_EPILOGUE = ""
    click.rich_click.MAX_WIDTH = 100

    # =========================================================================
    # Root CLI
    # =========================================================================
    @click.group()
    @click.version_option(package_name="promptcascade")
    def cli():
        """PromptCascade - run hierarchical prompt trees level by level.

        Tree files are YAML or JSON documents of nested prompts.

        **Commands:**

            promptcascade run     Execute a cascade over a tree file

            promptcascade tree    Show a tree file's hierarchy
        """
        pass

    # =========================================================================
    # run
    # =========================================================================
    @cli.command()
    @click.argument("tree_file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--root", "root_id", default=None, help="Root prompt id (default: first top-level prompt)")
    @click.option("--context", "context_id", default=None, help="Conversation context id")
    @click.option(
        "--config",
        "config_file",
        type=click.Path(exists=True, dir_okay=False),
        default=None,
        help="Config file (default: $PROMPTCASCADE_CONFIG or ./promptcascade.yaml)",
    )
    @click.option("--backend-url", default=None, help="Functions backend URL")
    @click.option("--dry-run", "-d", is_flag=True, help="Echo rendered prompts instead of calling a provider")
    @click.option("--yes", "-y", is_flag=True, help="Never ask; approve previews and use --on-error")
    @click.option(
        "--on-error",
        type=click.Choice(["skip", "stop"]),
        default="stop",
        show_default=True,
        help="Answer to failed prompts when not asking",
    )
    @click.option(
        "--output",
        "-o",
        type=click.Path(dir_okay=False),
        default=None,
        help="Write the updated tree here",
    )
    @click.option("--verbose", "-v", is_flag=True, help="Print full responses")
    @click.option("--trace", "show_trace", is_flag=True, help="Print the execution trace at the end")
    @click.option("--log-level", default="WARNING", show_default=True, help="Log level")
    @click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Log format")
    def run(
        tree_file: str,
        root_id: str | None,
        context_id: str | None,
        config_file: str | None,
        backend_url: str | None,
        dry_run: bool,
        yes: bool,
        on_error: str,
        output: str | None,
        verbose: bool,
        show_trace: bool,
        log_level: str,
        log_format: str | None,
    ):
        """Execute a cascade over a tree file.

        Every prompt under the root runs once, level by level. Each prompt
        sees earlier responses through template variables such as
        `{{cascade_previous_response}}`.

        **Examples:**

            promptcascade run tree.yaml --dry-run

            promptcascade run tree.yaml --backend-url https://api.example.com -o out.yaml

            promptcascade run tree.yaml --root intro --yes --on-error skip
        """
        from rich.console import Console

        from promptcascade.backends.memory import InMemoryStorage
        from promptcascade.core.config import load_config
        from promptcascade.core.logging_config import configure_logging
        from promptcascade.core.types import ErrorAction
        from promptcascade.frontends.cli.host import RichCascadeHost

        configure_logging(level=log_level, format=log_format)
        try:
            config = load_config(config_file, backend_url=backend_url)
            storage = InMemoryStorage.load_tree_file(tree_file)
        except (ValueError, OSError) as e:
            raise click.ClickException(str(e)) from e

        roots = storage.roots()
        if root_id is None:
            if not roots:
                raise click.ClickException(f"No prompts in {tree_file}")
            root_id = roots[0].id
        if not dry_run and not config.backend_url:
            raise click.ClickException(
                "No backend configured. Pass --backend-url, set PROMPTCASCADE_BACKEND_URL, or use --dry-run."
            )

        console = Console()
        host = RichCascadeHost(
            console,
            interactive=not yes and sys.stdin.isatty(),
            error_action=ErrorAction(on_error),
            verbose=verbose,
        )
        state, trace = asyncio.run(_execute(storage, host, config, root_id, context_id, dry_run))

        if show_trace and trace is not None:
            console.print(trace.explain(), markup=False)
        if output:
            storage.save(output)
            console.print(f"[dim]Wrote {output}[/]")
        sys.exit(0 if state.status == "completed" else 1)

    # =========================================================================
    # tree
    # =========================================================================
    @cli.command()
    @click.argument("tree_file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--output", "-o", "show_output", is_flag=True, help="Show each prompt's last output")
    def tree(tree_file: str, show_output: bool):
        """Show the prompt hierarchy of a tree file.

        **Examples:**

            promptcascade tree tree.yaml

            promptcascade tree out.yaml --output
        """
        from rich.console import Console

        from promptcascade.backends.memory import InMemoryStorage
        from promptcascade.frontends.cli.output import render_tree

        try:
            storage = InMemoryStorage.load_tree_file(tree_file)
        except (ValueError, OSError) as e:
            raise click.ClickException(str(e)) from e
        Console().print(render_tree(storage.dump()["prompts"], tree_file, show_output))

    return cli


async def _execute(storage: Any, host: Any, config: Any, root_id: str, context_id: str | None, dry_run: bool) -> Any:
    """Run one cascade with Ctrl-C wired to the host's cancel."""
    from promptcascade.backends.http import FunctionsClient, HttpExecutionBackend, HttpTracingBackend
    from promptcascade.backends.memory import EchoExecutionBackend, InMemoryTracing
    from promptcascade.core.orchestrator import CascadeExecutor

    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = set()
    try:
        loop.add_signal_handler(signal.SIGINT, _cancel_handler(host.control, pending))
    except (NotImplementedError, RuntimeError):
        pass

    try:
        if dry_run:
            executor = CascadeExecutor(
                storage, EchoExecutionBackend(), host, tracing=InMemoryTracing(), events=host, config=config
            )
            state = await executor.execute_cascade(root_id, context_id)
        else:
            async with FunctionsClient(config.backend_url, token=config.backend_token) as client:
                executor = CascadeExecutor(
                    storage,
                    HttpExecutionBackend(client),
                    host,
                    tracing=HttpTracingBackend(client),
                    events=host,
                    config=config,
                )
                state = await executor.execute_cascade(root_id, context_id)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    trace = executor.tracer.get(state.trace_id) if state.trace_id else None
    return state, trace


def _cancel_handler(control: Any, pending: set[asyncio.Task]) -> Callable[[], None]:
    """SIGINT callback scheduling ``control.cancel()``.

    The task is held in ``pending`` until it finishes.
    """

    def done(task: asyncio.Task) -> None:
        pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("cancel_failed: error=%s", task.exception())

    def on_sigint() -> None:
        task = asyncio.ensure_future(control.cancel())
        pending.add(task)
        task.add_done_callback(done)

    return on_sigint
