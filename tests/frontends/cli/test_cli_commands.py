"""Tests for the promptcascade CLI commands."""

from __future__ import annotations

import asyncio
import logging

import pytest
import yaml
from click.testing import CliRunner

from promptcascade.core import logging_config
from promptcascade.core.control import RunControl
from promptcascade.frontends.cli.main import _build_cli, _cancel_handler

TREE = """\
prompts:
  - id: root
    name: Outline
    user_prompt: Write about {{topic}}
    variables:
      topic: rivers
    children:
      - id: s1
        name: Section 1
        user_prompt: "Expand: {{cascade_previous_response}}"
      - id: s2
        name: Skipped section
        user_prompt: Never sent
        exclude_from_cascade: true
"""


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("PROMPTCASCADE_CONFIG", "PROMPTCASCADE_BACKEND_URL", "PROMPTCASCADE_BACKEND_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    yield
    logger = logging.getLogger(logging_config.ROOT_LOGGER)
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    logging_config._configured = False


@pytest.fixture
def tree_file(tmp_path):
    path = tmp_path / "tree.yaml"
    path.write_text(TREE)
    return path


@pytest.fixture
def cli():
    return _build_cli()


class TestRunCommand:
    """Tests for promptcascade run."""

    def test_dry_run_writes_outputs(self, cli, tree_file, tmp_path):
        """A dry run echoes rendered prompts into the output tree."""
        out = tmp_path / "out.yaml"

        result = CliRunner().invoke(cli, ["run", str(tree_file), "--dry-run", "--yes", "-o", str(out)])

        assert result.exit_code == 0, result.output
        assert "Running cascade" in result.output
        assert "1 skipped" in result.output
        data = yaml.safe_load(out.read_text())
        root = data["prompts"][0]
        assert root["output"] == "Write about rivers"
        first, second = root["children"]
        assert first["output"] == "Expand: Write about rivers"
        assert second["output"] is None

    def test_trace_flag(self, cli, tree_file):
        """--trace prints the run's spans."""
        result = CliRunner().invoke(cli, ["run", str(tree_file), "--dry-run", "--yes", "--trace"])

        assert result.exit_code == 0, result.output
        assert "Status: completed" in result.output
        assert "Spans: 3" in result.output

    def test_root_option(self, cli, tree_file, tmp_path):
        """--root starts the cascade at another prompt."""
        out = tmp_path / "out.yaml"

        result = CliRunner().invoke(cli, ["run", str(tree_file), "--root", "s1", "-d", "-y", "-o", str(out)])

        assert result.exit_code == 0, result.output
        root = yaml.safe_load(out.read_text())["prompts"][0]
        assert root["output"] is None
        assert root["children"][0]["output"] == "Expand: {{cascade_previous_response}}"

    def test_unknown_root_fails(self, cli, tree_file):
        """A missing root exits non-zero."""
        result = CliRunner().invoke(cli, ["run", str(tree_file), "--root", "nope", "-d", "-y"])

        assert result.exit_code == 1

    def test_requires_backend(self, cli, tree_file):
        """Without --dry-run a backend URL is required."""
        result = CliRunner().invoke(cli, ["run", str(tree_file), "--yes"])

        assert result.exit_code != 0
        assert "No backend configured" in result.output

    def test_invalid_tree_file(self, cli, tmp_path):
        """Malformed tree files are reported as usage errors."""
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")

        result = CliRunner().invoke(cli, ["run", str(path), "--dry-run"])

        assert result.exit_code != 0
        assert "must contain a mapping" in result.output

    def test_empty_tree(self, cli, tmp_path):
        """A tree without prompts has nothing to run."""
        path = tmp_path / "empty.yaml"
        path.write_text("prompts: []\n")

        result = CliRunner().invoke(cli, ["run", str(path), "--dry-run"])

        assert result.exit_code != 0
        assert "No prompts in" in result.output


class TestTreeCommand:
    """Tests for promptcascade tree."""

    def test_renders_names(self, cli, tree_file):
        """Every prompt appears with its tags."""
        result = CliRunner().invoke(cli, ["tree", str(tree_file)])

        assert result.exit_code == 0, result.output
        assert "Outline" in result.output
        assert "Section 1" in result.output
        assert "excluded" in result.output

    def test_help_lists_commands(self, cli):
        """The group help names both commands."""
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "run" in result.output
        assert "tree" in result.output


class TestCancelHandler:
    """Tests for the Ctrl-C cancel callback."""

    async def test_cancel_task_is_held_until_done(self):
        """The scheduled cancel is referenced until it finishes, then released."""
        control = RunControl()
        pending: set[asyncio.Task] = set()
        on_sigint = _cancel_handler(control, pending)

        on_sigint()

        assert len(pending) == 1
        await asyncio.gather(*pending)
        await asyncio.sleep(0)
        assert control.is_cancelled
        assert pending == set()

    async def test_failed_cancel_is_logged(self, caplog):
        """An exception from cancel() is logged rather than lost."""

        class BrokenControl:
            async def cancel(self):
                raise RuntimeError("handler exploded")

        pending: set[asyncio.Task] = set()

        with caplog.at_level(logging.WARNING, logger="promptcascade"):
            _cancel_handler(BrokenControl(), pending)()
            await asyncio.gather(*pending, return_exceptions=True)
            await asyncio.sleep(0)

        assert pending == set()
        assert "cancel_failed: error=handler exploded" in caplog.text
