"""Tests for post-actions inside a cascade and auto-cascade of created children."""

from __future__ import annotations

import json

import pytest

from promptcascade.core.errors import CascadeCancelledError
from promptcascade.core.host import BaseCascadeHost
from promptcascade.core.protocols import CascadeEventType


def _json_action(**config):
    return {
        "node_type": "action",
        "post_action": "create_children_json",
        "post_action_config": {"json_path": "items", **config},
    }


def _text_action(count: int, prefix: str = "Step {{n}}", **fields):
    return {
        "node_type": "action",
        "post_action": "create_children_text",
        "post_action_config": {"children_count": count, "name_prefix": prefix},
        **fields,
    }


class TestPostActionsInCascade:
    """A node's post-action runs after its output is stored."""

    async def test_created_children_run_before_next_sibling(
        self, trees, execution, host, events, make_executor
    ):
        """A -> [B(action, auto-run), C]: B's created child D runs between B and C."""
        storage = trees.storage(
            trees.prompt(
                "A",
                children=[
                    trees.prompt("B", auto_run_children=True, **_json_action()),
                    trees.prompt("C"),
                ],
            )
        )
        execution.scripts = {"B": [json.dumps({"items": [{"name": "D", "admin_prompt": "Do D"}]})]}

        state = await make_executor(storage).execute_cascade("A")

        assert state.status == "completed"
        created = [n for n in storage.nodes.values() if n.parent_id == "B"]
        assert len(created) == 1
        d = created[0]
        assert d.name == "D"
        assert d.admin_prompt == "Do D"
        assert d.extracted_variables == {"name": "D", "admin_prompt": "Do D"}
        assert execution.called_nodes == ["A", "B", d.id, "C"]
        assert [r.name for r in host.completed] == ["A", "B", "D", "C"]
        assert d.output == f"response for {d.id}"

        b = storage.nodes["B"]
        assert b.last_action_result["status"] == "success"
        assert b.last_action_result["created_count"] == 1
        assert b.extracted_variables == {"items": [{"name": "D", "admin_prompt": "Do D"}]}
        refresh = [e for e in events.events if e.type == CascadeEventType.TREE_REFRESH_NEEDED]
        assert refresh[0].data["created_count"] == 1
        assert refresh[0].data["parent_id"] == "B"

    async def test_children_not_run_without_auto_run(self, trees, execution, make_executor):
        """Created children wait when auto-run is off."""
        storage = trees.storage(trees.prompt("A", **_json_action()))
        execution.scripts = {"A": ['{"items": ["one", "two"]}']}

        await make_executor(storage).execute_cascade("A")

        created = sorted(
            (n for n in storage.nodes.values() if n.parent_id == "A"), key=lambda n: n.position
        )
        assert [n.name for n in created] == ["one", "two"]
        assert [n.extracted_variables for n in created] == [{"value": "one"}, {"value": "two"}]
        assert execution.called_nodes == ["A"]

    async def test_malformed_json_keeps_output_and_continues(
        self, trees, execution, host, make_executor
    ):
        """A bad JSON response keeps the output and the run goes on."""
        storage = trees.storage(
            trees.prompt("A", children=[trees.prompt("B", **_json_action()), trees.prompt("C")])
        )
        execution.scripts = {"B": ["Sure! Here are some ideas, not JSON though."]}

        state = await make_executor(storage).execute_cascade("A")

        assert state.status == "completed"
        b = storage.nodes["B"]
        assert b.output == "Sure! Here are some ideas, not JSON though."
        assert b.last_action_result["status"] == "failed"
        assert "JSON parse error" in b.last_action_result["error"]
        assert b.last_action_result["response_preview"].startswith("Sure!")
        assert not [n for n in storage.nodes.values() if n.parent_id == "B"]
        assert execution.called_nodes == ["A", "B", "C"]
        assert "JSON_PARSE_ERROR" in [n.code for n in host.notifications]

    async def test_wrong_json_path_reports_available_arrays(self, trees, execution, make_executor):
        """A wrong json_path names the arrays that exist."""
        storage = trees.storage(trees.prompt("A", **_json_action()))
        execution.scripts = {"A": ['```json\n{"sections": [{"name": "x"}]}\n```']}

        await make_executor(storage).execute_cascade("A")

        result = storage.nodes["A"].last_action_result
        assert result["status"] == "failed"
        assert result["available_arrays"] == ["sections"]
        assert result["suggestion"] == 'Try setting json_path to "sections"'
        assert storage.nodes["A"].extracted_variables == {"sections": [{"name": "x"}]}

    async def test_empty_array_is_a_skipped_action(self, trees, execution, make_executor):
        """An empty array skips the action with a warning."""
        storage = trees.storage(trees.prompt("A", **_json_action()))
        execution.scripts = {"A": ['{"items": []}']}
        executor = make_executor(storage)

        state = await executor.execute_cascade("A")

        result = storage.nodes["A"].last_action_result
        assert result["status"] == "success"
        assert result["created_count"] == 0
        action_spans = [s for s in executor.tracer.get(state.trace_id).spans if s.span_type == "action"]
        assert [s.status for s in action_spans] == ["skipped"]

    async def test_declined_preview_creates_nothing(self, trees, execution, make_executor):
        """Declining the preview creates no children."""
        storage = trees.storage(trees.prompt("A", auto_run_children=True, **_json_action()))
        execution.scripts = {"A": ['{"items": [{"name": "x"}]}']}
        host = BaseCascadeHost(approve_previews=False)

        await make_executor(storage, host=host).execute_cascade("A")

        assert storage.nodes["A"].last_action_result["status"] == "cancelled"
        assert storage.nodes["A"].last_action_result["reason"] == "user_cancelled"
        assert not [n for n in storage.nodes.values() if n.parent_id == "A"]
        assert execution.called_nodes == ["A"]

    async def test_skip_preview_config_bypasses_dialog(self, trees, execution, make_executor):
        """skip_preview in the action config never asks."""
        storage = trees.storage(trees.prompt("A", **_json_action(skip_preview=True)))
        execution.scripts = {"A": ['{"items": [{"name": "x"}]}']}
        host = BaseCascadeHost(approve_previews=False)

        await make_executor(storage, host=host).execute_cascade("A")

        assert storage.nodes["A"].last_action_result["status"] == "success"

    async def test_post_action_on_plain_node_still_runs(self, trees, execution, make_executor):
        """node_type and post_action disagreeing is logged, not fatal."""
        storage = trees.storage(
            trees.prompt(
                "A",
                post_action="create_children_json",
                post_action_config={"json_path": "items"},
            )
        )
        execution.scripts = {"A": ['{"items": [{"name": "x"}]}']}

        await make_executor(storage).execute_cascade("A")

        assert storage.nodes["A"].last_action_result["created_count"] == 1

    async def test_variable_assignments_written(self, trees, execution, events, make_executor):
        """Assigned values land in node variables."""
        storage = trees.storage(
            trees.prompt(
                "A",
                variables={"tone": "dry"},
                **_json_action(),
                variable_assignments_config={"enabled": True, "auto_create_variables": True},
            )
        )
        execution.scripts = {
            "A": [
                json.dumps(
                    {
                        "items": [],
                        "variable_assignments": [
                            {"name": "tone", "value": "wry"},
                            {"name": "audience", "value": "kids"},
                        ],
                    }
                )
            ]
        }

        await make_executor(storage).execute_cascade("A")

        values = {v.name: v.value for v in storage.variables.values() if v.node_id == "A"}
        assert values == {"tone": "wry", "audience": "kids"}
        updated = [e for e in events.events if e.type == CascadeEventType.VARIABLES_UPDATED]
        assert updated[0].data == {"created": ["audience"], "updated": ["tone"]}

    async def test_text_action_children_are_auto_run(self, trees, execution, host, make_executor):
        """Text-action children run straight after their parent."""
        storage = trees.storage(trees.prompt("A", **_text_action(2, auto_run_children=True)))
        execution.scripts = {"A": ["{}"]}

        await make_executor(storage).execute_cascade("A")

        assert [r.name for r in host.completed] == ["A", "Step 1", "Step 2"]
        assert any(n.title == "Auto-cascade finished: A" for n in host.notifications)

    async def test_failed_action_write_stays_with_the_node(self, trees, execution, host, make_executor):
        """A storage error while saving the action outcome fails only that action."""
        storage = trees.storage(
            trees.prompt("A", children=[trees.prompt("B", **_json_action()), trees.prompt("C")])
        )
        execution.scripts = {"B": ['{"items": ["one"]}']}
        original = storage.update_node
        failures = ["db write failed"]

        async def flaky_update(node_id, fields):
            if "last_action_result" in fields and failures:
                raise OSError(failures.pop())
            return await original(node_id, fields)

        storage.update_node = flaky_update

        state = await make_executor(storage).execute_cascade("A")

        assert state.status == "completed"
        assert execution.called_nodes == ["A", "B", "C"]
        assert storage.nodes["B"].output == '{"items": ["one"]}'
        result = storage.nodes["B"].last_action_result
        assert result["status"] == "failed"
        assert result["action"] == "create_children_json"
        assert result["error"] == "db write failed"
        assert any(n.level == "warning" and n.title == "Action failed: B" for n in host.notifications)

    async def test_action_failure_without_storage_still_continues(self, trees, execution, make_executor):
        """When even the failure record cannot be written the run goes on."""
        storage = trees.storage(
            trees.prompt(
                "A",
                children=[
                    trees.prompt("B", auto_run_children=True, **_json_action()),
                    trees.prompt("C"),
                ],
            )
        )
        execution.scripts = {"B": ['{"items": ["one"]}']}
        original = storage.update_node

        async def broken_update(node_id, fields):
            if "last_action_result" in fields:
                raise OSError("db offline")
            return await original(node_id, fields)

        storage.update_node = broken_update

        state = await make_executor(storage).execute_cascade("A")

        assert state.status == "completed"
        assert execution.called_nodes == ["A", "B", "C"]
        assert storage.nodes["B"].last_action_result is None


class TestChildCascade:
    """execute_child_cascade on freshly created children."""

    @staticmethod
    async def _children(storage, parent_id):
        return await storage.get_node(parent_id), await storage.get_children([parent_id])

    async def test_runs_each_child_once_in_order(self, trees, execution, make_executor):
        """Every child runs once, in position order."""
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x"), trees.prompt("y")]))
        executor = make_executor(storage)
        parent, children = await self._children(storage, "P")

        result = await executor.execute_child_cascade(children, parent)

        assert result.success
        assert result.executed == 2
        assert [(r.node_id, r.depth) for r in result.results] == [("x", 1), ("y", 1)]
        assert execution.called_nodes == ["x", "y"]
        y_vars = execution.requests[1].template_variables
        assert y_vars["cascade_previous_response"] == "response for x"
        assert y_vars["q.parent.prompt.name"] == "P"

    async def test_depth_already_at_cap(self, trees, execution, make_executor):
        """Nothing runs when the starting depth is at the cap."""
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x")]))
        parent, children = await self._children(storage, "P")

        result = await make_executor(storage).execute_child_cascade(
            children, parent, max_depth=2, current_depth=2
        )

        assert result.depth_limit_reached
        assert result.results == []
        assert execution.called_nodes == []

    async def test_grandchildren_stop_at_depth_cap(self, trees, execution, make_executor):
        """Descendants past the depth cap are not run."""
        storage = trees.storage(
            trees.prompt("P", children=[trees.prompt("x", **_text_action(2, auto_run_children=True))])
        )
        execution.scripts = {"x": ["{}"]}
        parent, children = await self._children(storage, "P")

        result = await make_executor(storage).execute_child_cascade(children, parent, max_depth=1)

        assert result.depth_limit_reached
        assert execution.called_nodes == ["x"]
        assert len([n for n in storage.nodes.values() if n.parent_id == "x"]) == 2

    async def test_depth_first_before_siblings(self, trees, execution, make_executor):
        """A child's own children run before its next sibling."""
        storage = trees.storage(
            trees.prompt(
                "P",
                children=[
                    trees.prompt("x", **_text_action(2, auto_run_children=True)),
                    trees.prompt("y"),
                ],
            )
        )
        execution.scripts = {"x": ["{}"]}
        parent, children = await self._children(storage, "P")

        result = await make_executor(storage).execute_child_cascade(children, parent)

        assert [(r.name, r.depth) for r in result.results] == [
            ("x", 1),
            ("Step 1", 2),
            ("Step 2", 2),
            ("y", 1),
        ]
        assert not result.depth_limit_reached

    async def test_failed_child_is_not_retried(self, trees, execution, host, make_executor):
        """A failed child is reported once and skipped."""
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x"), trees.prompt("y")]))
        execution.scripts = {"x": [RuntimeError("boom")]}
        parent, children = await self._children(storage, "P")

        result = await make_executor(storage).execute_child_cascade(children, parent)

        assert not result.success
        assert execution.called_nodes == ["x", "y"]
        assert result.results[0].error == "boom"
        assert result.executed == 1
        assert storage.nodes["x"].output is None

    async def test_deleted_child_is_reported_missing(self, trees, execution, make_executor):
        """Children deleted mid-run are recorded as failed and the rest still run."""
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x"), trees.prompt("y")]))
        parent, children = await self._children(storage, "P")
        storage.delete_node("x")

        result = await make_executor(storage).execute_child_cascade(children, parent)

        assert execution.called_nodes == ["y"]
        assert not result.success
        assert [(r.node_id, r.success, r.error) for r in result.results] == [
            ("x", False, "Prompt not found"),
            ("y", True, None),
        ]

    async def test_child_fetch_error_does_not_abort_burst(self, trees, execution, make_executor):
        """A storage error loading one child fails that child only."""
        storage = trees.storage(
            trees.prompt("P", children=[trees.prompt("x"), trees.prompt("y"), trees.prompt("z")])
        )
        parent, children = await self._children(storage, "P")
        original = storage.get_node

        async def flaky_get(node_id):
            if node_id == "y":
                raise OSError("connection reset")
            return await original(node_id)

        storage.get_node = flaky_get

        result = await make_executor(storage).execute_child_cascade(children, parent)

        assert execution.called_nodes == ["x", "z"]
        assert not result.success
        assert result.executed == 2
        assert result.results[1].node_id == "y"
        assert result.results[1].error == "connection reset"

    async def test_child_output_write_failure_is_a_failed_child(self, trees, execution, host, make_executor):
        """A child whose output cannot be saved fails without stopping its siblings."""
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x"), trees.prompt("y")]))
        parent, children = await self._children(storage, "P")
        original = storage.update_node

        async def broken_update(node_id, fields):
            if node_id == "x":
                raise OSError("db write failed")
            return await original(node_id, fields)

        storage.update_node = broken_update

        result = await make_executor(storage).execute_child_cascade(children, parent)

        assert execution.called_nodes == ["x", "y"]
        assert [(r.node_id, r.success) for r in result.results] == [("x", False), ("y", True)]
        assert result.results[0].error == "db write failed"
        assert [r.node_id for r in host.completed] == ["y"]

    async def test_inherited_variables_reach_every_child(self, trees, execution, make_executor):
        """Inherited variables are visible to all children."""
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x", variables={"tone": "wry"})]))
        parent, children = await self._children(storage, "P")

        await make_executor(storage).execute_child_cascade(
            children, parent, inherited_variables={"tone": "dry", "topic": "rivers"}
        )

        variables = execution.requests[0].template_variables
        assert variables["topic"] == "rivers"
        assert variables["tone"] == "wry"

    async def test_standalone_burst_owns_a_child_trace(self, trees, execution, make_executor):
        """A standalone child run opens its own cascade_child trace."""
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x")]))
        execution.scripts = {"x": [RuntimeError("boom")]}
        executor = make_executor(storage)
        parent, children = await self._children(storage, "P")

        await executor.execute_child_cascade(children, parent)

        (trace,) = executor.tracer.traces.values()
        assert trace.execution_type == "cascade_child"
        assert trace.entry_node_id == "P"
        assert trace.status == "failed"
        assert [s.status for s in trace.spans] == ["failed"]

    async def test_cancel_propagates_and_closes_trace(self, trees, execution, make_executor):
        """Cancelling raises and closes the trace as cancelled."""
        host = BaseCascadeHost()
        storage = trees.storage(trees.prompt("P", children=[trees.prompt("x"), trees.prompt("y")]))

        async def cancel(request):
            await host.control.cancel()
            return "late"

        execution.scripts = {"x": [cancel]}
        executor = make_executor(storage, host=host)
        parent, children = await self._children(storage, "P")

        with pytest.raises(CascadeCancelledError):
            await executor.execute_child_cascade(children, parent)

        assert execution.called_nodes == ["x"]
        (trace,) = executor.tracer.traces.values()
        assert trace.status == "cancelled"
