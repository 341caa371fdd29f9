"""Tests for the child-creating post-action executors."""

from __future__ import annotations

import pytest

from promptcascade.core.actions.executors import (
    ActionContext,
    create_children_json,
    create_children_sections,
    create_children_text,
    execute_post_action,
    target_parent_id,
)
from promptcascade.core.errors import ActionValidationError
from promptcascade.core.types import NodeType, PromptNode

SETTINGS = {"def_admin_prompt": "Be helpful", "default_user_prompt": "Go", "default_model": "gpt-4o"}


@pytest.fixture
def storage(trees):
    return trees.storage(
        trees.prompt("top", children=[trees.prompt("n", admin_prompt="Parent system")]),
        settings=SETTINGS,
    )


async def _ctx(storage, data, **config):
    return ActionContext(storage=storage, node=await storage.get_node("n"), data=data, config=config, user_id="u1")


class TestTargetParent:
    """Tests for target_parent_id."""

    def test_placements(self):
        """Placement selects the parent of created nodes."""
        node = PromptNode(id="n", parent_id="p")

        assert target_parent_id(node, {}) == "n"
        assert target_parent_id(node, {"placement": "siblings"}) == "p"
        assert target_parent_id(node, {"placement": "top_level"}) is None
        assert target_parent_id(node, {"placement": "specific_prompt", "target_prompt_id": "t"}) == "t"
        assert target_parent_id(node, {"placement": "specific_prompt"}) == "n"


class TestCreateChildrenJson:
    """Tests for create_children_json."""

    async def test_items_to_children(self, storage):
        """Each item becomes a child with name, content and extracted variables."""
        data = {"items": [{"title": "Intro", "content": "Write the intro"}, {"name": "Body", "x": 1}]}

        result = await create_children_json(await _ctx(storage, data, json_path="items"))

        assert result.created_count == 2
        assert result.target_parent_id == "n"
        assert result.message == "Created 2 node(s) as children from JSON array"
        first, second = result.children
        assert (first.name, first.admin_prompt, first.user_prompt) == ("Intro", "Write the intro", "")
        assert first.parent_id == "n"
        assert first.owner_id == "u1"
        assert first.model == "gpt-4o"
        assert first.extracted_variables == {"title": "Intro", "content": "Write the intro"}
        assert second.name == "Body"
        assert second.admin_prompt == '{\n  "name": "Body",\n  "x": 1\n}'
        assert first.position < second.position

    async def test_user_destination_and_fields(self, storage):
        """content_destination "user" puts content in the user prompt."""
        data = {"rows": [{"meta": {"label": "A"}, "body": "text A"}]}

        result = await create_children_json(
            await _ctx(
                storage,
                data,
                json_path="rows",
                name_field="meta.label",
                content_field="body",
                content_destination="user",
                placement="siblings",
                child_node_type="action",
            )
        )

        child = result.children[0]
        assert (child.name, child.user_prompt, child.admin_prompt) == ("A", "text A", "Be helpful")
        assert child.parent_id == "top"
        assert child.node_type == NodeType.ACTION
        assert result.message == "Created 1 action node(s) as siblings from JSON array"

    async def test_name_fallbacks(self, storage):
        """Names fall back to a short string value, then "Item N"."""
        data = {"items": [{"summary": "Short one"}, {"n": 5}, 42]}

        result = await create_children_json(await _ctx(storage, data, json_path="items"))

        assert [c.name for c in result.children] == ["Short one", "Item 2", "Item 3"]
        assert result.children[2].extracted_variables == {"value": 42}

    async def test_long_names_truncated(self, storage):
        """Names are capped at 100 characters."""
        result = await create_children_json(await _ctx(storage, {"items": ["x" * 150]}, json_path="items"))

        assert len(result.children[0].name) == 100

    async def test_not_an_array(self, storage):
        """A non-array path raises with the available arrays."""
        with pytest.raises(ActionValidationError) as exc_info:
            await create_children_json(await _ctx(storage, {"ideas": []}, json_path="items"))

        assert exc_info.value.available_arrays == ["ideas"]

    async def test_empty(self, storage):
        """An empty array creates nothing."""
        result = await create_children_json(await _ctx(storage, {"items": []}, json_path="items"))

        assert result.success
        assert result.created_count == 0
        assert result.message == "No items found in JSON array"


class TestCreateChildrenText:
    """Tests for create_children_text."""

    async def test_count_and_prefix(self, storage):
        """children_count children named from the prefix."""
        result = await create_children_text(await _ctx(storage, {}, children_count=2, name_prefix="Scene"))

        assert [c.name for c in result.children] == ["Scene 1", "Scene 2"]
        assert result.children[0].admin_prompt == "Be helpful"
        assert result.children[0].user_prompt == "Go"
        assert result.message == "Created 2 node(s) as children from text configuration"

    @pytest.mark.parametrize("count", [None, 0, -2, "lots"])
    async def test_invalid_count_defaults_to_three(self, storage, count):
        """Missing or invalid counts create three children."""
        result = await create_children_text(await _ctx(storage, {}, children_count=count))

        assert [c.name for c in result.children] == ["Child 1", "Child 2", "Child 3"]

    async def test_top_level_placement(self, storage):
        """Top-level children have no parent."""
        result = await create_children_text(
            await _ctx(storage, {}, children_count=1, name_prefix="{{A}}", placement="top_level")
        )

        assert result.children[0].parent_id is None
        assert result.children[0].name == "A"


class TestCreateChildrenSections:
    """Tests for create_children_sections."""

    async def test_section_keys_with_content(self, storage):
        """Section keys sorted naturally; content keys feed the admin prompt."""
        data = {
            "Section 10": "Conclusion",
            "Section 2": "Methods",
            "Section 2 system prompt": "Describe methods precisely",
            "Title": "Paper",
        }

        result = await create_children_sections(await _ctx(storage, data))

        assert [c.name for c in result.children] == ["Methods", "Conclusion"]
        methods, conclusion = result.children
        assert methods.admin_prompt == "Describe methods precisely"
        assert methods.user_prompt == ""
        assert conclusion.admin_prompt == "Parent system"
        assert conclusion.user_prompt == "Conclusion"
        assert methods.extracted_variables == {
            "section_key": "Section 2",
            "section_value": "Methods",
            "has_content": True,
        }

    async def test_underscore_content_key(self, storage):
        """Content keys may use underscores and are not sections themselves."""
        data = {"part1": "Intro", "part1_system_prompt": "Open strong"}

        result = await create_children_sections(await _ctx(storage, data, section_pattern="^part"))

        assert [c.name for c in result.children] == ["Intro"]
        assert [c.admin_prompt for c in result.children] == ["Open strong"]

    async def test_custom_suffix_with_spaces(self, storage):
        """A multi-word content suffix matches its underscored key form."""
        data = {"part1": "Intro", "part1_brief_notes": "Keep it short", "part2": "Body"}

        result = await create_children_sections(
            await _ctx(storage, data, section_pattern="^part", content_key_suffix="brief notes")
        )

        assert [c.name for c in result.children] == ["Intro", "Body"]
        assert result.children[0].admin_prompt == "Keep it short"
        assert result.children[0].user_prompt == ""
        assert result.children[1].user_prompt == "Body"

    async def test_target_keys_and_name_source(self, storage):
        """Explicit keys and name sources."""
        data = {"alpha": "First", "beta": {"k": 1}}

        result = await create_children_sections(
            await _ctx(storage, data, target_keys=["beta", "alpha", "gamma"], name_source="both")
        )

        assert [c.name for c in result.children] == ['beta: {"k": 1}', "alpha: First"]

    async def test_key_name_source(self, storage):
        """name_source key_name uses the key."""
        result = await create_children_sections(
            await _ctx(storage, {"Section 1": "Intro"}, name_source="key_name")
        )

        assert result.children[0].name == "Section 1"

    async def test_no_matching_keys(self, storage):
        """No matching keys is a successful no-op."""
        result = await create_children_sections(await _ctx(storage, {"title": "x"}))

        assert result.success
        assert result.created_count == 0
        assert result.message == "No keys matching criteria found in JSON response"

    async def test_requires_object(self, storage):
        """Arrays are rejected."""
        result = await create_children_sections(await _ctx(storage, ["Section 1"]))

        assert not result.success
        assert result.error == "JSON response must be an object"

    async def test_invalid_pattern(self, storage):
        """A broken regex raises ActionValidationError."""
        with pytest.raises(ActionValidationError, match="Invalid regex"):
            await create_children_sections(await _ctx(storage, {"a": "b"}, section_pattern="("))


class TestExecutePostAction:
    """Tests for the executor registry."""

    async def test_unknown_action(self, storage):
        """Unknown ids fail without raising."""
        result = await execute_post_action("summarize", await _ctx(storage, {}))

        assert not result.success
        assert result.error == "Unknown action: summarize"

    async def test_dispatches(self, storage):
        """Known ids run their executor."""
        result = await execute_post_action("create_children_text", await _ctx(storage, {}, children_count=1))

        assert result.created_count == 1
