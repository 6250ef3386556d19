"""
Tests for virtual_tools/grouper.py - building the virtual tool tree.

Collaborators are the hand-written fakes from tests/fixtures/collaborators.py;
every test asserts on how many remote calls were made.
"""
import json

import pytest

from config.config import GroupingConfig
from tests.fixtures.collaborators import (
    TEST_EMBEDDING_TYPE,
    DictToolEmbeddingsCache,
    FakeChatEndpoint,
    FakeEmbeddingsComputer,
    default_responder,
    make_tools,
    user_prompt,
)
from utils.cancellation import CancellationToken, CancellationTokenSource
from utils.kv_store import InMemoryKeyValueStore
from virtual_tools.category_cache import ToolGroupingCache
from virtual_tools.constants import EMBEDDINGS_GROUP_NAME, HARD_TOOL_LIMIT, SUMMARY_PREFIX, SUMMARY_SUFFIX
from virtual_tools.embeddings_computer import ToolEmbeddingsComputer, tool_embedding_text
from virtual_tools.grouper import VirtualToolGrouper, count_visible, toolset_key_for
from virtual_tools.types import Tool, ToolSource
from virtual_tools.virtual_tool import VirtualTool, is_virtual

FILES = ToolSource.mcp("Files")
GITHUB = ToolSource.extension("github.ext", "GitHub")
TINY = ToolSource.extension("tiny.ext")


def make_grouper(chat=None, embeddings=None, store=None):
    chat = chat or FakeChatEndpoint()
    embeddings = embeddings or FakeEmbeddingsComputer()
    tool_embeddings = ToolEmbeddingsComputer(
        embeddings, caches=[DictToolEmbeddingsCache()], embedding_type=TEST_EMBEDDING_TYPE
    )
    grouper = VirtualToolGrouper(
        chat,
        embeddings,
        tool_embeddings,
        ToolGroupingCache(store or InMemoryKeyValueStore()),
        GroupingConfig()
    )
    return grouper, chat, embeddings


def mixed_tools():
    """40 builtin tools, a 10-tool MCP server, a 20-tool extension and a 2-tool extension."""
    return (
        make_tools(40, "core")
        + make_tools(10, "fs", FILES)
        + make_tools(20, "gh", GITHUB)
        + make_tools(2, "tiny", TINY)
    )


def new_root():
    root = VirtualTool("root", "")
    root.is_expanded = True
    return root


def top_level_groups(root):
    return {n.name: n for n in root.contents if is_virtual(n)}


class TestToolsetKeys:

    def test_keys_by_source(self):
        assert toolset_key_for(Tool("a")) == "builtin"
        assert toolset_key_for(Tool("a", source=GITHUB)) == "ext_github.ext"
        assert toolset_key_for(Tool("a", source=FILES)) == "mcp_Files"


class TestBelowThreshold:

    @pytest.mark.asyncio
    async def test_small_tool_lists_stay_flat(self):
        """CONTRACT: Fewer than 64 tools -> root.contents is the input, same order, zero remote calls."""
        grouper, chat, embeddings = make_grouper()
        tools = make_tools(30, "core") + make_tools(33, "gh", GITHUB)
        root = new_root()

        await grouper.add_groups("query", root, tools, CancellationToken.NONE)

        assert root.contents == tools
        assert chat.calls == []
        assert embeddings.calls == []


class TestAddGroups:

    @pytest.mark.asyncio
    async def test_builds_groups_per_toolset(self):
        grouper, chat, _ = make_grouper()
        root = new_root()

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        groups = top_level_groups(root)
        assert set(groups) == {
            EMBEDDINGS_GROUP_NAME,
            "activate_fs_tools",
            "activate_gh_part_0",
            "activate_gh_part_1",
            "activate_gh_part_2",
        }
        plain = {n.name for n in root.contents if not is_virtual(n)}
        assert {f"core_{i}" for i in range(40)} <= plain
        assert {"tiny_0", "tiny_1"} <= plain
        # One bulk description for the small toolset, one division for the large one
        assert len(chat.calls) == 2

    @pytest.mark.asyncio
    async def test_group_description_and_metadata(self):
        grouper, _, _ = make_grouper()
        root = new_root()

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        group = top_level_groups(root)["activate_fs_tools"]
        assert group.description == SUMMARY_PREFIX + "Tools for fs" + SUMMARY_SUFFIX
        assert group.metadata.toolset_key == "mcp_Files"
        assert group.metadata.possible_prefix == "files_"
        assert [g.name for g in group.metadata.groups] == ["fs_tools"]
        assert len(group.contents) == 10

    @pytest.mark.asyncio
    async def test_uncategorized_tools_are_flattened(self):
        def responder(messages):
            if "<group index=" in user_prompt(messages):
                return default_responder(messages)
            names = [f"gh_{i}" for i in range(20)]
            return json.dumps([
                {"name": "gh_main", "summary": "main", "tools": names[:8]},
                {"name": "uncategorized", "summary": "", "tools": names[8:]},
            ])

        grouper, _, _ = make_grouper(chat=FakeChatEndpoint(responder))
        root = new_root()

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        plain = {n.name for n in root.contents if not is_virtual(n)}
        assert {f"gh_{i}" for i in range(8, 20)} <= plain
        assert "activate_uncategorized" not in top_level_groups(root)
        assert len(top_level_groups(root)["activate_gh_main"].contents) == 8

    @pytest.mark.asyncio
    async def test_colliding_group_names_are_prefixed_with_toolset_label(self):
        def responder(messages):
            return json.dumps([{"groupIndex": 1, "groupName": "shared", "summary": "same name"}])

        tools = make_tools(60, "core") + make_tools(5, "al", ToolSource.mcp("Alpha")) + make_tools(5, "be", ToolSource.mcp("Beta"))
        grouper, _, _ = make_grouper(chat=FakeChatEndpoint(responder))
        root = new_root()

        await grouper.add_groups("query", root, tools, CancellationToken.NONE)

        groups = top_level_groups(root)
        assert [t.name for t in groups["activate_alpha_shared"].contents] == [f"al_{i}" for i in range(5)]
        assert [t.name for t in groups["activate_shared"].contents] == [f"be_{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_failed_categorization_retries_then_flattens(self):
        """CONTRACT: Each toolset is tried 3 times, then presented flat."""
        chat = FakeChatEndpoint(error=RuntimeError("model unavailable"))
        grouper, _, _ = make_grouper(chat=chat)
        tools = mixed_tools()
        root = new_root()

        await grouper.add_groups("query", root, tools, CancellationToken.NONE)

        assert len(chat.calls) == 6
        plain = {n.name for n in root.contents if not is_virtual(n)}
        assert plain == {t.name for t in tools}
        assert set(top_level_groups(root)) == {EMBEDDINGS_GROUP_NAME}

    @pytest.mark.asyncio
    async def test_cancelled_before_start_leaves_tree_untouched(self):
        source = CancellationTokenSource()
        source.cancel()
        grouper, chat, _ = make_grouper()
        root = new_root()
        root.contents = [Tool("existing")]

        await grouper.add_groups("query", root, mixed_tools(), source.token)

        assert [n.name for n in root.contents] == ["existing"]
        assert chat.calls == []


class TestRegrouping:

    @pytest.mark.asyncio
    async def test_warm_cache_makes_no_categorization_calls(self):
        """CONTRACT: Unchanged tools + warm category cache -> zero categorization calls."""
        store = InMemoryKeyValueStore()
        grouper, chat, _ = make_grouper(store=store)
        root = new_root()

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)
        assert len(chat.calls) == 2

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)
        assert len(chat.calls) == 2

        # The persisted cache serves a fresh grouper as well
        fresh, fresh_chat, _ = make_grouper(store=store)
        await fresh.add_groups("query", new_root(), mixed_tools(), CancellationToken.NONE)
        assert fresh_chat.calls == []

    @pytest.mark.asyncio
    async def test_group_state_survives_regrouping(self):
        """CONTRACT: Groups that keep their name keep expansion and last-used turn."""
        grouper, _, _ = make_grouper()
        root = new_root()
        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        before = top_level_groups(root)["activate_gh_part_1"]
        before.is_expanded = True
        before.last_used_on_turn = 7

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        after = top_level_groups(root)["activate_gh_part_1"]
        assert after is not before
        assert after.is_expanded is True
        assert after.last_used_on_turn == 7

    @pytest.mark.asyncio
    async def test_changed_toolset_is_recategorized_with_previous_hint(self):
        grouper, chat, _ = make_grouper()
        root = new_root()
        tools = mixed_tools()
        await grouper.add_groups("query", root, tools, CancellationToken.NONE)

        changed = tools + [Tool("gh_new", "brand new github tool", GITHUB)]
        await grouper.add_groups("query", root, changed, CancellationToken.NONE)

        assert len(chat.calls) == 3
        prompt = user_prompt(chat.calls[-1])
        assert "previously categorized" in prompt
        assert "gh_new" in prompt


class TestPredictedTools:

    @pytest.mark.asyncio
    async def test_predicted_group_is_first_and_pinned(self):
        grouper, _, _ = make_grouper()
        root = new_root()

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        group = root.contents[0]
        assert group.name == EMBEDDINGS_GROUP_NAME
        assert group.description == "Tools with high predicted relevancy for this query"
        assert group.is_expanded is True
        assert group.metadata.can_be_collapsed is False
        assert group.metadata.was_expanded_by_default is True
        assert len(group.contents) == 10
        assert all(t.source is not None for t in group.contents)

    @pytest.mark.asyncio
    async def test_most_similar_tool_ranks_first_and_its_group_expands(self):
        tools = mixed_tools()
        target = next(t for t in tools if t.name == "gh_5")
        direction = [1.0] + [0.0] * (TEST_EMBEDDING_TYPE.dimensions - 1)
        embeddings = FakeEmbeddingsComputer(vectors={"open pull request": direction, tool_embedding_text(target): direction})
        grouper, _, _ = make_grouper(embeddings=embeddings)
        root = new_root()

        await grouper.add_groups("open pull request", root, tools, CancellationToken.NONE)

        assert root.contents[0].contents[0] is target
        assert top_level_groups(root)["activate_gh_part_0"].is_expanded is True

    @pytest.mark.asyncio
    async def test_embeddings_failure_yields_empty_predicted_group(self):
        """CONTRACT: Relevance failures never raise; the predicted group is just empty."""
        grouper, chat, _ = make_grouper(embeddings=FakeEmbeddingsComputer(error=RuntimeError("no embeddings")))
        root = new_root()

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        assert root.contents[0].name == EMBEDDINGS_GROUP_NAME
        assert root.contents[0].contents == []
        assert len(chat.calls) == 2

    @pytest.mark.asyncio
    async def test_empty_query_predicts_nothing(self):
        grouper, _, embeddings = make_grouper()
        root = new_root()

        await grouper.add_groups("", root, mixed_tools(), CancellationToken.NONE)

        assert root.contents[0].contents == []
        assert embeddings.calls == []

    @pytest.mark.asyncio
    async def test_recompute_replaces_group_in_place(self):
        grouper, chat, embeddings = make_grouper()
        root = new_root()
        await grouper.add_groups("first query", root, mixed_tools(), CancellationToken.NONE)
        before = root.contents[0]
        top_level_count = len(root.contents)

        await grouper.recompute_embedding_rankings("second query", root, CancellationToken.NONE)

        assert root.contents[0] is not before
        assert root.contents[0].name == EMBEDDINGS_GROUP_NAME
        assert len(root.contents) == top_level_count
        assert len(chat.calls) == 2
        assert embeddings.calls[-1] == ["second query"]


class TestBudgetExpansion:

    @pytest.mark.asyncio
    async def test_visible_count_stays_within_hard_limit(self):
        grouper, _, _ = make_grouper()
        root = new_root()

        await grouper.add_groups("query", root, mixed_tools(), CancellationToken.NONE)

        assert count_visible(root) <= HARD_TOOL_LIMIT
        expanded = [g for name, g in top_level_groups(root).items() if name != EMBEDDINGS_GROUP_NAME and g.is_expanded]
        assert expanded
        assert all(g.metadata.was_expanded_by_default for g in expanded)

    def test_expands_smallest_groups_until_target_is_passed(self):
        root = new_root()
        small, medium, large = (
            VirtualTool("activate_small", "", contents=make_tools(3, "s")),
            VirtualTool("activate_medium", "", contents=make_tools(5, "m")),
            VirtualTool("activate_large", "", contents=make_tools(10, "l")),
        )
        root.contents = make_tools(60, "core") + [large, small, medium]

        VirtualToolGrouper._re_expand_tools_to_hit_budget(root, None, 64, 128)

        assert small.is_expanded is True
        assert small.metadata.was_expanded_by_default is True
        assert medium.is_expanded is False
        assert large.is_expanded is False
        assert count_visible(root) == 65

    def test_stops_entirely_at_the_hard_limit(self):
        root = new_root()
        huge = VirtualTool("activate_huge", "", contents=make_tools(100, "h"))
        small = VirtualTool("activate_small", "", contents=make_tools(2, "s"))
        root.contents = make_tools(40, "core") + [huge, small]

        VirtualToolGrouper._re_expand_tools_to_hit_budget(root, lambda g: -len(g.contents), 64, 128)

        assert huge.is_expanded is False
        assert small.is_expanded is False

    def test_no_action_when_already_over_target(self):
        root = new_root()
        group = VirtualTool("activate_g", "", contents=make_tools(2, "g"))
        root.contents = make_tools(70, "core") + [group]

        VirtualToolGrouper._re_expand_tools_to_hit_budget(root, None, 64, 128)

        assert group.is_expanded is False
