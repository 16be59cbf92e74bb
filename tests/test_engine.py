"""Integration tests for ConversationEngine.

Providers are scripted: each step gets a literal SSE body decoded by the
real OpenAI decoder, so these tests exercise the full status-to-update
path, the tool loop and history bookkeeping.
"""

import asyncio
from unittest.mock import patch

import pytest
from pydantic import BaseModel

from helpers import ScriptedProvider, StalledStream, collect, openai_text_body, openai_tools_body, sse
from parley.content import Content, ImageURL, JSON
from parley.engine import ConversationEngine
from parley.errors import ChatCancelled, ProviderError, StreamDecodeError, UnknownToolError
from parley.llm.schemas import Role
from parley.tools import Image, ToolResult, tool
from parley.updates import ErrorUpdate, TextUpdate, ToolDoneUpdate, ToolStartUpdate, ToolStatusUpdate

# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class SearchParams(BaseModel):
    query: str


class RenderParams(BaseModel):
    kind: str = "line"


def _make_tools():
    """Fresh search/render tools that record their calls."""
    calls: list[tuple[str, object]] = []

    @tool("search", "Search the web", SearchParams)
    async def search(runner, params):
        calls.append(("search", runner.context))
        await runner.report(f"searching for {params.query}")
        return ToolResult.success("search", {"hits": [params.query]})

    @tool("render", "Render a chart", RenderParams)
    async def render(runner, params):
        calls.append(("render", runner.context))
        return ToolResult.success(
            "render",
            {"kind": params.kind},
            images=[Image(name="chart.png", url="data:image/png;base64,iVBORw0KGgo=")],
        )

    return search, render, calls


# ---------------------------------------------------------------------------
# TestTextOnly
# ---------------------------------------------------------------------------


class TestTextOnly:
    @pytest.mark.asyncio
    async def test_hello_world_single_step(self):
        """A turn without tool calls ends the chat after one step."""
        provider = ScriptedProvider(openai_text_body("Hello", ", ", "world"))
        engine = ConversationEngine(provider)

        updates = await collect(engine.chat("Hi"))

        assert updates == [TextUpdate("Hello"), TextUpdate(", "), TextUpdate("world")]
        assert len(provider.calls) == 1
        user, assistant = engine.messages
        assert user.role == Role.USER
        assert user.content.to_text() == "Hi"
        assert assistant.role == Role.ASSISTANT
        assert assistant.content.to_text() == "Hello, world"
        assert assistant.tool_calls == []

    @pytest.mark.asyncio
    async def test_history_grows_across_chats(self):
        provider = ScriptedProvider(openai_text_body("one"), openai_text_body("two"))
        engine = ConversationEngine(provider)

        await collect(engine.chat("first"))
        await collect(engine.chat(Content.from_text("second")))

        assert [m.content.to_text() for m in engine.messages] == ["first", "one", "second", "two"]
        # The second request carried the whole conversation so far
        assert len(provider.calls[1][1]) == 3

    @pytest.mark.asyncio
    async def test_system_prompt_read_every_step(self):
        """A callable system prompt is re-evaluated before each request."""
        search, render, _ = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"x"}')),
            openai_text_body("done"),
        )
        prompts = iter(["step one", "step two"])
        engine = ConversationEngine(
            provider, search, system_prompt=lambda: Content.from_text(next(prompts))
        )

        await collect(engine.chat("go"))

        assert [call[0].to_text() for call in provider.calls] == ["step one", "step two"]

    @pytest.mark.asyncio
    async def test_static_system_prompt(self):
        provider = ScriptedProvider(openai_text_body("ok"))
        engine = ConversationEngine(provider, system_prompt="Be brief.")

        await collect(engine.chat("hi"))

        assert provider.calls[0][0] == Content.from_text("Be brief.")


# ---------------------------------------------------------------------------
# TestToolLoop
# ---------------------------------------------------------------------------


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_search_and_render_batch_order(self):
        """Two tool results come first, then the image message for chart.png."""
        search, render, _ = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("a", "search", '{"query":"weather"}'), ("b", "render", '{"kind":"bar"}')),
            openai_text_body("Here is your chart."),
        )
        engine = ConversationEngine(provider, search, render)

        await collect(engine.chat("chart the weather"))

        roles = [m.role for m in engine.messages]
        assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.USER, Role.ASSISTANT]

        tool_a, tool_b, image_message = engine.messages[2:5]
        assert tool_a.tool_call_id == "a"
        assert tool_a.content == Content([JSON(data={"hits": ["weather"]})])
        assert tool_b.tool_call_id == "b"
        assert image_message.content.to_text() == (
            "Here is chart.png. This is an automated message, not actually from the user."
        )
        assert image_message.content[1] == ImageURL(image_url="data:image/png;base64,iVBORw0KGgo=")

        # The second request saw the whole batch
        assert len(provider.calls) == 2
        assert len(provider.calls[1][1]) == 5

    @pytest.mark.asyncio
    async def test_update_order(self):
        """Start updates stream with the turn; tools run after it, in order."""
        search, render, _ = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("a", "search", '{"query":"weather"}'), ("b", "render", "{}")),
            openai_text_body("Done"),
        )
        engine = ConversationEngine(provider, search, render)

        updates = await collect(engine.chat("go"))

        assert updates[0] == ToolStartUpdate(search)
        assert updates[1] == ToolStartUpdate(render)
        assert updates[2] == ToolStatusUpdate(search, "searching for weather")
        assert isinstance(updates[3], ToolDoneUpdate) and updates[3].tool is search
        assert isinstance(updates[4], ToolDoneUpdate) and updates[4].tool is render
        assert not updates[4].result.is_error
        assert updates[5:] == [TextUpdate("Done")]

    @pytest.mark.asyncio
    async def test_loop_continues_until_no_tools(self):
        search, _, calls = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"a"}')),
            openai_tools_body(("call_2", "search", '{"query":"b"}')),
            openai_text_body("done"),
        )
        engine = ConversationEngine(provider, search)

        await collect(engine.chat("go"))

        assert len(provider.calls) == 3
        assert [name for name, _ in calls] == ["search", "search"]
        assert engine.messages[-1].content.to_text() == "done"

    @pytest.mark.asyncio
    async def test_context_reaches_tools(self):
        search, _, calls = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"a"}')),
            openai_text_body("done"),
        )
        engine = ConversationEngine(provider, search)

        await collect(engine.chat("go", context={"user_id": 7}))

        assert calls == [("search", {"user_id": 7})]

    @pytest.mark.asyncio
    async def test_invalid_arguments_reported_to_model(self):
        """Bad argument JSON is a tool error result, not a chat error."""
        search, _, calls = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"q":1}')),
            openai_text_body("sorry"),
        )
        engine = ConversationEngine(provider, search)

        updates = await collect(engine.chat("go"))

        done = [u for u in updates if isinstance(u, ToolDoneUpdate)]
        assert done[0].result.is_error
        assert "invalid arguments" in done[0].result.error
        assert calls == []
        assert not any(isinstance(u, ErrorUpdate) for u in updates)

    @pytest.mark.asyncio
    async def test_missing_call_id_keyed_by_name(self):
        search, _, _ = _make_tools()
        body = sse(
            {"choices": [{"index": 0, "delta": {"role": "assistant", "tool_calls": [
                {"index": 0, "function": {"name": "search", "arguments": '{"query":"x"}'}},
            ]}, "finish_reason": None}]},
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        )
        provider = ScriptedProvider(body, openai_text_body("ok"))
        engine = ConversationEngine(provider, search)

        await collect(engine.chat("go"))

        assert engine.messages[2].role == Role.TOOL
        assert engine.messages[2].tool_call_id == "search"

    @pytest.mark.asyncio
    async def test_duplicate_call_id_not_rerun(self):
        """A call id that already has a result gets an error result instead of a rerun."""
        search, _, calls = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"a"}')),
            openai_tools_body(("call_1", "search", '{"query":"a"}')),
            openai_text_body("done"),
        )
        engine = ConversationEngine(provider, search)

        updates = await collect(engine.chat("go"))

        assert len(calls) == 1
        done = [u for u in updates if isinstance(u, ToolDoneUpdate)]
        assert not done[0].result.is_error
        assert done[1].result.is_error
        assert "already been run" in done[1].result.error
        tool_messages = [m for m in engine.messages if m.role == Role.TOOL]
        assert [m.tool_call_id for m in tool_messages] == ["call_1", "call_1"]
        assert not any(isinstance(u, ErrorUpdate) for u in updates)

    @pytest.mark.asyncio
    async def test_tool_gone_by_run_time_is_answered(self):
        """A tool missing when its call runs gets an error result, not a chat error."""
        search, _, calls = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"a"}')),
            openai_text_body("ok"),
        )
        engine = ConversationEngine(provider, search)

        with patch.object(engine.toolbox, "get", side_effect=[search, None]):
            updates = await collect(engine.chat("go"))

        assert updates == [ToolStartUpdate(search), TextUpdate("ok")]
        assert calls == []
        assert [m.role for m in engine.messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert engine.messages[2].tool_call_id == "call_1"
        assert "unknown tool: search" in engine.messages[2].content[0].raw()


# ---------------------------------------------------------------------------
# TestCost
# ---------------------------------------------------------------------------


class TestCost:
    @pytest.mark.asyncio
    async def test_cost_accumulates_per_step(self):
        search, _, _ = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"a"}'), usage=(1000, 100)),
            openai_text_body("done", usage=(2000, 50)),
            model="gpt-4o",
        )
        seen: list[float] = []
        engine = ConversationEngine(provider, search, debug_sink=lambda snapshot: seen.append(engine.total_cost))

        await collect(engine.chat("go"))

        assert seen == sorted(seen)
        assert seen[0] > 0
        assert engine.total_cost == pytest.approx(
            (1000 * 2.5 + 100 * 10.0) / 1e6 + (2000 * 2.5 + 50 * 10.0) / 1e6
        )

    @pytest.mark.asyncio
    async def test_unknown_model_costs_nothing(self):
        search, _, _ = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"a"}')),
            openai_text_body("done"),
            model="mystery-model",
        )
        engine = ConversationEngine(provider, search)

        await collect(engine.chat("go"))

        assert len(provider.calls) == 2
        assert engine.total_cost == 0.0


# ---------------------------------------------------------------------------
# TestErrors
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_setup_error(self):
        """A provider setup error is one ErrorUpdate; nothing is committed."""
        provider = ScriptedProvider(ProviderError("503 Service Unavailable", provider="Scripted", status_code=503))
        engine = ConversationEngine(provider)

        updates = await collect(engine.chat("hi"))

        assert len(updates) == 1
        assert isinstance(updates[0].error, ProviderError)
        assert [m.role for m in engine.messages] == [Role.USER]

    @pytest.mark.asyncio
    async def test_decode_error_discards_turn(self):
        """Text already streamed is delivered, but the failed turn is not kept."""
        body = sse({"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}}]}) + b"data: {oops\n\n"
        engine = ConversationEngine(ScriptedProvider(body))

        updates = await collect(engine.chat("hi"))

        assert updates[0] == TextUpdate("Hel")
        assert isinstance(updates[1], ErrorUpdate)
        assert isinstance(updates[1].error, StreamDecodeError)
        assert len(updates) == 2
        assert [m.role for m in engine.messages] == [Role.USER]

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """An unknown tool name ends the chat with an error; the engine stays usable."""
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "nope", "{}")),
            openai_text_body("hello again"),
        )
        engine = ConversationEngine(provider)

        updates = await collect(engine.chat("hi"))

        assert len(updates) == 1
        assert isinstance(updates[0].error, UnknownToolError)
        assert updates[0].error.name == "nope"
        assert [m.role for m in engine.messages] == [Role.USER]

        updates = await collect(engine.chat("still there?"))
        assert updates == [TextUpdate("hello again")]

    @pytest.mark.asyncio
    async def test_unexpected_exception_surfaces_as_error(self):
        class BrokenProvider:
            company = "Broken"
            model = "broken"

            async def generate(self, system_prompt, messages, toolbox):
                raise KeyError("boom")

        engine = ConversationEngine(BrokenProvider())

        updates = await collect(engine.chat("hi"))

        assert len(updates) == 1
        assert isinstance(updates[0].error, KeyError)

    @pytest.mark.asyncio
    async def test_concurrent_chat_rejected(self):
        engine = ConversationEngine(ScriptedProvider(openai_text_body("ok"), openai_text_body("again")))

        updates = engine.chat("first")
        with pytest.raises(RuntimeError):
            engine.chat("second")

        assert await collect(updates) == [TextUpdate("ok")]
        assert await collect(engine.chat("third")) == [TextUpdate("again")]


# ---------------------------------------------------------------------------
# TestCancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_chat(self):
        """A pre-fired signal yields exactly one error and no request."""
        provider = ScriptedProvider(openai_text_body("never"))
        engine = ConversationEngine(provider)
        cancel = asyncio.Event()
        cancel.set()

        updates = await collect(engine.chat("hi", cancel=cancel))

        assert len(updates) == 1
        assert isinstance(updates[0], ErrorUpdate)
        assert isinstance(updates[0].error, ChatCancelled)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_stream(self):
        """Cancelling a stalled stream stops the step without committing it."""
        stalled = StalledStream("partial")
        engine = ConversationEngine(ScriptedProvider(stalled))
        cancel = asyncio.Event()

        updates = []
        async for update in engine.chat("hi", cancel=cancel):
            updates.append(update)
            if isinstance(update, TextUpdate):
                cancel.set()

        assert updates[0] == TextUpdate("partial")
        assert isinstance(updates[-1], ErrorUpdate)
        assert isinstance(updates[-1].error, ChatCancelled)
        assert sum(isinstance(u, ErrorUpdate) for u in updates) == 1
        assert [m.role for m in engine.messages] == [Role.USER]
        assert stalled.closed

    @pytest.mark.asyncio
    async def test_aclose_stops_engine(self):
        """Closing the update stream early cancels the chat task."""
        stalled = StalledStream("partial")
        engine = ConversationEngine(ScriptedProvider(stalled, openai_text_body("next")))

        updates = engine.chat("hi")
        first = await updates.__anext__()
        await updates.aclose()

        assert first == TextUpdate("partial")
        assert [m.role for m in engine.messages] == [Role.USER]
        assert await collect(engine.chat("again")) == [TextUpdate("next")]

    @pytest.mark.asyncio
    async def test_aclose_while_tool_runs(self):
        """Closing during a tool run commits neither the turn nor its calls."""

        @tool("slow", "Never finishes", SearchParams)
        async def slow(runner, params):
            await runner.report("working")
            await asyncio.Event().wait()

        provider = ScriptedProvider(
            openai_tools_body(("call_1", "slow", '{"query":"x"}')),
            openai_text_body("next"),
        )
        engine = ConversationEngine(provider, slow)

        updates = engine.chat("go")
        async for update in updates:
            if isinstance(update, ToolStatusUpdate):
                break
        await updates.aclose()

        assert [m.role for m in engine.messages] == [Role.USER]
        assert engine.total_cost == 0.0

        assert await collect(engine.chat("again")) == [TextUpdate("next")]
        assert [m.role for m in provider.calls[1][1]] == [Role.USER, Role.USER]


# ---------------------------------------------------------------------------
# TestDebugSink
# ---------------------------------------------------------------------------


class TestDebugSink:
    @pytest.mark.asyncio
    async def test_snapshot_per_step(self):
        search, _, _ = _make_tools()
        provider = ScriptedProvider(
            openai_tools_body(("call_1", "search", '{"query":"a"}')),
            openai_text_body("done"),
        )
        snapshots = []
        engine = ConversationEngine(provider, search, system_prompt="sys", debug_sink=snapshots.append)

        await collect(engine.chat("go"))

        assert len(snapshots) == 2
        first = snapshots[0]
        assert first.received_message.tool_calls[0].name == "search"
        assert [m.tool_call_id for m in first.tool_results] == ["call_1"]
        assert [m.role for m in first.sent_messages] == [Role.USER]
        assert first.system_prompt == Content.from_text("sys")
        assert first.available_tools[0]["name"] == "search"
        assert snapshots[1].tool_results == []
        assert list(first.to_dict()) == [
            "1_receivedMessage",
            "2_toolResults",
            "3_sentMessages",
            "4_systemPrompt",
            "5_availableTools",
        ]

    @pytest.mark.asyncio
    async def test_snapshot_on_failed_step(self):
        """A step that fails mid-stream still reports what it received."""
        body = sse({"choices": [{"index": 0, "delta": {"content": "Hel"}, "finish_reason": "content_filter"}]})
        snapshots = []
        engine = ConversationEngine(ScriptedProvider(body), debug_sink=snapshots.append)

        await collect(engine.chat("hi"))

        assert len(snapshots) == 1
        assert snapshots[0].received_message.content.to_text() == "Hel"

    @pytest.mark.asyncio
    async def test_no_snapshot_for_setup_error(self):
        snapshots = []
        engine = ConversationEngine(ScriptedProvider(ProviderError("down")), debug_sink=snapshots.append)

        await collect(engine.chat("hi"))

        assert snapshots == []
