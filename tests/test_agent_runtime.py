import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conftest import FakeMessenger, make_user
from taskbridge.agent_runtime import (
    BUSY_REPLY,
    ROUNDS_EXHAUSTED_REPLY,
    SERVICE_UNAVAILABLE_REPLY,
    ToolCallingAgent,
    _to_plain_text,
)
from taskbridge.errors import UpstreamError
from taskbridge.llm.openrouter import OpenRouterProvider
from taskbridge.models import InboundEvent, LLMResponse, LLMToolCall
from taskbridge.tasks import TaskService
from taskbridge.tools.registry import ToolRegistry
from taskbridge.tools.task_tools import CompleteTaskTool, ListTasksTool


def _event(text: str, chat_id: str = "oc_chat") -> InboundEvent:
    return InboundEvent(
        event_id="evt-1",
        chat_id=chat_id,
        message_id="om_1",
        sender_open_id="ou_bob",
        text=text,
        timestamp=datetime.now(timezone.utc),
    )


def _agent(db, llm, messenger, **kwargs) -> ToolCallingAgent:
    service = TaskService(db, messenger)
    registry = ToolRegistry(db)
    registry.register(ListTasksTool(db, service))
    registry.register(CompleteTaskTool(db, service))
    kwargs.setdefault("llm_timeout_seconds", 5)
    return ToolCallingAgent(db=db, llm=llm, tool_registry=registry, messenger=messenger, **kwargs)


def _tool_call(name: str, call_id: str = "call-1", **arguments) -> LLMToolCall:
    return LLMToolCall(name=name, arguments=arguments, call_id=call_id)


@pytest.mark.asyncio
async def test_text_reply_is_sent_and_persisted(db, messenger):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="你好 **Bob**"))

    result = await _agent(db, llm, messenger).handle_message(_event("在干嘛呢朋友"), bob)

    assert result.status == "ok"
    assert result.reply == "你好 Bob"
    assert len(result.rounds) == 1
    assert messenger.sent == [{"receive_id": "oc_chat", "text": "你好 Bob", "id_type": "chat_id", "reply_to": "om_1"}]
    assert db.get_recent_history("oc_chat", limit=10) == [
        {"role": "user", "content": "在干嘛呢朋友"},
        {"role": "assistant", "content": "你好 Bob"},
    ]


@pytest.mark.asyncio
async def test_system_prompt_carries_identity_permissions_and_directory(db, messenger):
    bob = make_user(db, "bob", name="Bob", email="bob@x.com")
    make_user(db, "alice", name="Alice")
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="ok"))

    await _agent(db, llm, messenger).handle_message(_event("帮我看看有什么事情"), bob)

    messages = llm.generate.call_args.args[0]
    system = messages[0]["content"]
    assert messages[0]["role"] == "system"
    assert "open_id: ou_bob" in system
    assert "task_view" in system and "task_create" not in system
    assert "Alice" in system and "ou_alice" in system
    assert messages[-1] == {"role": "user", "content": "帮我看看有什么事情"}
    assert {spec["function"]["name"] for spec in llm.generate.call_args.kwargs["tools"]} == {
        "list_tasks",
        "complete_task",
    }


@pytest.mark.asyncio
async def test_history_is_loaded_and_window_is_bounded(db, messenger):
    bob = make_user(db, "bob")
    for i in range(6):
        db.append_history("oc_chat", "user", f"old {i}", keep=4)
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="ok"))

    await _agent(db, llm, messenger, history_window=4).handle_message(_event("new message"), bob)

    messages = llm.generate.call_args.args[0]
    assert [m["content"] for m in messages[1:]] == ["old 2", "old 3", "old 4", "old 5", "new message"]
    assert [m["content"] for m in db.get_recent_history("oc_chat", limit=10)] == [
        "old 4",
        "old 5",
        "new message",
        "ok",
    ]


@pytest.mark.asyncio
async def test_history_does_not_leak_between_chats(db, messenger):
    bob = make_user(db, "bob")
    db.append_history("oc_other", "user", "secret", keep=20)
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="ok"))

    await _agent(db, llm, messenger).handle_message(_event("hello there friend"), bob)

    contents = [m["content"] for m in llm.generate.call_args.args[0]]
    assert "secret" not in contents


@pytest.mark.asyncio
async def test_tool_round_then_final_answer(db, messenger):
    bob = make_user(db, "bob")
    task = db.create_task("周报", bob.task_identity, assignee_open_id=bob.open_id)
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(content="", tool_calls=[_tool_call("list_tasks", open_id=bob.open_id)]),
            LLMResponse(content="", tool_calls=[_tool_call("complete_task", "call-2", task_id=task.id, user_open_id=bob.open_id)]),
            LLMResponse(content="已完成周报"),
        ]
    )

    result = await _agent(db, llm, messenger).handle_message(_event("把周报标记完成吧谢谢"), bob)

    assert result.status == "ok"
    assert len(result.rounds) == 3
    assert result.rounds[0].tool_results == [{"tasks": [{"id": task.id, "title": "周报", "deadline": None}]}]
    assert result.rounds[1].tool_results == [{"success": True}]
    assert db.get_task(task.id).status == "completed"

    final_messages = llm.generate.call_args_list[2].args[0]
    assistant_turn = final_messages[-4]
    assert assistant_turn["role"] == "assistant"
    assert assistant_turn["tool_calls"][0]["function"]["name"] == "list_tasks"
    assert final_messages[-1]["role"] == "tool"
    assert final_messages[-1]["tool_call_id"] == "call-2"
    # Tool turns stay out of persisted history.
    assert [m["role"] for m in db.get_recent_history("oc_chat", limit=10)] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_failing_tool_is_reported_to_model_as_json_error(db, messenger):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(content="", tool_calls=[_tool_call("complete_task", task_id=999, user_open_id=bob.open_id)]),
            LLMResponse(content="抱歉，没有找到这个任务"),
        ]
    )

    result = await _agent(db, llm, messenger).handle_message(_event("完成任务999吧拜托"), bob)

    assert result.status == "ok"
    assert len(result.rounds) == 2
    assert "error" in result.rounds[0].tool_results[0]
    tool_message = llm.generate.call_args_list[1].args[0][-1]
    assert tool_message["role"] == "tool"
    assert "error" in json.loads(tool_message["content"])


@pytest.mark.asyncio
async def test_malformed_and_unknown_tool_calls_become_errors(db, messenger):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(
                content="",
                tool_calls=[
                    LLMToolCall(name="list_tasks", arguments={}, call_id="c1", parse_error="Invalid JSON arguments"),
                    _tool_call("drop_database", "c2"),
                ],
            ),
            LLMResponse(content="ok"),
        ]
    )

    result = await _agent(db, llm, messenger).handle_message(_event("please do the thing"), bob)

    assert result.rounds[0].tool_results == [
        {"error": "Invalid JSON arguments"},
        {"error": "Unknown tool: drop_database"},
    ]


@pytest.mark.asyncio
async def test_failing_tool_calls_still_count_toward_round_limit(db, messenger):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(
        return_value=LLMResponse(content="", tool_calls=[_tool_call("complete_task", task_id=1, user_open_id="ou_x")])
    )

    result = await _agent(db, llm, messenger, max_rounds=3).handle_message(_event("keep trying forever"), bob)

    assert result.status == "exhausted"
    assert result.reply == ROUNDS_EXHAUSTED_REPLY
    assert len(result.rounds) == 3
    assert llm.generate.await_count == 3
    assert all("error" in r.tool_results[0] for r in result.rounds)
    assert messenger.sent[0]["text"] == ROUNDS_EXHAUSTED_REPLY
    assert db.get_recent_history("oc_chat", limit=10)[-1] == {"role": "assistant", "content": ROUNDS_EXHAUSTED_REPLY}


@pytest.mark.asyncio
async def test_llm_failure_replies_unavailable_without_assistant_turn(db, messenger):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=UpstreamError("boom"))

    result = await _agent(db, llm, messenger).handle_message(_event("anyone there at all"), bob)

    assert result.status == "unavailable"
    assert messenger.sent[0]["text"] == SERVICE_UNAVAILABLE_REPLY
    assert [m["role"] for m in db.get_recent_history("oc_chat", limit=10)] == ["user"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"text": "<html>gateway</html>"},
        {"json": {"choices": [{"message": None}]}},
    ],
)
async def test_malformed_provider_body_replies_unavailable(db, messenger, body):
    bob = make_user(db, "bob")
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    response = httpx.Response(200, request=request, **body)
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = AsyncMock(return_value=response)

    with patch("taskbridge.llm.openrouter.httpx.AsyncClient", return_value=mock_client):
        llm = OpenRouterProvider(api_key="k", model="m")
        result = await _agent(db, llm, messenger).handle_message(_event("what is on my plate"), bob)

    assert result.status == "unavailable"
    assert [m["text"] for m in messenger.sent] == [SERVICE_UNAVAILABLE_REPLY]
    assert [m["role"] for m in db.get_recent_history("oc_chat", limit=10)] == ["user"]


@pytest.mark.asyncio
async def test_llm_failure_after_tool_round_persists_nothing_partial(db, messenger):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(content="", tool_calls=[_tool_call("list_tasks", open_id=bob.open_id)]),
            UpstreamError("boom"),
        ]
    )

    result = await _agent(db, llm, messenger).handle_message(_event("list my stuff please"), bob)

    assert result.status == "unavailable"
    assert len(result.rounds) == 1
    assert [m["role"] for m in db.get_recent_history("oc_chat", limit=10)] == ["user"]


@pytest.mark.asyncio
async def test_llm_timeout_is_treated_as_unavailable(db, messenger):
    bob = make_user(db, "bob")

    async def slow(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        await asyncio.sleep(1)
        return LLMResponse(content="too late")

    llm = MagicMock()
    llm.generate = slow

    result = await _agent(db, llm, messenger, llm_timeout_seconds=0.01).handle_message(_event("are you slow today"), bob)

    assert result.status == "unavailable"
    assert messenger.sent[0]["text"] == SERVICE_UNAVAILABLE_REPLY


@pytest.mark.asyncio
async def test_saturated_agent_fails_fast(db, messenger):
    bob = make_user(db, "bob")
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        started.set()
        await release.wait()
        return LLMResponse(content="done")

    llm = MagicMock()
    llm.generate = blocking
    agent = _agent(db, llm, messenger, max_concurrency=1, queue_timeout_seconds=0.01)

    first = asyncio.create_task(agent.handle_message(_event("first message here", chat_id="oc_1"), bob))
    await asyncio.wait_for(started.wait(), timeout=1)
    second = await agent.handle_message(_event("second message here", chat_id="oc_2"), bob)
    release.set()
    first_result = await first

    assert second.status == "busy"
    assert second.reply == BUSY_REPLY
    assert db.count_history("oc_2") == 0
    assert first_result.status == "ok"


@pytest.mark.asyncio
async def test_delivery_failure_does_not_raise(db):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="hi"))

    result = await _agent(db, llm, FakeMessenger(fail=True)).handle_message(_event("hello hello hello"), bob)

    assert result.status == "ok"


@pytest.mark.asyncio
async def test_history_write_failure_still_sends_one_reply(db, messenger):
    bob = make_user(db, "bob")
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="hi"))
    append_history = db.append_history

    def failing_for_assistant(chat_id, role, content, keep):  # noqa: ANN001, ANN202
        if role == "assistant":
            raise sqlite3.OperationalError("disk I/O error")
        return append_history(chat_id, role, content, keep=keep)

    with patch.object(db, "append_history", side_effect=failing_for_assistant):
        result = await _agent(db, llm, messenger).handle_message(_event("hello hello hello"), bob)

    assert result.status == "ok"
    assert [m["text"] for m in messenger.sent] == ["hi"]
    assert [m["role"] for m in db.get_recent_history("oc_chat", limit=10)] == ["user"]


def test_to_plain_text_strips_markdown():
    text = "## 标题\n**重点** 和 `代码`\n[链接](https://x.com)"
    assert _to_plain_text(text) == "标题\n重点 和 代码\n链接 https://x.com"
