"""Tests for the orchestration loop: run_turn and handle_tool_call."""

import asyncio
import json
import sys
import time
from unittest.mock import patch

import pytest

from lintcli import agent, tools
from lintcli.agent import handle_tool_call, run_turn
from lintcli.config import Settings
from lintcli.gateway import GatewayReply, ToolCall
from lintcli.memory import ConversationStore
from lintcli.session import Session


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _confirm(answer: bool):
    asked = []

    async def confirm(question):
        asked.append(question)
        return answer

    confirm.asked = asked
    return confirm


def _session(tmp_path, *, confirm=None, memory=True, max_turns=10):
    settings = Settings(
        model="test-model",
        api_url="",
        memory_enabled=memory,
        system_prompt="You are a test.",
        max_turns=max_turns,
    )
    return Session.start(
        tmp_path,
        settings,
        {},
        confirm or _confirm(True),
        verbose=False,
    )


def _scripted(*replies):
    """Fake gateway returning the given replies in order, recording each call."""
    calls = []
    queue = list(replies)

    async def fake_complete(messages, model, api_url=None, api_key=None):
        calls.append([dict(m) for m in messages])
        return queue.pop(0)

    fake_complete.calls = calls
    return fake_complete


def _call(name, call_id="c1", **params):
    return ToolCall(id=call_id, name=name, parameters=params)


def _run(session, text, fake):
    with patch("lintcli.agent.complete", fake):
        return asyncio.run(run_turn(session, text))


def _tool_messages(session):
    return [m for m in session.messages if m["role"] == "tool"]


# ---------------------------------------------------------------------------
# Plain replies
# ---------------------------------------------------------------------------


class TestTextReply:
    def test_single_round_trip(self, tmp_path):
        session = _session(tmp_path)
        fake = _scripted(GatewayReply(content="Hello!"))

        answer = _run(session, "hi", fake)

        assert answer == "Hello!"
        assert [m["role"] for m in session.messages] == ["system", "user", "assistant"]
        assert len(fake.calls) == 1
        assert fake.calls[0][0] == {"role": "system", "content": "You are a test."}

    def test_persisted_without_system(self, tmp_path):
        session = _session(tmp_path)
        _run(session, "hi", _scripted(GatewayReply(content="yo")))

        saved = json.loads((tmp_path / ".lint-cli" / "memory.json").read_text())
        assert saved == {
            "messages": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "yo"},
            ]
        }

    def test_memory_disabled_writes_nothing(self, tmp_path):
        session = _session(tmp_path, memory=False)
        _run(session, "hi", _scripted(GatewayReply(content="yo")))
        assert not (tmp_path / ".lint-cli" / "memory.json").exists()

    def test_saved_history_loaded_on_start(self, tmp_path):
        store = ConversationStore(tmp_path / ".lint-cli")
        store.save([{"role": "user", "content": "earlier"}])
        session = _session(tmp_path)
        assert session.messages[1] == {"role": "user", "content": "earlier"}

    def test_transport_error_is_final_text(self, tmp_path):
        session = _session(tmp_path)
        fake = _scripted(GatewayReply(content="Error: connection refused"))
        assert _run(session, "hi", fake) == "Error: connection refused"
        assert session.messages[-1]["content"] == "Error: connection refused"

    def test_empty_reply_not_appended(self, tmp_path):
        session = _session(tmp_path)
        assert _run(session, "hi", _scripted(GatewayReply(content=""))) == ""
        assert session.messages[-1]["role"] == "user"


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    def test_read_then_answer(self, tmp_path):
        (tmp_path / "a.txt").write_text("hello")
        session = _session(tmp_path)
        fake = _scripted(
            GatewayReply(tool_calls=[_call("read_file", path="a.txt")]),
            GatewayReply(content="It says hello."),
        )

        answer = _run(session, "what is in a.txt?", fake)

        assert answer == "It says hello."
        roles = [m["role"] for m in session.messages]
        assert roles == ["system", "user", "assistant", "tool", "assistant"]
        assistant_calls = session.messages[2]["tool_calls"]
        assert assistant_calls[0]["id"] == "c1"
        assert session.messages[3] == {
            "role": "tool",
            "tool_call_id": "c1",
            "content": "hello",
        }
        # Second gateway call sees the tool result.
        assert fake.calls[1][-1]["content"] == "hello"

    def test_text_encoded_call_is_executed(self, tmp_path):
        (tmp_path / "a.txt").write_text("hello")
        session = _session(tmp_path)
        fake = _scripted(
            GatewayReply(content='{"name":"read_file","parameters":{"path":"a.txt"}}'),
            GatewayReply(content="done"),
        )

        assert _run(session, "read it", fake) == "done"
        tool_msgs = _tool_messages(session)
        assert len(tool_msgs) == 1
        assert tool_msgs[0]["content"] == "hello"
        assert tool_msgs[0]["tool_call_id"] == session.messages[2]["tool_calls"][0]["id"]

    def test_multiple_calls_in_order(self, tmp_path):
        (tmp_path / "a.txt").write_text("A")
        (tmp_path / "b.txt").write_text("B")
        session = _session(tmp_path)
        fake = _scripted(
            GatewayReply(
                tool_calls=[
                    _call("read_file", "c1", path="a.txt"),
                    _call("read_file", "c2", path="b.txt"),
                ]
            ),
            GatewayReply(content="ok"),
        )
        _run(session, "read both", fake)
        assert [(m["tool_call_id"], m["content"]) for m in _tool_messages(session)] == [
            ("c1", "A"),
            ("c2", "B"),
        ]

    def test_unknown_tool(self, tmp_path):
        session = _session(tmp_path)
        fake = _scripted(
            GatewayReply(tool_calls=[_call("delete_everything")]),
            GatewayReply(content="sorry"),
        )
        assert _run(session, "go", fake) == "sorry"
        assert _tool_messages(session)[0]["content"] == (
            'ERROR: Unknown tool "delete_everything"'
        )

    def test_sandbox_error_reaches_model(self, tmp_path):
        session = _session(tmp_path)
        fake = _scripted(
            GatewayReply(tool_calls=[_call("read_file", path="../../etc/passwd")]),
            GatewayReply(content="can't"),
        )
        _run(session, "go", fake)
        assert _tool_messages(session)[0]["content"] == (
            "ERROR: Path outside project: ../../etc/passwd"
        )

    def test_exception_becomes_error_message(self, tmp_path):
        session = _session(tmp_path)
        fake = _scripted(
            GatewayReply(tool_calls=[_call("current_dir")]),
            GatewayReply(content="ok"),
        )
        with patch("lintcli.agent.dispatch", side_effect=RuntimeError("kaboom")):
            _run(session, "go", fake)
        assert _tool_messages(session)[0]["content"] == "ERROR: kaboom"

    def test_list_result_sent_as_json(self, tmp_path):
        (tmp_path / "f.txt").write_text("")
        session = _session(tmp_path)
        fake = _scripted(
            GatewayReply(tool_calls=[_call("list_files")]),
            GatewayReply(content="ok"),
        )
        _run(session, "ls", fake)
        content = _tool_messages(session)[0]["content"]
        assert ".lint-cli/" in json.loads(content)
        assert "f.txt" in json.loads(content)


# ---------------------------------------------------------------------------
# Confirmation gating
# ---------------------------------------------------------------------------


class TestConfirmation:
    def test_declined_write_does_nothing(self, tmp_path):
        confirm = _confirm(False)
        session = _session(tmp_path, confirm=confirm)
        fake = _scripted(
            GatewayReply(
                tool_calls=[_call("write_file", path="x.txt", content="data")]
            ),
            GatewayReply(content="Okay, not writing."),
        )

        answer = _run(session, "write x", fake)

        assert answer == "Okay, not writing."
        assert not (tmp_path / "x.txt").exists()
        assert _tool_messages(session)[0]["content"] == (
            "CANCELLED: write_file aborted by user"
        )
        assert confirm.asked == ["Proceed? (y/n): "]
        # The loop continued to a second model call.
        assert len(fake.calls) == 2

    def test_accepted_write(self, tmp_path):
        session = _session(tmp_path, confirm=_confirm(True))
        fake = _scripted(
            GatewayReply(
                tool_calls=[_call("write_file", path="x.txt", content="data")]
            ),
            GatewayReply(content="Written."),
        )
        _run(session, "write x", fake)
        assert (tmp_path / "x.txt").read_text() == "data"
        assert _tool_messages(session)[0]["content"] == "OK: File written -> x.txt"

    def test_read_only_tools_not_confirmed(self, tmp_path):
        confirm = _confirm(False)
        session = _session(tmp_path, confirm=confirm)
        fake = _scripted(
            GatewayReply(tool_calls=[_call("current_dir")]),
            GatewayReply(content="ok"),
        )
        _run(session, "where", fake)
        assert confirm.asked == []

    def test_declined_command_not_run(self, tmp_path):
        session = _session(tmp_path, confirm=_confirm(False))
        fake = _scripted(
            GatewayReply(tool_calls=[_call("run_command", command="touch made.txt")]),
            GatewayReply(content="ok"),
        )
        _run(session, "touch", fake)
        assert not (tmp_path / "made.txt").exists()

    def test_unknown_tool_never_asks(self, tmp_path):
        confirm = _confirm(True)
        session = _session(tmp_path, confirm=confirm)
        call = _call("delete_everything")
        msg = asyncio.run(handle_tool_call(call, session))
        assert msg["content"] == 'ERROR: Unknown tool "delete_everything"'
        assert confirm.asked == []


# ---------------------------------------------------------------------------
# Iteration cap
# ---------------------------------------------------------------------------


class TestMaxTurns:
    def test_stops_at_cap_and_still_persists(self, tmp_path):
        session = _session(tmp_path, max_turns=3)
        fake = _scripted(
            *[GatewayReply(tool_calls=[_call("current_dir", f"c{i}")]) for i in range(5)]
        )

        answer = _run(session, "loop forever", fake)

        assert answer is None
        assert len(fake.calls) == 3
        assert len(_tool_messages(session)) == 3
        saved = json.loads((tmp_path / ".lint-cli" / "memory.json").read_text())
        assert saved["messages"][0] == {"role": "user", "content": "loop forever"}

    def test_history_trimmed_after_turn(self, tmp_path):
        session = _session(tmp_path)
        session.messages += [{"role": "user", "content": str(i)} for i in range(100)]
        _run(session, "hi", _scripted(GatewayReply(content="yo")))
        assert session.messages[0]["role"] == "system"
        assert len(session.messages) == 81
        assert session.messages[-1] == {"role": "assistant", "content": "yo"}


@pytest.mark.parametrize("tool", ["write_file", "replace_in_file", "run_command"])
def test_every_mutating_tool_is_gated(tmp_path, tool):
    confirm = _confirm(False)
    session = _session(tmp_path, confirm=confirm)
    msg = asyncio.run(handle_tool_call(_call(tool, path="f", command="x"), session))
    assert msg["content"] == f"CANCELLED: {tool} aborted by user"
    assert len(confirm.asked) == 1


# ---------------------------------------------------------------------------
# Interrupting a running command
# ---------------------------------------------------------------------------


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")
def test_cancelled_turn_kills_running_command(tmp_path):
    session = _session(tmp_path, confirm=_confirm(True))
    call = _call("run_command", command="sleep 30")

    async def interrupt_after_start():
        task = asyncio.create_task(handle_tool_call(call, session))
        deadline = time.monotonic() + 5
        while not tools._running and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    t0 = time.monotonic()
    asyncio.run(interrupt_after_start())
    # asyncio.run waits for the worker thread, so this also bounds its exit.
    assert time.monotonic() - t0 < 10
    assert not tools._running


# ---------------------------------------------------------------------------
# Token estimate
# ---------------------------------------------------------------------------


class _WordEncoder:
    def encode(self, text):
        return text.split()


class TestEstimateTokens:
    def test_counts_text_and_tool_calls(self, monkeypatch):
        monkeypatch.setattr(agent, "_encoder", _WordEncoder())
        messages = [
            {"role": "user", "content": "one two"},
            GatewayReply(tool_calls=[_call("current_dir")]).to_message(),
        ]
        # 2 words + "current_dir{}" + 4 per message
        assert agent.estimate_tokens(messages) == 2 + 1 + 8

    def test_non_string_content_from_saved_history(self, monkeypatch):
        monkeypatch.setattr(agent, "_encoder", _WordEncoder())
        messages = [
            {"role": "user", "content": [{"type": "text", "text": "hi there"}]},
            {"role": "assistant", "content": {"odd": 1}},
            {"role": "assistant", "content": "", "tool_calls": ["junk"]},
        ]
        assert agent.estimate_tokens(messages) > 0
