"""Tests for the turn controller (run_turn) and terminal rendering."""

import pytest

from conftest import ScriptedModel, text_reply, tool_reply
from phi import agent, fmt
from phi.agent import render_events, run_turn
from phi.errors import SpawnError, TransportError
from phi.stream import StreamReducer
from phi.tools import ToolContext, ToolContract, build_registry
from phi.types import AssistantTurn, ToolState, UserTurn


def _contract(name, run):
    return ToolContract(
        name=name,
        description=name,
        input_schema={"type": "object", "properties": {}},
        run=run,
    )


def _run(model, registry=None, transcript=None, text="hi", **kw):
    transcript = [] if transcript is None else transcript
    events = list(
        run_turn(
            transcript,
            text,
            model=model,
            registry=registry or build_registry(),
            context=ToolContext(),
            **kw,
        )
    )
    return events, transcript


def _types(events):
    return [e.type for e in events]


class TestNoTools:
    def test_single_round(self):
        model = ScriptedModel(text_reply("hello"))
        events, transcript = _run(model)
        assert model.calls == [1]
        assert events[-1].type == "done"
        assert not events[-1].exhausted
        assert "tool_execution_start" not in _types(events)
        assert transcript[0] == UserTurn("hi")
        assert transcript[1].role == "assistant"
        assert transcript[1].text == "hello"
        assert len(transcript) == 2

    def test_exactly_one_message_stop(self):
        events, _ = _run(ScriptedModel(text_reply("hello")))
        assert _types(events).count("message_stop") == 1

    def test_empty_reply_ends_turn(self):
        events, transcript = _run(ScriptedModel(AssistantTurn()))
        assert _types(events) == ["message_stop", "done"]
        assert transcript[-1].content == ()

    def test_history_is_kept(self):
        transcript = [UserTurn("earlier"), AssistantTurn()]
        model = ScriptedModel(text_reply("ok"))
        _run(model, transcript=transcript)
        assert model.calls == [3]
        assert transcript[0].text == "earlier"


class TestToolRounds:
    def test_tools_run_in_order_with_one_results_turn(self):
        order = []
        registry = build_registry(
            [
                _contract("first", lambda a, c: order.append("first") or "one"),
                _contract("second", lambda a, c: order.append("second") or "two"),
            ]
        )
        model = ScriptedModel(
            tool_reply(("a", "first", {}), ("b", "second", {})),
            text_reply("done"),
        )
        events, transcript = _run(model, registry)

        assert order == ["first", "second"]
        execution = [
            (e.type, e.tool_use_id)
            for e in events
            if e.type.startswith("tool_execution")
        ]
        assert execution == [
            ("tool_execution_start", "a"),
            ("tool_execution_end", "a"),
            ("tool_execution_start", "b"),
            ("tool_execution_end", "b"),
        ]
        results_turn = transcript[2]
        assert results_turn.role == "user"
        assert [(r.tool_use_id, r.content) for r in results_turn.results] == [
            ("a", "one"),
            ("b", "two"),
        ]
        assert len(transcript) == 4
        assert model.calls == [1, 3]

    def test_execution_events_follow_message_stop(self):
        registry = build_registry([_contract("noop", lambda a, c: "ok")])
        events, _ = _run(ScriptedModel(tool_reply(("a", "noop", {})), text_reply("x")), registry)
        types = _types(events)
        assert types.index("message_stop") < types.index("tool_execution_start")

    def test_input_reaches_tool(self):
        seen = []
        registry = build_registry([_contract("spy", lambda a, c: seen.append(a) or "ok")])
        _run(ScriptedModel(tool_reply(("a", "spy", {"x": 1})), text_reply("x")), registry)
        assert seen == [{"x": 1}]

    def test_unknown_tool(self):
        events, transcript = _run(
            ScriptedModel(tool_reply(("a", "teleport", {})), text_reply("sorry"))
        )
        end = next(e for e in events if e.type == "tool_execution_end")
        assert end.result == "Error: Unknown tool teleport"
        assert end.is_error
        assert transcript[2].results[0].is_error

    def test_tool_exception_becomes_error_result(self):
        def boom(args, ctx):
            raise RuntimeError("kaboom")

        registry = build_registry([_contract("boom", boom)])
        events, transcript = _run(
            ScriptedModel(tool_reply(("a", "boom", {})), text_reply("recovered")), registry
        )
        assert transcript[2].results[0].content == "Error: kaboom"
        assert transcript[-1].text == "recovered"
        assert events[-1].type == "done"

    def test_reducer_sees_final_states(self):
        registry = build_registry(
            [_contract("ok", lambda a, c: "fine"), _contract("bad", lambda a, c: "Error: no")]
        )
        events, _ = _run(
            ScriptedModel(tool_reply(("a", "ok", {}), ("b", "bad", {})), text_reply("x")),
            registry,
        )
        reducer = StreamReducer()
        for e in events:
            reducer.feed(e)
        states = [b.state for b in reducer.turns[0].tool_invocations]
        assert states == [ToolState.COMPLETED, ToolState.FAILED]
        assert reducer.done


class TestFailures:
    def test_transport_error_keeps_transcript(self):
        model = ScriptedModel(TransportError("connection reset"))
        transcript = []
        with pytest.raises(TransportError):
            list(
                run_turn(
                    transcript, "hi", model=model, registry=build_registry(), context=ToolContext()
                )
            )
        assert transcript == [UserTurn("hi")]

    def test_transport_error_in_later_round(self):
        registry = build_registry([_contract("noop", lambda a, c: "ok")])
        model = ScriptedModel(tool_reply(("a", "noop", {})), TransportError("gone"))
        transcript = []
        with pytest.raises(TransportError):
            list(run_turn(transcript, "hi", model=model, registry=registry, context=ToolContext()))
        assert [t.role for t in transcript] == ["user", "assistant", "user"]
        assert transcript[2].results[0].content == "ok"

    def test_spawn_error_records_results_then_raises(self):
        def no_shell(args, ctx):
            raise SpawnError("cannot start shell")

        ran = []
        registry = build_registry(
            [
                _contract("spawn", no_shell),
                _contract("after", lambda a, c: ran.append(1) or "ok"),
            ]
        )
        transcript = []
        events = []
        with pytest.raises(SpawnError):
            for e in run_turn(
                transcript,
                "hi",
                model=ScriptedModel(tool_reply(("a", "spawn", {}), ("b", "after", {}))),
                registry=registry,
                context=ToolContext(),
            ):
                events.append(e)

        assert ran == []
        results = transcript[-1].results
        assert [r.tool_use_id for r in results] == ["a", "b"]
        assert all(r.is_error for r in results)
        assert results[0].content == "Error: cannot start shell"
        assert events[-1].type == "tool_execution_end"
        assert events[-1].tool_use_id == "a"

    def test_closing_mid_round_answers_every_call(self):
        registry = build_registry([_contract("noop", lambda a, c: "done")])
        transcript = []
        events = run_turn(
            transcript,
            "hi",
            model=ScriptedModel(tool_reply(("a", "noop", {}), ("b", "noop", {}))),
            registry=registry,
            context=ToolContext(),
        )
        for e in events:
            if e.type == "tool_execution_end":
                break
        events.close()

        assert [t.role for t in transcript] == ["user", "assistant", "user"]
        results = transcript[-1].results
        assert [(r.content, r.is_error) for r in results] == [
            ("done", False),
            ("Error: interrupted before completion", True),
        ]


class TestRoundCap:
    def test_exhausted(self):
        registry = build_registry([_contract("noop", lambda a, c: "ok")])
        model = ScriptedModel(
            tool_reply(("a", "noop", {})),
            tool_reply(("b", "noop", {})),
        )
        events, transcript = _run(model, registry, max_rounds=2)
        assert events[-1].type == "done"
        assert events[-1].exhausted
        assert len(model.calls) == 2
        assert transcript[-1].role == "user"

    def test_cap_not_hit(self):
        events, _ = _run(ScriptedModel(text_reply("x")), max_rounds=1)
        assert not events[-1].exhausted


# ---------------------------------------------------------------------------
# render_events
# ---------------------------------------------------------------------------


class TestRenderEvents:
    def test_prints_text_and_returns_answer(self, capsys):
        events, _ = _run(ScriptedModel(text_reply("hello there")))
        answer, exhausted = render_events(iter(events), verbose=False)
        assert answer == "hello there"
        assert not exhausted
        assert capsys.readouterr().out == "hello there\n"

    def test_reports_tools(self, monkeypatch):
        calls = []
        monkeypatch.setattr(fmt, "tool_call", lambda name, args: calls.append(("call", name)))
        monkeypatch.setattr(
            fmt, "tool_result", lambda name, elapsed, preview: calls.append(("ok", name, preview))
        )
        monkeypatch.setattr(fmt, "tool_error", lambda name, msg: calls.append(("err", name, msg)))
        monkeypatch.setattr(fmt, "completion", lambda rounds, exhausted: calls.append(("end", rounds)))
        monkeypatch.setattr(fmt, "round_header", lambda n, cap: calls.append(("round", n)))

        registry = build_registry(
            [_contract("ok", lambda a, c: "fine\nmore"), _contract("bad", lambda a, c: "Error: no")]
        )
        events, _ = _run(
            ScriptedModel(tool_reply(("a", "ok", {}), ("b", "bad", {})), text_reply("x")),
            registry,
        )
        render_events(iter(events), verbose=True)
        assert calls == [
            ("call", "ok"),
            ("ok", "ok", "fine"),
            ("call", "bad"),
            ("err", "bad", "Error: no"),
            ("round", 2),
            ("end", 2),
        ]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestMain:
    @pytest.fixture
    def fake_service(self, monkeypatch, no_home):
        script = []

        class FakeService(ScriptedModel):
            def __init__(self, model, **kwargs):
                super().__init__(*script)

        monkeypatch.setattr(agent, "LiteLLMService", FakeService)
        return script

    def test_question_prints_answer(self, fake_service, capsys, tmp_path):
        fake_service.append(text_reply("42"))
        agent.main(["-q", "--no-save", "--base-dir", str(tmp_path), "what is it?"])
        assert capsys.readouterr().out == "42\n"

    def test_exhausted_exits_2(self, fake_service, tmp_path):
        fake_service.append(tool_reply(("a", "todo", {"action": "list_all"})))
        with pytest.raises(SystemExit) as exc:
            agent.main(
                ["-q", "--no-save", "--max-rounds", "1", "--base-dir", str(tmp_path), "go"]
            )
        assert exc.value.code == 2

    def test_transport_error_exits_1(self, fake_service, tmp_path):
        fake_service.append(TransportError("LLM call failed: nope"))
        with pytest.raises(SystemExit) as exc:
            agent.main(["-q", "--no-save", "--base-dir", str(tmp_path), "go"])
        assert exc.value.code == 1

    def test_saves_chat(self, fake_service, tmp_path):
        chats = tmp_path / "chats"
        fake_service.append(text_reply("saved"))
        agent.main(["-q", "--chats-dir", str(chats), "--base-dir", str(tmp_path), "keep me"])
        assert len(list(chats.glob("*.json"))) == 1

    def test_question_required(self, no_home):
        with pytest.raises(SystemExit) as exc:
            agent.main([])
        assert exc.value.code == 2

    def test_missing_base_dir(self, fake_service, tmp_path):
        with pytest.raises(SystemExit) as exc:
            agent.main(["-q", "--no-save", "--base-dir", str(tmp_path / "nope"), "go"])
        assert exc.value.code == 1

    def test_init_config(self, capsys):
        with pytest.raises(SystemExit) as exc:
            agent.main(["--init-config"])
        assert exc.value.code == 0
        assert "# phi settings" in capsys.readouterr().out
