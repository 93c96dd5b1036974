from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from intentcode_factory.llm import (
    ChatTurn,
    OpenAIChatEndpoint,
    ToolConfig,
    ensure_openai_api_key,
    extract_json_payload,
    extract_reply_text,
    normalize_structured_output,
    normalize_turns,
)
from intentcode_factory.models import CompileResult, SpecsToIntentResult


def test_normalize_turns_uses_system_role_when_supported() -> None:
    turns = normalize_turns("You compile.", [ChatTurn(role="user", text="go")])
    assert [(turn.role, turn.text) for turn in turns] == [("system", "You compile."), ("user", "go")]


def test_normalize_turns_without_system_role_adds_acknowledgement() -> None:
    turns = normalize_turns("You compile.", [ChatTurn(role="user", text="go")], supports_system_role=False)
    assert [(turn.role, turn.text) for turn in turns] == [
        ("user", "You compile."),
        ("assistant", "ok"),
        ("user", "go"),
    ]


def test_normalize_turns_inserts_filler_between_same_roles() -> None:
    turns = normalize_turns(
        "",
        [ChatTurn(role="user", text="a"), ChatTurn(role="user", text="b"), ChatTurn(role="assistant", text="c")],
        forbid_consecutive_roles=True,
    )
    assert [turn.role for turn in turns] == ["user", "assistant", "user", "assistant"]
    assert turns[1].text == "ok"


def test_extract_json_payload_variants() -> None:
    assert extract_json_payload('{"a": 1}') == {"a": 1}
    assert extract_json_payload('Here you go:\n```json\n{"a": 2}\n```') == {"a": 2}
    assert extract_json_payload('noise {"a": 3} trailing') == {"a": 3}
    with pytest.raises(RuntimeError):
        extract_json_payload("")
    with pytest.raises(RuntimeError):
        extract_json_payload("[1, 2, 3]")


def test_normalize_structured_output_reads_camel_case_aliases() -> None:
    result = normalize_structured_output(
        raw_output={
            "targetSource": "export {}",
            "fixedIntentNotation": None,
            "dependencyDeltas": [{"operation": "add", "name": "zod", "minVersion": "3.0.0"}],
            "warnings": [{"text": "w", "line": 1, "from": 2, "to": 4}],
        },
        schema=CompileResult,
    )
    assert result.target_source == "export {}"
    assert result.dependency_deltas[0].min_version == "3.0.0"
    assert result.warnings[0].from_ == 2


def test_normalize_structured_output_wraps_validation_errors() -> None:
    with pytest.raises(RuntimeError, match="SpecsToIntentResult"):
        normalize_structured_output(
            raw_output={"intentFiles": [{"projectNo": 1, "relativePath": "a.ts.md", "fileDelta": "set"}]},
            schema=SpecsToIntentResult,
        )
    with pytest.raises(RuntimeError, match="unsupported payload type"):
        normalize_structured_output(raw_output=["not", "a", "dict"], schema=CompileResult)


def test_extract_reply_text_handles_content_blocks() -> None:
    assert extract_reply_text(AIMessage(content="plain")) == "plain"
    assert extract_reply_text(AIMessage(content=[{"type": "text", "text": "a"}, "b"])) == "ab"


def test_ensure_openai_api_key_reads_dotenv(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY")
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-from-dotenv\n", encoding="utf-8")
    assert ensure_openai_api_key(repo_root=tmp_path) == "sk-from-dotenv"


def test_ensure_openai_api_key_missing_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY")
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ensure_openai_api_key(repo_root=tmp_path)


class _FakeRunnable:
    def __init__(self, captured: dict[str, Any]) -> None:
        self.captured = captured

    def invoke(self, input):  # noqa: ANN001,ANN201
        self.captured["messages"] = input
        return AIMessage(
            content='{"astTree": {}}',
            usage_metadata={"input_tokens": 11, "output_tokens": 7, "total_tokens": 18},
        )


class _FakeChatModel:
    def __init__(self, captured: dict[str, Any]) -> None:
        self.captured = captured

    def bind(self, **kwargs):  # noqa: ANN003,ANN201
        self.captured["bind"] = kwargs
        return _FakeRunnable(self.captured)


def test_openai_endpoint_sends_json_mode_and_reports_usage() -> None:
    captured: dict[str, Any] = {}
    factory_calls: list[dict[str, Any]] = []

    def _factory(**kwargs: Any) -> _FakeChatModel:
        factory_calls.append(kwargs)
        return _FakeChatModel(captured)

    endpoint = OpenAIChatEndpoint(model_factory=_factory)
    tool = ToolConfig(tool_id="indexer:gpt-test", model_name="gpt-test", timeout=30)
    messages = endpoint.prepare_messages(tool, "You index.", [ChatTurn(role="user", text="index this")])

    reply = endpoint.send(messages)
    endpoint.send(messages)

    assert reply.status == "ok"
    assert reply.reply_texts == ['{"astTree": {}}']
    assert (reply.input_tokens, reply.output_tokens) == (11, 7)
    assert captured["bind"] == {"response_format": {"type": "json_object"}}
    assert isinstance(captured["messages"][0], SystemMessage)
    assert isinstance(captured["messages"][1], HumanMessage)
    assert len(factory_calls) == 1
    assert factory_calls[0]["model_name"] == "gpt-test"
    assert factory_calls[0]["timeout"] == 30
