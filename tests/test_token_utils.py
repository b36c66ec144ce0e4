from __future__ import annotations

from typing import Any

from ccrouter import token_utils
from ccrouter.token_utils import estimate_prompt_tokens


class _WordEncoder:
    def encode(self, text: str, disallowed_special: Any = ()) -> list[str]:
        return text.split()


def test_estimate_uses_encoder_and_counts_message_overhead(monkeypatch: Any) -> None:
    monkeypatch.setattr(token_utils, "_resolve_token_encoder", lambda: _WordEncoder())
    payload = {
        "system": [{"type": "text", "text": "you are terse"}],
        "messages": [
            {"role": "user", "content": "hello there"},
            {
                "role": "assistant",
                "content": [{"type": "text", "text": "hi"}],
            },
        ],
    }

    tokens, method = estimate_prompt_tokens(payload)

    assert method == "tiktoken"
    assert tokens == 3 + 2 + 1 + 2 * 3


def test_estimate_includes_tool_definitions(monkeypatch: Any) -> None:
    monkeypatch.setattr(token_utils, "_resolve_token_encoder", lambda: None)
    base = {"messages": [{"role": "user", "content": "x" * 400}]}
    with_tools = {
        **base,
        "tools": [{"name": "read_file", "description": "y" * 400}],
    }

    base_tokens, method = estimate_prompt_tokens(base)
    tool_tokens, _ = estimate_prompt_tokens(with_tools)

    assert method == "char_heuristic"
    assert base_tokens == 100
    assert tool_tokens > base_tokens + 100


def test_estimate_reads_tool_use_and_tool_result_blocks(monkeypatch: Any) -> None:
    monkeypatch.setattr(token_utils, "_resolve_token_encoder", lambda: None)
    payload = {
        "messages": [
            {
                "role": "assistant",
                "content": [
                    {"type": "tool_use", "id": "t1", "name": "ls", "input": {"path": "/tmp"}}
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "content": "a" * 80}
                ],
            },
        ]
    }

    tokens, _ = estimate_prompt_tokens(payload)

    assert tokens >= 20


def test_estimate_of_empty_payload_is_zero(monkeypatch: Any) -> None:
    monkeypatch.setattr(token_utils, "_resolve_token_encoder", lambda: None)
    assert estimate_prompt_tokens({}) == (0, "char_heuristic")
