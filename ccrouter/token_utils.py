from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Iterator

import tiktoken

_DEFAULT_ENCODING = "cl100k_base"
_PER_MESSAGE_OVERHEAD_TOKENS = 3
_CHARS_PER_TOKEN = 4.0

logger = logging.getLogger("uvicorn.error")


def estimate_prompt_tokens(payload: dict[str, Any]) -> tuple[int, str]:
    """Estimate the prompt size of a messages-style request body.

    Counts message text, the system prompt and the JSON-encoded tool
    definitions. Returns the token count and the estimation method used.
    """
    texts = list(_iter_payload_text(payload))
    encoder = _resolve_token_encoder()

    if encoder is not None:
        token_count = 0
        for text in texts:
            token_count += len(encoder.encode(text, disallowed_special=()))
        messages = payload.get("messages")
        if isinstance(messages, list):
            token_count += len(messages) * _PER_MESSAGE_OVERHEAD_TOKENS
        return token_count, "tiktoken"

    char_count = sum(len(text) for text in texts)
    return int(char_count / _CHARS_PER_TOKEN), "char_heuristic"


def _iter_payload_text(payload: dict[str, Any]) -> Iterator[str]:
    for key in ("system", "messages"):
        yield from _iter_text_fragments(payload.get(key))

    tools = payload.get("tools")
    if tools:
        try:
            yield json.dumps(tools, separators=(",", ":"), sort_keys=True)
        except (TypeError, ValueError):
            return


def _iter_text_fragments(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        if value:
            yield value
        return
    if isinstance(value, list):
        for item in value:
            yield from _iter_text_fragments(item)
        return
    if not isinstance(value, dict):
        return

    text = value.get("text")
    if isinstance(text, str) and text:
        yield text
    thinking = value.get("thinking")
    if isinstance(thinking, str) and thinking:
        yield thinking
    tool_input = value.get("input")
    if isinstance(tool_input, dict) and tool_input:
        yield json.dumps(tool_input, separators=(",", ":"), sort_keys=True)
    content = value.get("content")
    if content is not None:
        yield from _iter_text_fragments(content)


@lru_cache(maxsize=1)
def _resolve_token_encoder() -> Any | None:
    try:
        return tiktoken.get_encoding(_DEFAULT_ENCODING)
    except Exception as exc:
        # The BPE file is fetched on first use and may be unreachable offline.
        logger.warning(
            "token_encoder_unavailable encoding=%s error=%s",
            _DEFAULT_ENCODING,
            exc,
        )
        return None
