"""Shared LLM calling utilities.

Centralizes all Claude invocations with two backends:
1. Anthropic API (preferred, uses ANTHROPIC_API_KEY)
2. Subprocess ``claude -p`` (fallback when no API key is set)
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from typing import Protocol

import anthropic

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Base error for LLM calls."""


class TextGenerator(Protocol):
    """Callable shape shared by ``call_claude`` and test fakes."""

    def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str | None = None,
        timeout: int = 120,
        max_tokens: int = 16384,
        label: str = "synthesis",
    ) -> str: ...


# ---------------------------------------------------------------------------
# Model name mapping
# ---------------------------------------------------------------------------

_MODEL_MAP: dict[str, str] = {
    "sonnet": "claude-sonnet-4-6",
    "haiku": "claude-haiku-4-5-20251001",
    "opus": "claude-opus-4-6",
}

_DEFAULT_MODEL = "claude-sonnet-4-6"


def _resolve_model(model: str | None) -> str:
    """Resolve a short model name to an API model ID."""
    if model is None:
        return _DEFAULT_MODEL
    return _MODEL_MAP.get(model, model)


# ---------------------------------------------------------------------------
# Internal: Anthropic API
# ---------------------------------------------------------------------------


def _call_anthropic_api(
    system_prompt: str,
    user_prompt: str,
    *,
    api_key: str,
    model: str | None = None,
    timeout: int = 120,
    max_tokens: int = 16384,
    label: str = "synthesis",
) -> str:
    """Call Claude via the Anthropic API."""
    client = anthropic.Anthropic(api_key=api_key, timeout=timeout)
    resolved_model = _resolve_model(model)

    logger.debug("Calling Anthropic API model=%s (%s)", resolved_model, label)

    kwargs: dict[str, object] = {
        "model": resolved_model,
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": user_prompt}],
    }
    if system_prompt.strip():
        kwargs["system"] = system_prompt

    response = client.messages.create(**kwargs)  # type: ignore[arg-type]

    text_parts: list[str] = []
    for block in response.content:
        if block.type == "text":
            text_parts.append(block.text)

    result = "".join(text_parts).strip()
    if not result:
        raise LLMError(f"Anthropic API returned empty response (label={label})")
    return result


# ---------------------------------------------------------------------------
# Internal: subprocess fallback
# ---------------------------------------------------------------------------


def _call_subprocess(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str | None = None,
    timeout: int = 120,
    label: str = "synthesis",
) -> str:
    """Call Claude via subprocess (``claude -p``) fallback."""
    cmd = ["claude", "-p"]
    if model:
        cmd.extend(["--model", model])

    full_prompt = f"{system_prompt}\n\n{user_prompt}"

    logger.debug("Calling Claude CLI subprocess (%s)", label)

    try:
        result = subprocess.run(
            cmd,
            input=full_prompt,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise LLMError(
            f"Claude CLI not found, is 'claude' on the PATH? (label={label})"
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise LLMError(f"Claude CLI timed out after {timeout}s (label={label})") from exc

    if result.returncode != 0:
        raise LLMError(
            f"Claude CLI failed (exit {result.returncode}, label={label}): {result.stderr[:500]}"
        )

    return result.stdout.strip()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def call_claude(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str | None = None,
    timeout: int = 120,
    max_tokens: int = 16384,
    label: str = "synthesis",
) -> str:
    """Call Claude and return the response text.

    Uses the Anthropic API when ANTHROPIC_API_KEY is set, otherwise the
    ``claude -p`` CLI.

    Args:
        system_prompt: System prompt for the LLM.
        user_prompt: User/content prompt.
        model: Optional model override (e.g. "sonnet", "haiku", "opus").
        timeout: Timeout in seconds.
        max_tokens: Response token budget (API backend only).
        label: Label for logging.

    Returns:
        The LLM response text (stripped).

    Raises:
        LLMError: On any failure.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY", "").strip()
    if api_key:
        try:
            return _call_anthropic_api(
                system_prompt,
                user_prompt,
                api_key=api_key,
                model=model,
                timeout=timeout,
                max_tokens=max_tokens,
                label=label,
            )
        except LLMError:
            raise
        except anthropic.APIError as exc:
            raise LLMError(f"Anthropic API failed (label={label}): {exc}") from exc

    return _call_subprocess(
        system_prompt,
        user_prompt,
        model=model,
        timeout=timeout,
        label=label,
    )


# ---------------------------------------------------------------------------
# JSON output helpers
# ---------------------------------------------------------------------------

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def strip_json_fences(text: str) -> str:
    """Strip markdown code fences from LLM JSON output.

    Handles Claude's tendency to wrap JSON in ```json ... ``` blocks.
    """
    text = text.strip()
    match = _JSON_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # Fall back to the earliest raw JSON delimiter
    candidates: list[tuple[int, str, str]] = []
    for start_char, end_char in (("{", "}"), ("[", "]")):
        pos = text.find(start_char)
        if pos != -1:
            candidates.append((pos, start_char, end_char))
    candidates.sort()

    for start, _start_char, end_char in candidates:
        end = text.rfind(end_char)
        if end > start:
            return text[start : end + 1]

    return text
