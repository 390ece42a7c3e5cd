"""
Input and output checks for the AI coach.

User text is screened for prompt-injection markers before it reaches
the model, and model output is screened before it reaches the user.
"""

import re

MAX_INPUT_LENGTH = 500

INJECTION_MARKERS = (
    "ignore previous instructions",
    "system prompt",
    "reveal your instructions",
    "disregard",
    "override",
    "###",
    "<system>",
    "</system>",
    "assistant:",
    "human:",
    "ai:",
    "chatgpt:",
    "openai:",
)

_BRACKETS = re.compile(r"[<>{}]")
_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)


class UnsafeInputError(ValueError):
    """Raised when user text looks like a prompt injection."""
    pass


class UnsafeOutputError(ValueError):
    """Raised when a model response fails output validation."""
    pass


def sanitize_input(text: str) -> str:
    """Screen and clean user-supplied text for the coaching prompt.

    Args:
        text: Raw user text

    Returns:
        Text truncated to 500 characters with <>{} removed

    Raises:
        UnsafeInputError: If the text contains an injection marker
    """
    if not text:
        return ""

    lowered = text.lower()
    for marker in INJECTION_MARKERS:
        if marker in lowered:
            raise UnsafeInputError("Invalid input detected")

    return _BRACKETS.sub("", text[:MAX_INPUT_LENGTH])


def validate_output(text: str) -> str:
    """Reject responses that talk about ignoring instructions."""
    lowered = text.lower()
    if "ignore" in lowered and "instructions" in lowered:
        raise UnsafeOutputError("Invalid AI response detected")
    return text


def sanitize_description(text: str) -> str:
    """Strip <script> blocks from a free-text help request."""
    return _SCRIPT_BLOCK.sub("", text)
