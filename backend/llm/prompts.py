"""System prompts sent alongside completion requests."""

from __future__ import annotations

PRESERVE_PLACEHOLDERS_PROMPT = (
    "Some values in the user's text have been replaced with placeholders in "
    "the format {{FP_<TYPE>_<NN>}} — for example {{FP_EMAIL_01}} or "
    "{{FP_PHONE_02}}.\n"
    "Copy every placeholder you need into your answer EXACTLY as written, "
    "including the double braces. Never translate, reformat, merge or invent "
    "placeholders, and never guess the values they stand for."
)


def get_system_prompt(masked: bool) -> str | None:
    """Return the system instruction for a request, or ``None``."""
    if masked:
        return PRESERVE_PLACEHOLDERS_PROMPT
    return None
