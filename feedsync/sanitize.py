from __future__ import annotations

import re


EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
EMAIL_LINE_PATTERN = re.compile(r"Email:\s*[^\n]*", re.IGNORECASE)
EXTRA_BLANK_LINES_PATTERN = re.compile(r"\n\s*\n\s*\n")


def remove_email_addresses(text: str | None) -> str:
    if not text:
        return ""
    sanitized = EMAIL_PATTERN.sub("[email removed]", text)
    sanitized = EMAIL_LINE_PATTERN.sub("", sanitized)
    sanitized = EXTRA_BLANK_LINES_PATTERN.sub("\n\n", sanitized)
    return sanitized.strip()


def sanitize_description(text: str | None) -> str:
    """Strip guest PII from remote free text before it is compared or stored."""
    return remove_email_addresses(text)
