"""
Prompt-injection mitigation for user-controlled text.

Lines that look like an attempt to re-instruct the model are dropped one by
one (the rest of the field survives), then the remainder is wrapped in
explicit <user_data> markers so the model can tell quoted data from
instructions even if a hostile line slipped through.
"""
import re
from typing import Optional

USER_DATA_OPEN = "<user_data>"
USER_DATA_CLOSE = "</user_data>"

SUSPICIOUS_PATTERNS = [
    re.compile(r"^ignore\b", re.IGNORECASE),
    re.compile(r"^system:", re.IGNORECASE),
    re.compile(r"^assistant:", re.IGNORECASE),
    re.compile(r"^<\|"),
    re.compile(r"^###\s*(system|instruction)", re.IGNORECASE),
    re.compile(r"^you are now", re.IGNORECASE),
    re.compile(r"^forget (all |your |previous )", re.IGNORECASE),
    re.compile(r"^disregard", re.IGNORECASE),
]

# user text must not be able to close the data block early
_DELIMITER_RE = re.compile(r"</?\s*user_data\s*>", re.IGNORECASE)


def is_suspicious(line: str) -> bool:
    stripped = line.strip()
    return any(pat.search(stripped) for pat in SUSPICIOUS_PATTERNS)


def sanitize_user_content(text: Optional[str]) -> str:
    if not text:
        return ""
    kept = [line for line in text.split("\n") if not is_suspicious(line)]
    return _DELIMITER_RE.sub("", "\n".join(kept))


def wrap_user_data(text: Optional[str], max_len: Optional[int] = None, fallback: str = "") -> str:
    sanitized = sanitize_user_content(text)
    if max_len is not None:
        sanitized = sanitized[:max_len]
    if not sanitized.strip():
        sanitized = fallback
    return f"{USER_DATA_OPEN}{sanitized}{USER_DATA_CLOSE}"
