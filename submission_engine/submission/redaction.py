"""
PII redaction for submission artifacts.

Strings are scrubbed pattern by pattern; dict keys that name a secret have
their whole value replaced.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

REDACTED = "[REDACTED]"

PII_PATTERNS: Dict[str, "re.Pattern[str]"] = {
    "email": re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
    "credit_card": re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "phone_parenthesized": re.compile(r"\(\d{3}\)\s?\d{3}[-.]?\d{4}\b"),
    "api_key": re.compile(r"\b(?:sk_live_|pk_live_|api_key[=:]\s*)[a-zA-Z0-9_-]+", re.I),
    "bearer_token": re.compile(r"Bearer\s+[a-zA-Z0-9._-]+", re.I),
}

SENSITIVE_KEY = re.compile(
    r"password|secret|token|api_?key|credential|credit_?card|private_?key"
    r"|(?:^|_)(?:auth|ssn|cvv|pin)(?:$|_)",
    re.I,
)


@dataclass
class RedactionResult:
    """Outcome of scrubbing one piece of content."""

    content: Any
    applied: bool = False
    leaks_count: int = 0
    patterns: List[str] = field(default_factory=list)

    def _merge(self, other: "RedactionResult") -> None:
        self.applied = self.applied or other.applied
        self.leaks_count += other.leaks_count
        for name in other.patterns:
            if name not in self.patterns:
                self.patterns.append(name)


def is_sensitive_key(name: str) -> bool:
    return bool(SENSITIVE_KEY.search(name))


def redact_text(text: str) -> RedactionResult:
    """Replace every PII match in ``text`` with the redaction placeholder."""
    result = RedactionResult(content=text)
    for name, pattern in PII_PATTERNS.items():
        scrubbed, count = pattern.subn(REDACTED, result.content)
        if count:
            result.content = scrubbed
            result.applied = True
            result.leaks_count += count
            result.patterns.append(name)
    return result


def redact(content: Any) -> RedactionResult:
    """Recursively scrub strings, lists and dicts. Other values pass through."""
    if isinstance(content, str):
        return redact_text(content)

    if isinstance(content, dict):
        result = RedactionResult(content={})
        for key, value in content.items():
            if is_sensitive_key(str(key)):
                result.content[key] = REDACTED
                result._merge(
                    RedactionResult(None, applied=True, leaks_count=1, patterns=["sensitive_key"])
                )
            else:
                child = redact(value)
                result.content[key] = child.content
                result._merge(child)
        return result

    if isinstance(content, (list, tuple)):
        result = RedactionResult(content=[])
        for value in content:
            child = redact(value)
            result.content.append(child.content)
            result._merge(child)
        return result

    return RedactionResult(content=content)


def detect_leaks(content: Any) -> Tuple[int, List[str]]:
    """Count PII matches and sensitive keys without modifying ``content``."""
    result = redact(content)
    return result.leaks_count, result.patterns


def content_bytes(content: Any) -> bytes:
    """Canonical byte form used for size and checksum."""
    if isinstance(content, bytes):
        return content
    if isinstance(content, str):
        return content.encode("utf-8")
    return json.dumps(content, sort_keys=True, default=str).encode("utf-8")
