"""Batch number format rules.

A format string such as ``"HH:MM NNS11"`` describes the shape of a batch code
printed on a package. Recognised tokens are scanned left to right, two
character tokens first:

    HH   hour 00-23
    MM   minute 00-59
    N    one decimal digit
    S    one shift letter A, B or C
    " "  any run of whitespace (also none)
    :    a literal colon

Every other character must appear literally. Matching ignores case and the
whitespace around the candidate, and always covers the whole candidate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterator, List, Tuple


@dataclass(frozen=True)
class FormatRule:
    token: str
    pattern: str
    description: str


# Order matters: two-character tokens win over single characters.
FORMAT_RULES: Tuple[FormatRule, ...] = (
    FormatRule("HH", "(?:0[0-9]|1[0-9]|2[0-3])", "hour 00-23"),
    FormatRule("MM", "[0-5][0-9]", "minute 00-59"),
    FormatRule("N", "[0-9]", "one digit"),
    FormatRule("S", "[A-C]", "one letter A-C"),
    FormatRule(" ", r"\s*", "optional whitespace"),
    FormatRule(":", ":", "colon"),
)


def _tokenize(fmt: str) -> Iterator[Tuple[str, FormatRule | None]]:
    i = 0
    while i < len(fmt):
        for rule in FORMAT_RULES:
            if fmt.startswith(rule.token, i):
                yield rule.token, rule
                i += len(rule.token)
                break
        else:
            yield fmt[i], None
            i += 1


@lru_cache(maxsize=256)
def compile_format(fmt: str) -> re.Pattern:
    """Translate a batch format string into an anchored, case-insensitive regex."""
    parts = [rule.pattern if rule else re.escape(token) for token, rule in _tokenize(fmt)]
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE)


def matches(candidate: str, fmt: str) -> bool:
    """Return True when the trimmed candidate fully matches the batch format."""
    if not candidate or not fmt:
        return False
    return compile_format(fmt).fullmatch(candidate.strip()) is not None


def describe_format(fmt: str) -> List[str]:
    """Human readable breakdown of a format string, one entry per token."""
    out: List[str] = []
    for token, rule in _tokenize(fmt or ""):
        if rule is None:
            out.append(f"{token!r}: literal")
        else:
            out.append(f"{token!r}: {rule.description}")
    return out


__all__ = ["FORMAT_RULES", "FormatRule", "compile_format", "describe_format", "matches"]
