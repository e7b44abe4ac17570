"""Turns free-text agent output into a closed-vocabulary decision.

Every vocabulary names a conservative default.  Missing tags, conflicting
tags, or unreadable output all resolve to that default, so the controller
never infers permission to proceed from absent data.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

MATCHED = "matched"
MISSING = "missing"
CONFLICT = "conflict"


@dataclass(frozen=True)
class Vocabulary:
    tag: str
    tokens: tuple[str, ...]
    default: str

    @property
    def name(self) -> str:
        return f"<{self.tag}>{'|'.join(self.tokens)}</{self.tag}>"


@dataclass(frozen=True)
class Signal:
    token: str
    resolution: str
    found: tuple[str, ...] = ()

    @property
    def defaulted(self) -> bool:
        return self.resolution != MATCHED

    def describe(self, vocabulary: Vocabulary) -> str:
        if self.resolution == MATCHED:
            return f"{self.token}"
        if self.resolution == CONFLICT:
            return (
                f"{self.token} (conflicting signals {', '.join(self.found)}; "
                f"expected exactly one of {vocabulary.name})"
            )
        return f"{self.token} (no clear signal; expected {vocabulary.name})"


REVIEW_SIGNALS = Vocabulary(tag="grandma", tokens=("CONTINUE", "PAUSE"), default="PAUSE")
SESSION_SIGNALS = Vocabulary(tag="session", tokens=("READY", "BLOCKED"), default="BLOCKED")
COMPLETION_SIGNALS = Vocabulary(tag="promise", tokens=("COMPLETE",), default="INCOMPLETE")


@lru_cache(maxsize=None)
def _signal_pattern(tag: str, tokens: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(token) for token in tokens)
    escaped_tag = re.escape(tag)
    return re.compile(
        rf"<\s*{escaped_tag}\s*>\s*({alternatives})\s*<\s*/\s*{escaped_tag}\s*>",
        re.DOTALL,
    )


def extract_signal(output_text: Any, vocabulary: Vocabulary) -> Signal:
    """Return the single recognised token, or the vocabulary's default.

    Total by construction: any input, including ``None`` or bytes, yields a
    ``Signal``.
    """
    if isinstance(output_text, bytes):
        text = output_text.decode("utf-8", errors="replace")
    elif output_text is None:
        text = ""
    else:
        text = str(output_text)

    pattern = _signal_pattern(vocabulary.tag, vocabulary.tokens)
    found: list[str] = []
    for match in pattern.finditer(text):
        token = match.group(1)
        if token not in found:
            found.append(token)

    if len(found) == 1:
        return Signal(token=found[0], resolution=MATCHED, found=tuple(found))
    if not found:
        return Signal(token=vocabulary.default, resolution=MISSING)
    return Signal(token=vocabulary.default, resolution=CONFLICT, found=tuple(found))
