"""Quote-aware paragraph formatting for generated Chinese prose.

Sentence-ending punctuation starts a new indented paragraph, except inside
quoted dialogue, which is never broken. The quote and punctuation sets are
data on `NormalizerConfig`; the automaton only knows the roles they play.

`normalize_prose` is total: empty input and unmatched quotes are fine. An
unmatched left quote keeps the automaton "in quote" until the end of input,
so the remainder stays one paragraph.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


_EXCESS_BREAKS = re.compile(r"\n{3,}")
_OUTER_TRIM = "\n\r\t "


@dataclass(frozen=True, slots=True)
class NormalizerConfig:
    left_quotes: str = "“‘「『"
    right_quotes: str = "”’」』"
    end_marks: str = "。？！"
    # A right quote followed by one of these keeps its line open.
    trailing_punctuation: str = "。？！，、；：…—"
    ellipsis: str = "…"
    indent: str = "　　"


DEFAULT_CONFIG = NormalizerConfig()


def _next_non_space(text: str, start: int) -> int:
    """Index of the first non-whitespace character at or after `start`."""
    j = start
    while j < len(text) and text[j].isspace():
        j += 1
    return j


def normalize_prose(text: str, config: NormalizerConfig | None = None) -> str:
    """Return `text` split into indented paragraphs at sentence boundaries."""
    if not text:
        return ""
    cfg = config or DEFAULT_CONFIG
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    lines: list[str] = []
    current: list[str] = []
    in_quote = False

    def commit() -> None:
        line = "".join(current).strip()
        current.clear()
        if line:
            lines.append(cfg.indent + line)

    def break_unless_quote_follows(i: int) -> int:
        # Returns the index of the last consumed character.
        j = _next_non_space(text, i + 1)
        if j < len(text) and text[j] in cfg.right_quotes:
            # Drop the gap so the closing quote stays on this sentence's line.
            return j - 1
        commit()
        return i

    i = 0
    n = len(text)
    while i < n:
        char = text[i]
        if char in cfg.left_quotes:
            in_quote = True
            current.append(char)
        elif char in cfg.right_quotes:
            in_quote = False
            current.append(char)
            next_char = text[i + 1] if i + 1 < n else ""
            if not next_char or next_char not in cfg.trailing_punctuation:
                commit()
        elif char in cfg.end_marks:
            current.append(char)
            if not in_quote:
                i = break_unless_quote_follows(i)
        elif cfg.ellipsis and char == cfg.ellipsis:
            # A run of ellipsis glyphs is one token.
            while i + 1 < n and text[i + 1] == cfg.ellipsis:
                current.append(char)
                i += 1
            current.append(char)
            if not in_quote:
                i = break_unless_quote_follows(i)
        elif char == "\n":
            if in_quote:
                current.append(" ")
            else:
                commit()
        else:
            current.append(char)
        i += 1

    commit()
    result = _EXCESS_BREAKS.sub("\n\n", "\n".join(lines))
    return result.strip(_OUTER_TRIM)


class StreamingNormalizer:
    """Keeps the cumulative body and its formatted rendering in step.

    Formatting is recomputed from the whole body on each append. The cost is
    linear per chunk, which is fine at token arrival rates.
    """

    def __init__(self, config: NormalizerConfig | None = None) -> None:
        self.config = config or DEFAULT_CONFIG
        self.body = ""
        self.formatted = ""

    def append(self, text: str) -> str:
        if text:
            self.body += text
            self.formatted = normalize_prose(self.body, self.config)
        return self.formatted
