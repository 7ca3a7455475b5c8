"""Split an embedded `$title$` span out of the body stream.

The writer prefixes a chapter with its title wrapped in a reserved
delimiter. The span may be cut across any number of chunks, so the filter is
a small per-character automaton rather than a regex over the full text.
"""

from __future__ import annotations

from enum import StrEnum


class TitleState(StrEnum):
    BEFORE_TITLE = "before_title"
    IN_TITLE = "in_title"
    AFTER_TITLE = "after_title"


class UnterminatedTitlePolicy(StrEnum):
    """What to do with a title span the stream never closes."""

    DISCARD = "discard"
    FLUSH_AS_BODY = "flush_as_body"


class TitleExtractionFilter:
    """Remove the first delimited span from the stream and expose it as `title`."""

    def __init__(
        self,
        delimiter: str = "$",
        policy: UnterminatedTitlePolicy = UnterminatedTitlePolicy.DISCARD,
    ) -> None:
        if len(delimiter) != 1:
            raise ValueError("delimiter must be a single character")
        self.delimiter = delimiter
        self.policy = UnterminatedTitlePolicy(policy)
        self.state = TitleState.BEFORE_TITLE
        self.buffer = ""
        self.title: str | None = None
        self._skip_newline = False

    @property
    def buffering(self) -> bool:
        return self.state is TitleState.IN_TITLE

    def feed(self, chunk: str) -> str:
        """Consume a chunk and return the characters that belong to the body."""
        if self.state is TitleState.AFTER_TITLE and not self._skip_newline:
            return chunk

        body: list[str] = []
        for char in chunk:
            if self.state is TitleState.AFTER_TITLE:
                # One newline right after the closing delimiter is layout.
                if self._skip_newline:
                    self._skip_newline = False
                    if char == "\n":
                        continue
                body.append(char)
            elif char == self.delimiter:
                if self.state is TitleState.BEFORE_TITLE:
                    self.state = TitleState.IN_TITLE
                    self.buffer = ""
                else:
                    self.title = self.buffer.strip()
                    self.buffer = ""
                    self.state = TitleState.AFTER_TITLE
                    self._skip_newline = True
            elif self.state is TitleState.IN_TITLE:
                self.buffer += char
            else:
                body.append(char)
        return "".join(body)

    def finish(self) -> str:
        """Close the stream; returns body text released by the policy, if any."""
        self._skip_newline = False
        if self.state is not TitleState.IN_TITLE:
            return ""
        pending, self.buffer = self.buffer, ""
        self.state = TitleState.AFTER_TITLE
        if self.policy is UnterminatedTitlePolicy.FLUSH_AS_BODY:
            return self.delimiter + pending
        return ""
