"""Tag Scanner — incremental literal-tag matcher shared by every text tool-call dialect.

Invariants:
    - Literal text before the first position that could still start a tag is always
      released in the same call (never delayed past the chunk that made it unambiguous)
    - A tail that is a strict prefix of a known tag is held back, byte for byte, and
      released only once more input proves it is (or is not) a tag
    - Complete tags win over partial ones; among complete matches the longest tag wins
    - Only the ASCII tag markers are compared; everything else is an opaque code point
      sequence and passes through untouched

Design Decisions:
    - Pure and stateless: the caller owns the buffer, the scanner only classifies it
      (ADR: one state object per in-flight response, owned by the engine)
    - One scanner per parser state: a state only reacts to the tags that are meaningful
      in it, so markup-looking text inside a parameter value stays literal
"""

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one scan step.

    literal: text that is definitely not part of a tag
    tag:     the complete tag found right after `literal`, or None
    rest:    unconsumed input (after the tag, or the held-back partial tag)
    """
    literal: str
    tag: str | None
    rest: str

    @property
    def is_partial(self) -> bool:
        """True when `rest` is held back because it may still become a tag."""
        return self.tag is None and self.rest != ""


class TagScanner:
    """Finds known literal tags in an accumulating buffer."""

    def __init__(self, tags: Iterable[str]):
        unique = {t for t in tags if t}
        if not unique:
            raise ValueError("TagScanner needs at least one non-empty tag")
        self.tags: tuple[str, ...] = tuple(
            sorted(unique, key=len, reverse=True),
        )
        self._markers = frozenset(t[0] for t in self.tags)

    def scan(self, buffer: str) -> ScanResult:
        """Classify the buffer up to (and including) the first complete or partial tag."""
        pos = self._next_marker(buffer, 0)
        while pos != -1:
            tail = buffer[pos:]
            tag = self.match(tail)
            if tag is not None:
                return ScanResult(buffer[:pos], tag, tail[len(tag):])
            if self.is_partial(tail):
                return ScanResult(buffer[:pos], None, tail)
            pos = self._next_marker(buffer, pos + 1)
        return ScanResult(buffer, None, "")

    def drain(self, buffer: str) -> tuple[list[tuple[str, str]], str]:
        """Scan repeatedly until no complete tag remains.

        Returns (tokens, held): each token is ("literal", text) or ("tag", tag), and
        `held` is the partial-tag tail to prepend to the next chunk.
        """
        tokens: list[tuple[str, str]] = []
        rest = buffer
        while rest:
            result = self.scan(rest)
            if result.literal:
                tokens.append(("literal", result.literal))
            if result.tag is None:
                return tokens, result.rest
            tokens.append(("tag", result.tag))
            rest = result.rest
        return tokens, ""

    def match(self, text: str) -> str | None:
        """Return the longest known tag that `text` starts with."""
        for tag in self.tags:
            if text.startswith(tag):
                return tag
        return None

    def is_partial(self, text: str) -> bool:
        """True if `text` is a strict, non-empty prefix of some known tag."""
        if not text:
            return False
        return any(
            len(text) < len(tag) and tag.startswith(text) for tag in self.tags
        )

    def _next_marker(self, buffer: str, start: int) -> int:
        for i in range(start, len(buffer)):
            if buffer[i] in self._markers:
                return i
        return -1
