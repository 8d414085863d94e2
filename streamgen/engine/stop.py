"""Stop-sequence matching over accumulated generated text.

Stop sequences may span token boundaries arbitrarily, so everything here works
on text only. Two questions are answered per generated token:

- Does the text now contain a stop sequence? (exact match -> stop and truncate)
- Could the text be in the middle of typing one? (partial match -> hold back
  streaming until the next token resolves it)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence


@dataclass(frozen=True)
class StopHit:
    position: int
    word: str


@dataclass(frozen=True)
class StopCheck:
    """Result of evaluating stop sequences against the current text."""

    kind: Literal["none", "stop", "partial"]
    position: int | None = None
    word: str | None = None


_NO_MATCH = StopCheck(kind="none")


def find_partial_stop(text: str, stop: str) -> int | None:
    """Return where a suffix of `text` that is a strict prefix of `stop` begins.

    The longest such suffix wins. Returns None if no suffix of `text` could
    grow into `stop`.
    """
    if not text or not stop:
        return None
    for size in range(min(len(stop) - 1, len(text)), 0, -1):
        if text.endswith(stop[:size]):
            return len(text) - size
    return None


class StopMatcher:
    """Evaluates an ordered set of stop strings against generated text."""

    def __init__(self, stop_sequences: Sequence[str]) -> None:
        words: list[str] = []
        for s in stop_sequences:
            if s and s not in words:
                words.append(s)
        self._words = tuple(words)
        self._max_len = max((len(w) for w in self._words), default=0)

    @property
    def words(self) -> tuple[str, ...]:
        return self._words

    def __bool__(self) -> bool:
        return bool(self._words)

    def scan_start(self, sent_cursor: int) -> int:
        # A match can begin up to (longest stop - 1) chars before the last flush
        # point and still end in unsent text.
        return max(sent_cursor - max(self._max_len - 1, 0), 0)

    def find_stop(self, text: str, start: int = 0) -> StopHit | None:
        """Earliest literal occurrence at or after `start`.

        Ties at the same offset go to the stop string declared first.
        """
        best: StopHit | None = None
        for word in self._words:
            pos = text.find(word, start)
            if pos == -1:
                continue
            if best is None or pos < best.position:
                best = StopHit(position=pos, word=word)
        return best

    def find_partial(self, text: str) -> int | None:
        """Earliest start of a trailing partial match across all stop strings."""
        earliest: int | None = None
        for word in self._words:
            pos = find_partial_stop(text, word)
            if pos is not None and (earliest is None or pos < earliest):
                earliest = pos
        return earliest

    def check(self, text: str, sent_cursor: int = 0) -> StopCheck:
        if not self._words:
            return _NO_MATCH

        hit = self.find_stop(text, self.scan_start(sent_cursor))
        if hit is not None:
            return StopCheck(kind="stop", position=hit.position, word=hit.word)

        partial = self.find_partial(text)
        if partial is not None:
            return StopCheck(kind="partial", position=partial)

        return _NO_MATCH
