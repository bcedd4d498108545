"""Split text containing ANSI SGR escape sequences into styled spans."""

import re
from typing import List, NamedTuple, FrozenSet

SGR_PATTERN = re.compile(r"\x1b\[([0-9;,]*)m")
_PARAM_SPLIT = re.compile(r"[;,]")


class Span(NamedTuple):
    style_classes: FrozenSet[str]
    text: str


def _classes(params: str) -> FrozenSet[str]:
    codes = [int(p) for p in _PARAM_SPLIT.split(params) if p]
    # Anything before the last reset is cancelled by it
    if 0 in codes:
        codes = codes[len(codes) - codes[::-1].index(0):]
    return frozenset(f"ansi-{code}" for code in codes)


def segment(text: str) -> List[Span]:
    """Tokenize `text` into spans in original order.

    Every SGR sequence closes the open span and starts a new one, so
    styling never leaks backwards across a reset. Joining the `text` of
    all spans gives the input with the escape sequences removed.
    """
    spans: List[Span] = []
    classes: FrozenSet[str] = frozenset()
    pos = 0
    for match in SGR_PATTERN.finditer(text):
        if match.start() > pos:
            spans.append(Span(classes, text[pos:match.start()]))
        classes = _classes(match.group(1))
        pos = match.end()
    if pos < len(text):
        spans.append(Span(classes, text[pos:]))
    return spans
