"""Sentence-boundary line breaking for serialized prose."""

from __future__ import annotations

import re
from collections.abc import Iterable

ABBREVIATIONS = (
    "Dr", "Mr", "Mrs", "Ms", "Prof", "Sr", "Jr", "St",
    "e.g", "i.e", "et al", "etc", "vs", "cf", "approx", "ca",
    "Fig", "Figs", "Eq", "Eqs", "Tab", "Sec", "Ch", "No", "Vol", "pp",
)

_PLACEHOLDER_RE = re.compile(r"\x00(\d+)\x00")

_PROTECTED = (
    re.compile(r"`+[^`]*`+"),                                          # inline code
    re.compile(r"(?<!\$)\$(?!\s)[^$\n]+?(?<!\s)\$(?!\$)"),                # inline math
    re.compile(r"https?://[^\s<>()\]]*[^\s<>().,;:!?\]]"),               # urls
    re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+"),                         # emails
    re.compile(r"\d+\.\d+"),                                             # decimals
    re.compile(r"\.{3}|…"),                                         # ellipses
    re.compile(r"(?<![\w.])[A-Z]\."),                                    # initials
)

# Sentence end: terminal punctuation (optionally closed by a quote, paren or
# bracket), whitespace, then something that can open a sentence. A break is
# never taken where the new line would read as a list item, heading or quote.
_BOUNDARY_RE = re.compile(
    r"(?:(?<=[.!?])|(?<=[.!?][\"')\]]))\s+"
    r"(?![*+-]\s|#|>|\d+[.)]\s)"
    r"(?=[A-Z\"'(\[*_@`$\x00“])"
)


def _abbreviation_re(extra: Iterable[str]) -> re.Pattern[str]:
    words = sorted({*ABBREVIATIONS, *(w.rstrip(".") for w in extra if w)}, key=len, reverse=True)
    alternatives = "|".join(re.escape(w) for w in words)
    return re.compile(rf"(?<![\w.])(?:{alternatives})\.")


_DEFAULT_ABBREVIATIONS_RE = _abbreviation_re(())


def split_sentences(text: str, extra_abbreviations: Iterable[str] = ()) -> list[str]:
    """Split prose into sentences, keeping protected spans intact."""
    if not text.strip():
        return []

    stash: list[str] = []

    def hide(match: re.Match[str]) -> str:
        stash.append(match.group(0))
        return f"\x00{len(stash) - 1}\x00"

    extra = tuple(extra_abbreviations)
    abbreviations = _abbreviation_re(extra) if extra else _DEFAULT_ABBREVIATIONS_RE

    masked = text
    for pattern in _PROTECTED:
        masked = pattern.sub(hide, masked)
    masked = abbreviations.sub(hide, masked)

    sentences = []
    for part in _BOUNDARY_RE.split(masked):
        part = _restore(part, stash).strip()
        if part:
            sentences.append(part)
    return sentences


def _restore(text: str, stash: list[str]) -> str:
    while _PLACEHOLDER_RE.search(text):
        text = _PLACEHOLDER_RE.sub(lambda m: stash[int(m.group(1))], text)
    return text
