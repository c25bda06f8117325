"""
Thematic pattern classification from free text.

Each pattern is a label plus a list of marker phrases. A pattern matches an
item when its markers occur at least PATTERN_MATCH_THRESHOLD times in total
across the item's text (overview, tagline, reviews, translated overviews).
Markers only match as whole words or phrases, case-insensitively.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .models import MediaMetadata

PATTERN_MATCH_THRESHOLD = 3

PATTERN_MARKERS: dict[str, tuple[str, ...]] = {
    "Unreliable Reality": (
        "reality", "dream", "memory", "consciousness", "perception",
        "truth", "illusion", "simulation", "alternate reality",
    ),
    "Corporate Dystopia": (
        "corporation", "company", "workplace", "corporate", "dystopia",
        "control", "surveillance", "bureaucracy", "system",
    ),
    "Existential Mystery": (
        "existence", "purpose", "meaning", "identity", "philosophical",
        "mystery", "truth", "quest", "journey", "discovery",
    ),
    "Hidden World": (
        "secret", "conspiracy", "underground", "beneath", "hidden",
        "truth", "discover", "uncover", "reveal", "world within",
    ),
    "Psychological Thriller": (
        "psychological", "mind", "paranoia", "suspense", "tension",
        "mental", "thriller", "sanity", "reality",
    ),
    "Complex Narrative": (
        "timeline", "parallel", "interconnected", "mystery box",
        "puzzle", "complex", "layers", "revelation",
    ),
}

PATTERN_LABELS = frozenset(PATTERN_MARKERS)


def _compile_markers(markers: Iterable[str]) -> list[re.Pattern]:
    # Phrase markers match with any run of whitespace between words
    compiled = []
    for marker in markers:
        words = [re.escape(w) for w in marker.split()]
        compiled.append(re.compile(r'\b' + r'\s+'.join(words) + r'\b', re.IGNORECASE))
    return compiled


_COMPILED_MARKERS: dict[str, list[re.Pattern]] = {
    label: _compile_markers(markers) for label, markers in PATTERN_MARKERS.items()
}


def count_markers(text: str, label: str) -> int:
    """Total occurrences of every marker of ``label`` in ``text``."""
    if not text:
        return 0
    return sum(len(regex.findall(text)) for regex in _COMPILED_MARKERS[label])


def classify_patterns(text: str | None) -> frozenset[str]:
    """Return the set of pattern labels whose markers occur often enough in ``text``."""
    if not text:
        return frozenset()
    return frozenset(
        label for label in PATTERN_MARKERS
        if count_markers(text, label) >= PATTERN_MATCH_THRESHOLD
    )


def pattern_text(metadata: "MediaMetadata") -> str:
    """Concatenate every text field of an item with single spaces, skipping absent ones."""
    parts = [metadata.overview, metadata.tagline, *metadata.reviews, *metadata.translated_overviews]
    return " ".join(p.strip() for p in parts if p and p.strip())


def classify_metadata(metadata: "MediaMetadata") -> frozenset[str]:
    return classify_patterns(pattern_text(metadata))
