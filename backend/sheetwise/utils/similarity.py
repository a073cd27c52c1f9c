"""String similarity used by duplicate detection.

Store names coming out of OCR differ in punctuation, casing and the
odd misread character, so names are normalised to lowercase
alphanumerics before comparing them by Levenshtein edit distance.
"""

from __future__ import annotations

import re

from rapidfuzz.distance import Levenshtein

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalise_text(value: str | None) -> str:
    """Lowercase and strip everything that is not ``[a-z0-9]``."""
    if not value:
        return ""
    return _NON_ALNUM.sub("", value.lower())


def string_similarity(a: str | None, b: str | None) -> float:
    """Return edit-distance similarity as a percentage in ``[0, 100]``.

    Either side missing yields 0. Two values that normalise to the same
    string (including both normalising to empty) yield 100.
    """
    if not a or not b:
        return 0.0
    na, nb = normalise_text(a), normalise_text(b)
    if na == nb:
        return 100.0
    max_len = max(len(na), len(nb))
    distance = Levenshtein.distance(na, nb)
    similarity = (max_len - distance) / max_len * 100
    return max(0.0, min(100.0, similarity))
