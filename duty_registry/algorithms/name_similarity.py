"""
Duty Pharmacy Registry — Fuzzy Name Matching

Computes similarity scores between pharmacy names using Levenshtein
distance and token-sort ratio, with normalizations tuned for Turkish
pharmacy naming ("X Eczanesi", "Ecz. X", dotted/dotless i).

Dependencies:
    pip install rapidfuzz
"""

from __future__ import annotations

import re
import unicodedata

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein


# ---------------------------------------------------------------------------
# Turkish pharmacy naming noise
# ---------------------------------------------------------------------------

# Generic "pharmacy" words, stripped only when they trail the name
_TRAILING_GENERIC = [
    r"eczaneleri",
    r"eczanesi",
    r"eczanesı",
    r"eczane",
    r"ecz",
    r"pharmacy",
    r"pharmacie",
]

# Same words as a leading abbreviation ("Ecz. Yilmaz")
_LEADING_GENERIC = [
    r"ecz",
    r"eczane",
]

# Letters NFKD does not decompose
_TR_FOLD = str.maketrans(
    {
        "İ": "i",
        "I": "i",
        "ı": "i",
        "ß": "ss",
        "Ø": "o",
        "ø": "o",
    }
)

_TRAILING_RE = re.compile(
    r"(?:\s+(?:" + "|".join(_TRAILING_GENERIC) + r"))+$"
)
_LEADING_RE = re.compile(r"^(?:" + "|".join(_LEADING_GENERIC) + r")\s+")
_MULTI_SPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def fold_text(text: str | None) -> str:
    """
    Case-fold and strip diacritics without removing any words.

    Shared by name, address and district comparisons.
    """
    if not text:
        return ""

    text = text.translate(_TR_FOLD)
    text = unicodedata.normalize("NFKD", text)
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = text.casefold()
    text = _NON_ALNUM.sub(" ", text)
    return _MULTI_SPACE.sub(" ", text).strip()


def normalize_name(name: str | None) -> str:
    """
    Normalize a pharmacy name for identity comparison.

    Steps:
        1. Turkish-aware case folding (İ/I/ı → i)
        2. Unicode NFKD normalisation (strip accents: ç→c, ş→s, ğ→g, ö→o, ü→u)
        3. Remove non-alphanumeric characters
        4. Strip trailing generic suffixes ("eczanesi", "pharmacy", ...)
        5. Strip a leading "ecz" abbreviation
        6. Collapse whitespace and trim

    A name consisting only of generic words is kept as folded so that it
    never normalizes to the empty string.
    """
    folded = fold_text(name)
    if not folded:
        return ""

    text = _TRAILING_RE.sub("", " " + folded).strip()
    text = _LEADING_RE.sub("", text).strip()
    text = _MULTI_SPACE.sub(" ", text)

    return text or folded


# ---------------------------------------------------------------------------
# Scoring functions
# ---------------------------------------------------------------------------


def levenshtein_similarity(a: str, b: str) -> float:
    """
    Normalised Levenshtein similarity between two strings.

    Returns a value in [0.0, 1.0] where 1.0 means identical.
    """
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    max_len = max(len(a), len(b))
    dist = Levenshtein.distance(a, b)
    return 1.0 - (dist / max_len)


def edit_distance(a: str, b: str) -> int:
    """Raw Levenshtein edit distance on already-normalized names."""
    return Levenshtein.distance(a, b)


def token_sort_similarity(a: str, b: str) -> float:
    """
    Token-sort ratio from rapidfuzz.

    Handles word-order variations ("Yilmaz Merkez" vs "Merkez Yilmaz").

    Returns a value in [0.0, 1.0].
    """
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return fuzz.token_sort_ratio(a, b) / 100.0


def compute_name_similarity(
    name_a: str,
    name_b: str,
    *,
    levenshtein_weight: float = 0.5,
    token_sort_weight: float = 0.5,
) -> dict[str, float | int | str]:
    """
    Compute a blended name-similarity score between two pharmacy names.

    Token-set ratio is deliberately absent: "Yildiz" vs "Yildiz Merkez"
    would score 1.0 and merge two different pharmacies in the same
    district.

    Returns
    -------
    dict with keys:
        - name_a_normalized, name_b_normalized: the cleaned names
        - distance: raw edit distance between the cleaned names
        - levenshtein: float [0–1]
        - token_sort: float [0–1]
        - composite: weighted average float [0–1]
    """
    norm_a = normalize_name(name_a)
    norm_b = normalize_name(name_b)

    lev = levenshtein_similarity(norm_a, norm_b)
    tsort = token_sort_similarity(norm_a, norm_b)

    composite = levenshtein_weight * lev + token_sort_weight * tsort

    return {
        "name_a_normalized": norm_a,
        "name_b_normalized": norm_b,
        "distance": edit_distance(norm_a, norm_b),
        "levenshtein": round(lev, 4),
        "token_sort": round(tsort, 4),
        "composite": round(composite, 4),
    }


def quick_name_score(name_a: str, name_b: str) -> float:
    """Return only the composite name similarity score (0.0–1.0)."""
    return float(compute_name_similarity(name_a, name_b)["composite"])
