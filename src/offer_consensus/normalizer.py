"""
Name normalization and fuzzy matching for products and stores.

Pure Python implementation - no external dependencies, no I/O.

Conventions:
- normalize("") == "" and similarity("", "") == 1.0
- similarity() compares *normalized* names, so unit tokens never count
  against two spellings of the same product.
"""

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

# Trailing quantity/unit token, e.g. "5kg", "2 litros", "12 unidades"
UNIT_SUFFIX_PATTERN = re.compile(
    r"\s+\d+\s*(kg|g|ml|l|un|unid|unidades?|litros?|gramas?|quilos?|pacotes?|pct|cx|caixas?)\s*$",
    re.IGNORECASE,
)
BARE_NUMBER_SUFFIX_PATTERN = re.compile(r"\s+\d+\s*$")
DASHED_UNIT_SUFFIX_PATTERN = re.compile(
    r"\s*-\s*\d+\s*(kg|g|ml|l|un|unid|unidades?|litros?|gramas?|quilos?|pacotes?|pct|cx|caixas?)\s*$",
    re.IGNORECASE,
)
PARENTHETICAL_QUANTITY_PATTERN = re.compile(r"\s*\(\d+.*?\)\s*$")
WHITESPACE_PATTERN = re.compile(r"\s+")


def strip_accents(text: str) -> str:
    """Decompose (NFD) and drop combining marks."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _strip_suffixes(text: str, patterns: list[re.Pattern]) -> str:
    # Repeat until stable so "arroz 5 1kg" and "arroz 1kg" normalize alike
    previous = None
    while previous != text:
        previous = text
        for pattern in patterns:
            text = pattern.sub("", text)
    return text


def normalize(name: str) -> str:
    """
    Canonical comparison key for a product or store name.

    Lowercases, trims, strips diacritics, removes a trailing
    quantity/unit token (or bare trailing integer) and collapses
    internal whitespace.

    >>> normalize("Arroz Integral 5kg")
    'arroz integral'
    >>> normalize("  Açúcar   Cristal 1 KG ")
    'acucar cristal'
    """
    if not name:
        return ""
    text = strip_accents(name.lower().strip())
    text = _strip_suffixes(text, [UNIT_SUFFIX_PATTERN, BARE_NUMBER_SUFFIX_PATTERN])
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def base_name(name: str) -> str:
    """
    Like normalize(), but also strips parenthetical quantity annotations
    such as "(500g)" and dash-separated units ("Leite - 1l").

    Used for grouping display variants, never for identity matching.
    """
    if not name:
        return ""
    text = strip_accents(name.lower().strip())
    text = _strip_suffixes(
        text,
        [
            PARENTHETICAL_QUANTITY_PATTERN,
            DASHED_UNIT_SUFFIX_PATTERN,
            UNIT_SUFFIX_PATTERN,
            BARE_NUMBER_SUFFIX_PATTERN,
        ],
    )
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def compact(text: str) -> str:
    """Lowercase, accent-free, with *all* whitespace removed."""
    if not text:
        return ""
    return WHITESPACE_PATTERN.sub("", strip_accents(text.lower()))


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j], current[j - 1], previous[j - 1]))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """
    Similarity ratio in [0, 1] between two names.

    1.0 when the normalized names are identical (including two empty
    names), otherwise 1 - distance(longer, shorter) / len(longer).
    """
    na = normalize(a)
    nb = normalize(b)
    if na == nb:
        return 1.0

    longer, shorter = (na, nb) if len(na) > len(nb) else (nb, na)
    if not longer:
        return 1.0
    return (len(longer) - levenshtein_distance(longer, shorter)) / len(longer)


def contains_either_direction(a: str, b: str) -> bool:
    """
    Loose "same thing" test used by the price-conflict advisory.

    True when the compacted names are equal or either contains the other,
    e.g. "Arroz Tipo 1" vs "Arroz".
    """
    ca = compact(a)
    cb = compact(b)
    if ca == cb:
        return True
    return ca in cb or cb in ca


# =============================================================================
# Variant grouping
# =============================================================================


@dataclass
class VariantGroup:
    """Products that share a normalized name."""

    normalized_name: str
    display_name: str
    main: Any
    variants: list[Any] = field(default_factory=list)

    @property
    def variant_count(self) -> int:
        return len(self.variants)

    def to_dict(self) -> dict[str, Any]:
        """API shape; members must provide ``to_dict()``."""
        return {
            "name": self.display_name,
            "normalizedName": self.normalized_name,
            "main": self.main.to_dict(),
            "variants": [v.to_dict() for v in self.variants],
            "variantCount": self.variant_count,
        }


def group_variants(products: Iterable[Any]) -> list[VariantGroup]:
    """
    Group products (anything with ``name`` and ``created_ts``) by
    normalized name. The most recently created product becomes the main
    entry of each group.
    """
    groups: dict[str, list[Any]] = {}
    for product in products:
        groups.setdefault(normalize(product.name), []).append(product)

    result = []
    for normalized_name, items in groups.items():
        ordered = sorted(items, key=lambda p: p.created_ts or "", reverse=True)
        main = ordered[0]
        result.append(
            VariantGroup(
                normalized_name=normalized_name,
                display_name=base_name(main.name) or main.name,
                main=main,
                variants=ordered,
            )
        )
    return result
