"""Tests for name normalization and fuzzy matching."""

from dataclasses import dataclass

import pytest

from offer_consensus.models import Product
from offer_consensus.normalizer import (
    base_name,
    compact,
    contains_either_direction,
    group_variants,
    levenshtein_distance,
    normalize,
    similarity,
)


class TestNormalize:
    """Test normalize()."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Arroz Integral 5kg", "arroz integral"),
            ("arroz integral 5 kg", "arroz integral"),
            ("  Açúcar   Cristal 1 KG ", "acucar cristal"),
            ("Leite Integral 1L", "leite integral"),
            ("Sabonete 12 unidades", "sabonete"),
            ("Biscoito 3 pacotes", "biscoito"),
            ("Café Pilão 500", "cafe pilao"),
            ("Feijão", "feijao"),
            ("Supermercado São João", "supermercado sao joao"),
        ],
    )
    def test_examples(self, raw, expected):
        assert normalize(raw) == expected

    def test_empty_string(self):
        assert normalize("") == ""

    def test_whitespace_only(self):
        assert normalize("   ") == ""

    def test_unit_in_middle_is_kept(self):
        """Only a trailing quantity token is stripped."""
        assert normalize("Arroz 5kg Tipo 1") == "arroz 5kg tipo"

    @pytest.mark.parametrize(
        "raw",
        [
            "Arroz Integral 5kg",
            "x 5 10",
            "Leite 2 1l",
            "Óleo de Soja 900 ml",
            "  ",
            "Pão 10",
            "CAIXA 2 cx",
        ],
    )
    def test_idempotent(self, raw):
        once = normalize(raw)
        assert normalize(once) == once


class TestBaseName:
    """Test base_name()."""

    def test_strips_parenthetical_quantity(self):
        assert base_name("Chocolate (200g)") == "chocolate"

    def test_strips_dashed_unit(self):
        assert base_name("Leite Integral - 1l") == "leite integral"

    def test_normalize_keeps_parenthetical(self):
        assert normalize("Chocolate (200g)") == "chocolate (200g)"


class TestSimilarity:
    """Test similarity() and levenshtein_distance()."""

    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("abc", "abc") == 0

    def test_reflexive(self):
        for name in ["Arroz", "Feijão Carioca 1kg", "a"]:
            assert similarity(name, name) == 1.0

    def test_two_empties(self):
        assert similarity("", "") == 1.0

    def test_unit_spelling_does_not_matter(self):
        assert similarity("Arroz Integral 5kg", "arroz integral 5 kg") == 1.0

    def test_ratio(self):
        # "arroz" vs "arros": one substitution over five characters
        assert similarity("arroz", "arros") == pytest.approx(0.8)

    def test_completely_different(self):
        assert similarity("abc", "xyz") == 0.0

    def test_symmetric(self):
        assert similarity("Feijão Preto", "Feijao") == similarity("Feijao", "Feijão Preto")


class TestContainsEitherDirection:
    """Test the loose matching strategy used for conflict advisories."""

    def test_containment(self):
        assert contains_either_direction("Arroz Tipo 1", "arroz")
        assert contains_either_direction("arroz", "Arroz Tipo 1")

    def test_ignores_whitespace_and_accents(self):
        assert contains_either_direction("Super Mercado Pão", "supermercadopao")
        assert compact("  São  Paulo ") == "saopaulo"

    def test_unrelated(self):
        assert not contains_either_direction("Feijão", "Arroz")


@dataclass
class _Product:
    name: str
    created_ts: str


class TestGroupVariants:
    """Test group_variants()."""

    def test_groups_by_normalized_name(self):
        products = [
            _Product("Arroz Integral 5kg", "2024-01-01T10:00:00"),
            _Product("arroz integral 1 kg", "2024-01-02T10:00:00"),
            _Product("Feijão Preto", "2024-01-01T09:00:00"),
        ]

        groups = {g.normalized_name: g for g in group_variants(products)}

        assert set(groups) == {"arroz integral", "feijao preto"}
        rice = groups["arroz integral"]
        assert rice.variant_count == 2
        assert rice.main.name == "arroz integral 1 kg"  # Most recent
        assert rice.display_name == "arroz integral"

    def test_empty(self):
        assert group_variants([]) == []

    def test_to_dict(self):
        products = [
            Product(id="p1", name="Leite Integral 1l", unit="l", created_ts="2024-01-01T10:00:00"),
            Product(id="p2", name="Leite Integral 2l", quantity=2, unit="l", created_ts="2024-01-03T10:00:00"),
        ]

        data = group_variants(products)[0].to_dict()

        assert data["name"] == "leite integral"
        assert data["normalizedName"] == "leite integral"
        assert data["main"]["id"] == "p2"
        assert [v["id"] for v in data["variants"]] == ["p2", "p1"]
        assert data["variantCount"] == 2
        assert data["main"] == {
            "id": "p2",
            "name": "Leite Integral 2l",
            "quantity": 2,
            "unit": "l",
            "category": "outros",
            "createdAt": "2024-01-03T10:00:00",
        }
