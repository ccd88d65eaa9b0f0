"""
Input validation and sanitization for raw contribution payloads.

Payloads use the wire field names of the HTTP API (productName,
storeName, price, quantity, unit, city, state, userId). All rule
violations are collected; nothing short-circuits.
"""

import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .models import DEFAULT_UNIT

MAX_TEXT_LENGTH = 255
MIN_NAME_LENGTH = 2
PRICE_CEILING = 999_999
MIN_QUANTITY = 1
MAX_QUANTITY = 1000

UNSAFE_CHARS_PATTERN = re.compile(r"[<>\"'&]")

# Spam scoring
SPAM_THRESHOLD = 60
REPEATED_CHAR_PATTERN = re.compile(r"(.)\1{4,}")
URL_PATTERN = re.compile(r"https?://|www\.", re.IGNORECASE)
DIGIT_RUN_PATTERN = re.compile(r"\b\d{4,}\b")
UPPERCASE_PATTERN = re.compile(r"[A-Z]")
PROMOTIONAL_WORDS = ("gratis", "ganhe", "dinheiro", "promocao", "oferta", "desconto")


def sanitize_text(value: Any) -> str:
    """Trim, drop the characters < > \" ' & and truncate to 255 characters."""
    if not isinstance(value, str):
        return ""
    return UNSAFE_CHARS_PATTERN.sub("", value.strip())[:MAX_TEXT_LENGTH]


@dataclass
class SpamVerdict:
    """Advisory spam score for a piece of free text."""

    is_spam: bool
    confidence: int
    reasons: list[str] = field(default_factory=list)


def classify_spam(text: str) -> SpamVerdict:
    """
    Score free text with simple spam heuristics.

    +30 for a run of 5+ identical characters, +25 when more than 70% of a
    string longer than 10 characters is uppercase, +40 for URL-like text,
    +35 for a 4+ digit run or an "@", +20 when more than two promotional
    words appear. Spam when the score exceeds 60; confidence caps at 100.
    """
    reasons = []
    score = 0

    if REPEATED_CHAR_PATTERN.search(text):
        reasons.append("Excessive character repetition")
        score += 30

    if text:
        caps_ratio = len(UPPERCASE_PATTERN.findall(text)) / len(text)
        if caps_ratio > 0.7 and len(text) > 10:
            reasons.append("Excessive uppercase")
            score += 25

    if URL_PATTERN.search(text):
        reasons.append("Contains URLs")
        score += 40

    if DIGIT_RUN_PATTERN.search(text) or "@" in text:
        reasons.append("Contains contact information")
        score += 35

    lowered = text.lower()
    promotional_count = sum(1 for word in PROMOTIONAL_WORDS if word in lowered)
    if promotional_count > 2:
        reasons.append("Too many promotional words")
        score += 20

    return SpamVerdict(is_spam=score > SPAM_THRESHOLD, confidence=min(score, 100), reasons=reasons)


@dataclass
class SanitizedContribution:
    """A payload that passed validation."""

    user_id: str
    product_name: str
    store_name: str
    price: float
    city: str
    state: str
    quantity: int | None = None
    unit: str = DEFAULT_UNIT
    spam_reasons: list[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    """Outcome of InputValidator.validate()."""

    ok: bool
    sanitized: SanitizedContribution | None = None
    errors: list[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


class InputValidator:
    """Sanitizes and validates raw contribution payloads."""

    def __init__(self, price_ceiling: float = PRICE_CEILING, spam_policy: str = "flag"):
        self.price_ceiling = price_ceiling
        self.spam_policy = spam_policy

    def validate(self, payload: Any) -> ValidationResult:
        if not isinstance(payload, dict):
            return ValidationResult(ok=False, errors=["Invalid contribution payload"])

        errors: list[str] = []

        product_name = sanitize_text(payload.get("productName"))
        store_name = sanitize_text(payload.get("storeName"))
        city = sanitize_text(payload.get("city"))
        state = sanitize_text(payload.get("state")).upper()
        unit = sanitize_text(payload.get("unit")) or DEFAULT_UNIT

        if len(product_name) < MIN_NAME_LENGTH:
            errors.append("Product name must be at least 2 characters")
        if len(store_name) < MIN_NAME_LENGTH:
            errors.append("Store name must be at least 2 characters")
        if len(city) < MIN_NAME_LENGTH:
            errors.append("City must be at least 2 characters")
        if len(state) != 2:
            errors.append("State must be a 2-letter code")

        price = payload.get("price")
        if not _is_number(price) or not math.isfinite(price):
            errors.append("Price must be a valid number greater than zero")
            price = None
        elif price <= 0:
            errors.append("Price must be a valid number greater than zero")
        elif price > self.price_ceiling:
            errors.append(f"Price cannot be greater than {self.price_ceiling:,.2f}")

        quantity = payload.get("quantity")
        if quantity is not None:
            if (
                not _is_number(quantity)
                or not math.isfinite(quantity)
                or quantity != int(quantity)
                or not MIN_QUANTITY <= quantity <= MAX_QUANTITY
            ):
                errors.append("Quantity must be a whole number between 1 and 1000")
                quantity = None
            else:
                quantity = int(quantity)

        user_id = payload.get("userId")
        if not isinstance(user_id, str) or not user_id.strip():
            errors.append("User ID is required")

        spam_reasons: list[str] = []
        for label, text in (("Product name", product_name), ("Store name", store_name)):
            verdict = classify_spam(text)
            if verdict.is_spam:
                spam_reasons.extend(f"{label}: {reason}" for reason in verdict.reasons)
                if self.spam_policy == "reject":
                    errors.append(f"{label} looks like spam")

        if errors:
            return ValidationResult(ok=False, errors=errors)

        return ValidationResult(
            ok=True,
            sanitized=SanitizedContribution(
                user_id=user_id.strip(),
                product_name=product_name,
                store_name=store_name,
                price=float(price),
                city=city,
                state=state,
                quantity=quantity,
                unit=unit,
                spam_reasons=spam_reasons,
            ),
        )
