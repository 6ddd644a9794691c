"""
Currency Resolver for Receipt Insights.

Determines the ISO 4217 currency of a loosely structured receipt together
with a human-readable evidence string and a confidence in [0, 1].

Resolution order:
1. Extracted currency + evidence -> trusted (0.9)
2. Extracted currency alone -> standardized (0.75)
3. Inference from item price formatting and from merchant/location text,
   reconciled into a single answer

Everything in this module is pure: identical input always produces the
identical CurrencyResult.

Usage:
    from src.services.currency import resolve_currency, standardize_currency_code

    result = resolve_currency({"merchant": "Tesco Express London", "items": []})
    result.currency     # "GBP"
    result.needs_review # False
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

# Confidence below this is surfaced to the user as "needs review"
REVIEW_THRESHOLD = 0.7

DEFAULT_CURRENCY = "USD"

MANUAL_EVIDENCE = "Manually set by user"
UPLOAD_OVERRIDE_EVIDENCE = "Manually specified during upload"


@dataclass(frozen=True)
class CurrencyResult:
    """Resolved currency with its supporting evidence."""

    currency: str
    evidence: str
    confidence: float

    @property
    def needs_review(self) -> bool:
        return self.confidence < REVIEW_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "currency": self.currency,
            "evidence": self.evidence,
            "confidence": self.confidence,
            "needs_review": self.needs_review,
        }


# ============================================
# Standardization
# ============================================

VALID_CURRENCY_CODES: frozenset[str] = frozenset({
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR", "KRW",
    "BRL", "MXN", "SGD", "THB", "RUB", "ZAR", "HKD", "SEK", "NOK", "DKK",
    "PLN", "TRY", "NZD", "AED", "SAR", "ILS",
})

_CURRENCY_ALIASES: dict[str, str] = {
    # US dollar
    "$": "USD",
    "USD": "USD",
    "DOLLAR": "USD",
    "DOLLARS": "USD",
    "US": "USD",
    "USDOLLAR": "USD",
    "USDOLLARS": "USD",
    # Canadian dollar
    "CAD": "CAD",
    "CANADIANDOLLAR": "CAD",
    "CANADIANDOLLARS": "CAD",
    # Australian dollar
    "AUD": "AUD",
    "AUSTRALIANDOLLAR": "AUD",
    "AUSTRALIANDOLLARS": "AUD",
    # Euro
    "€": "EUR",
    "EUR": "EUR",
    "EURO": "EUR",
    "EUROS": "EUR",
    # British pound
    "£": "GBP",
    "GBP": "GBP",
    "POUND": "GBP",
    "POUNDS": "GBP",
    "POUNDSTERLING": "GBP",
    # Japanese yen
    "¥": "JPY",
    "JPY": "JPY",
    "YEN": "JPY",
    # Chinese yuan
    "CNY": "CNY",
    "YUAN": "CNY",
    "RMB": "CNY",
    # Indian rupee
    "₹": "INR",
    "INR": "INR",
    "RUPEE": "INR",
    "RUPEES": "INR",
    # South Korean won
    "₩": "KRW",
    "KRW": "KRW",
    "WON": "KRW",
    # Swiss franc
    "CHF": "CHF",
    "FRANC": "CHF",
    "FRANCS": "CHF",
    # Brazilian real
    "BRL": "BRL",
    "REAL": "BRL",
    "REAIS": "BRL",
    "R$": "BRL",
    # Mexican peso
    "MXN": "MXN",
    "PESO": "MXN",
    "PESOS": "MXN",
    # Singapore dollar
    "SGD": "SGD",
    # Thai baht
    "฿": "THB",
    "THB": "THB",
    "BAHT": "THB",
    # Russian ruble
    "₽": "RUB",
    "RUB": "RUB",
    "RUBLE": "RUB",
    "RUBLES": "RUB",
}

# Checked in order when the cleaned token is not a known alias
_EMBEDDED_SYMBOLS: tuple[tuple[str, str], ...] = (
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("₩", "KRW"),
    ("฿", "THB"),
    ("₽", "RUB"),
)

_NON_CURRENCY_CHARS = re.compile(r"[^A-Za-z$€£¥₹₽₩฿₫₴₸₺₼₾]")


def standardize_currency_code(raw: object) -> str:
    """
    Normalize a raw currency token to a canonical 3-letter code.

    Accepts symbols ("$", "€", "R$"), spelled-out names ("euros",
    "pound sterling") and ISO codes from the whitelist. Anything else,
    including non-string input, maps to USD.

    Args:
        raw: Raw currency token.

    Returns:
        ISO 4217 code.
    """
    if not isinstance(raw, str):
        return DEFAULT_CURRENCY

    cleaned = _NON_CURRENCY_CHARS.sub("", raw.strip()).upper()
    if not cleaned:
        return DEFAULT_CURRENCY

    if cleaned in _CURRENCY_ALIASES:
        return _CURRENCY_ALIASES[cleaned]

    for symbol, code in _EMBEDDED_SYMBOLS:
        if symbol in cleaned:
            return code

    if len(cleaned) == 3 and cleaned in VALID_CURRENCY_CODES:
        return cleaned

    return DEFAULT_CURRENCY


def is_valid_currency_code(code: object) -> bool:
    """True if ``code`` is an upper-case whitelisted ISO code."""
    return isinstance(code, str) and code in VALID_CURRENCY_CODES


# ============================================
# Price-format inference
# ============================================

_COMMA_DECIMAL = re.compile(r"\d+,\d{2}$")
_PERIOD_DECIMAL = re.compile(r"\d+\.\d{2}$")
_DIGITS_ONLY = re.compile(r"^\d+$")
_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class _Inference:
    currency: str
    confidence: float
    evidence: str


_NO_INFERENCE = _Inference(DEFAULT_CURRENCY, 0.0, "")


def _format_number(value: float | int) -> str:
    """Render numbers the way they appear on receipts: 8.0 -> "8", 12.5 -> "12.5"."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _price_string(price: object) -> str | None:
    if price is None:
        return None
    if isinstance(price, str):
        return price
    if isinstance(price, (int, float)):
        return _format_number(price)
    return str(price)


def _leading_number(text: str) -> float | None:
    match = _LEADING_NUMBER.match(text)
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def _item_price(item: object) -> object:
    if isinstance(item, Mapping):
        return item.get("price")
    return getattr(item, "price", None)


def infer_from_price_format(items: Sequence[Any] | None, total_amount: object = None) -> _Inference:
    """
    Infer a currency from how item prices are written.

    Args:
        items: Receipt items (dicts or objects with a ``price``).
        total_amount: Receipt total, used only when there are no items.

    Returns:
        Inference with currency, confidence and evidence.
    """
    if not items:
        if not total_amount:
            return _NO_INFERENCE
        total_text = (
            _format_number(total_amount)
            if isinstance(total_amount, (int, float))
            else str(total_amount)
        )
        total_value = _leading_number(total_text)
        if total_value is not None and total_value > 1000 and "." not in total_text:
            return _Inference(
                "JPY",
                0.7,
                f"Total amount {total_text} appears to be in a currency without decimals",
            )
        return _NO_INFERENCE

    comma_decimals = 0
    period_decimals = 0
    no_decimals = 0
    high_prices = 0
    low_prices = 0

    for item in items:
        price = _price_string(_item_price(item))
        if price is None:
            continue
        if _COMMA_DECIMAL.search(price):
            comma_decimals += 1
        if _PERIOD_DECIMAL.search(price):
            period_decimals += 1
        if _DIGITS_ONLY.match(price) and len(price) > 2:
            no_decimals += 1

        value = _leading_number(price.replace(",", ".", 1))
        if value is not None:
            if value > 500:
                high_prices += 1
            if value < 10:
                low_prices += 1

    item_count = len(items)

    if comma_decimals > period_decimals and comma_decimals > 0:
        return _Inference(
            "EUR",
            0.8,
            f"{comma_decimals} prices use comma as decimal separator (e.g., European format)",
        )

    if period_decimals > comma_decimals and period_decimals > 0:
        return _Inference(
            "USD",
            0.7,
            f"{period_decimals} prices use period as decimal separator (e.g., US/UK format)",
        )

    if no_decimals > 3 or (no_decimals > 0 and no_decimals == item_count):
        return _Inference("JPY", 0.8, f"{no_decimals} prices appear to have no decimal places")

    if high_prices > item_count / 2 and high_prices > 2:
        return _Inference("JPY", 0.7, f"{high_prices} prices have relatively high numeric values")

    if low_prices > item_count / 2 and (period_decimals > 0 or comma_decimals > 0):
        currency = "GBP" if period_decimals > comma_decimals else "EUR"
        return _Inference(currency, 0.5, "Most prices are low values with decimal places")

    return _Inference(DEFAULT_CURRENCY, 0.3, "Inconclusive price formatting patterns")


# ============================================
# Merchant / location inference
# ============================================

_PatternTable = tuple[tuple[tuple[str, ...], str, float], ...]

CURRENCY_MENTIONS: _PatternTable = (
    (("usd", "us dollar", "us $", "u.s. dollar"), "USD", 0.9),
    (("eur", "euro", "€"), "EUR", 0.9),
    (("gbp", "pound sterling", "british pound", "£"), "GBP", 0.9),
    (("jpy", "yen", "¥"), "JPY", 0.9),
    (("cny", "rmb", "yuan", "chinese yuan"), "CNY", 0.9),
    (("cad", "canadian dollar", "can$"), "CAD", 0.9),
    (("aud", "australian dollar", "a$"), "AUD", 0.9),
    (("inr", "rupee", "₹"), "INR", 0.9),
    (("krw", "won", "₩"), "KRW", 0.9),
)

LOCATION_INDICATORS: _PatternTable = (
    (
        (
            "usa", "united states", "america", "us", "new york", "california",
            "texas", "chicago", "los angeles", "san francisco", "las vegas",
            "miami", "washington",
        ),
        "USD",
        0.8,
    ),
    (("canada", "toronto", "montreal", "vancouver", "calgary", "ottawa"), "CAD", 0.8),
    (
        (
            "uk", "united kingdom", "britain", "england", "london", "manchester",
            "liverpool", "glasgow", "edinburgh",
        ),
        "GBP",
        0.8,
    ),
    (("japan", "tokyo", "osaka", "kyoto", "yokohama", "sapporo"), "JPY", 0.8),
    (("china", "beijing", "shanghai", "shenzhen", "guangzhou"), "CNY", 0.8),
    (
        (
            "euro", "germany", "france", "italy", "spain", "berlin", "paris",
            "rome", "madrid", "amsterdam", "brussels",
        ),
        "EUR",
        0.8,
    ),
    (("india", "mumbai", "delhi", "bangalore", "hyderabad", "chennai"), "INR", 0.8),
    (("korea", "south korea", "seoul", "busan"), "KRW", 0.8),
    (("australia", "sydney", "melbourne", "brisbane", "perth"), "AUD", 0.8),
    (("brazil", "rio", "são paulo", "brasilia"), "BRL", 0.8),
    (("mexico", "mexico city", "cancun", "guadalajara"), "MXN", 0.7),
    (("thailand", "bangkok", "phuket", "chiang mai"), "THB", 0.7),
    (("singapore",), "SGD", 0.8),
    (("hong kong",), "HKD", 0.8),
    (("switzerland", "zurich", "geneva"), "CHF", 0.8),
    (("russia", "moscow", "st petersburg"), "RUB", 0.7),
)

MERCHANT_CHAINS: _PatternTable = (
    (
        (
            "walmart", "target", "costco", "kroger", "walgreens", "cvs",
            "home depot", "lowe's", "best buy", "macy's", "dollar", "tj maxx",
            "marshalls", "staples", "office depot",
        ),
        "USD",
        0.75,
    ),
    (
        (
            "tesco", "sainsbury", "asda", "boots", "marks & spencer", "waitrose",
            "co-op", "greggs", "primark",
        ),
        "GBP",
        0.75,
    ),
    (
        ("carrefour", "auchan", "lidl", "aldi", "mediamarkt", "monoprix", "fnac", "leclerc"),
        "EUR",
        0.7,
    ),
    (
        (
            "lawson", "family mart", "seven eleven japan", "7-eleven japan",
            "uniqlo", "daiso", "don quijote",
        ),
        "JPY",
        0.75,
    ),
    (
        ("loblaws", "shoppers drug mart", "canadian tire", "tim hortons", "dollarama"),
        "CAD",
        0.75,
    ),
)


def _word_pattern(pattern: str) -> re.Pattern[str]:
    """Match ``pattern`` as a whole word; symbol edges need no boundary."""
    prefix = r"(?<![a-z0-9])" if pattern[0].isalnum() else ""
    suffix = r"(?![a-z0-9])" if pattern[-1].isalnum() else ""
    return re.compile(prefix + re.escape(pattern) + suffix)


def _compile_table(table: _PatternTable) -> tuple[tuple[tuple[str, re.Pattern[str]], ...], ...]:
    return tuple(
        tuple((pattern, _word_pattern(pattern)) for pattern in patterns)
        for patterns, _currency, _confidence in table
    )


_COMPILED_MENTIONS = _compile_table(CURRENCY_MENTIONS)
_COMPILED_LOCATIONS = _compile_table(LOCATION_INDICATORS)
_COMPILED_CHAINS = _compile_table(MERCHANT_CHAINS)


def _first_match(
    text: str,
    table: _PatternTable,
    compiled: tuple[tuple[tuple[str, re.Pattern[str]], ...], ...],
) -> tuple[str, str, float] | None:
    for (_patterns, currency, confidence), entries in zip(table, compiled, strict=True):
        for pattern, regex in entries:
            if regex.search(text):
                return pattern, currency, confidence
    return None


def infer_from_merchant(merchant: str | None, notes: str | None = None) -> _Inference:
    """
    Infer a currency from merchant name and receipt notes.

    Tables are checked in priority order (explicit currency mentions,
    locations, retail chains); the first match wins.
    """
    if not merchant and not notes:
        return _NO_INFERENCE

    text = f"{merchant or ''} {notes or ''}".lower()

    match = _first_match(text, CURRENCY_MENTIONS, _COMPILED_MENTIONS)
    if match:
        pattern, currency, confidence = match
        return _Inference(
            currency, confidence, f"Text contains explicit currency reference: '{pattern}'"
        )

    match = _first_match(text, LOCATION_INDICATORS, _COMPILED_LOCATIONS)
    if match:
        pattern, currency, confidence = match
        return _Inference(currency, confidence, f"Text contains location reference: '{pattern}'")

    match = _first_match(text, MERCHANT_CHAINS, _COMPILED_CHAINS)
    if match:
        pattern, currency, confidence = match
        return _Inference(
            currency,
            confidence,
            f"Merchant appears to be a chain store typically found in {currency} regions: '{pattern}'",
        )

    return _Inference(DEFAULT_CURRENCY, 0.2, "No clear location or merchant indicators found")


# ============================================
# Resolution
# ============================================

def resolve_currency(receipt: Mapping[str, Any]) -> CurrencyResult:
    """
    Resolve the currency of an extracted receipt.

    Args:
        receipt: Extraction output with optional ``currency``,
            ``currency_evidence``, ``items``, ``total_amount``, ``merchant``
            and ``notes`` keys.

    Returns:
        CurrencyResult (never raises for malformed input).
    """
    currency = receipt.get("currency") or None
    evidence = receipt.get("currency_evidence") or None

    if currency and evidence:
        return CurrencyResult(standardize_currency_code(currency), str(evidence), 0.9)

    if currency:
        return CurrencyResult(
            standardize_currency_code(currency), "Detected without explicit evidence", 0.75
        )

    items = receipt.get("items")
    if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
        items = None

    by_format = infer_from_price_format(items, receipt.get("total_amount"))
    by_merchant = infer_from_merchant(receipt.get("merchant"), receipt.get("notes"))

    if by_format.confidence > 0.7:
        return CurrencyResult(
            by_format.currency,
            f"Inferred from price formatting: {by_format.evidence}",
            by_format.confidence,
        )

    if by_merchant.confidence > 0.7:
        return CurrencyResult(
            by_merchant.currency,
            f"Inferred from merchant/location: {by_merchant.evidence}",
            by_merchant.confidence,
        )

    if by_format.confidence == 0 and by_merchant.confidence == 0:
        return CurrencyResult(DEFAULT_CURRENCY, "No currency indicators found", 0.0)

    if by_format.currency == by_merchant.currency:
        combined = min(0.8, (by_format.confidence + by_merchant.confidence) / 1.5)
        return CurrencyResult(
            by_format.currency,
            f"Multiple indicators suggest {by_format.currency}: "
            f"{by_format.evidence} and {by_merchant.evidence}",
            combined,
        )

    if by_format.confidence > by_merchant.confidence:
        return CurrencyResult(by_format.currency, by_format.evidence, by_format.confidence)
    return CurrencyResult(by_merchant.currency, by_merchant.evidence, by_merchant.confidence)


__all__ = [
    "CurrencyResult",
    "DEFAULT_CURRENCY",
    "MANUAL_EVIDENCE",
    "REVIEW_THRESHOLD",
    "UPLOAD_OVERRIDE_EVIDENCE",
    "VALID_CURRENCY_CODES",
    "infer_from_merchant",
    "infer_from_price_format",
    "is_valid_currency_code",
    "resolve_currency",
    "standardize_currency_code",
]
