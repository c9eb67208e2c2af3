"""Normalization helpers for product codes, titles and performer names.

Everything here is pure: no database access, no logging. Invalid input never
raises; it yields ``None`` (codes) or an empty string (names, titles).
"""

from __future__ import annotations

import re
import unicodedata
from functools import lru_cache

import pykakasi

from catalog_identity.config import SOURCE_PRIORITIES

# ---------------------------------------------------------------------------
# Product codes
# ---------------------------------------------------------------------------

# FANZA-style label tag: "h_1234abc00123", "h_086abc00123"
UNDERSCORE_TAG_RE = re.compile(r"^[A-Z]+_\d*")

# Source-issued numeric tag separated from the code: "5016:ABC123", "0042_ABC123"
NUMERIC_TAG_RE = re.compile(r"^\d+[_:]")

# Already hyphenated: "SSIS-865", "300MIUM-1359"
HYPHENATED_RE = re.compile(r"^(\d{0,4}[A-Z]{2,10})-(\d{1,6})$")

# Three-digit prefix carrying a leading "1": "1300MIUM01359" -> 300MIUM-1359.
# The prefix proper never starts with 0, so "1000GIRI" keeps its "1".
LEADING_ONE_RE = re.compile(r"^1([1-9]\d{2})([A-Z]{2,10})(\d{2,6})$")
LEADING_ONE_PREFIX_RE = re.compile(r"^1(?=[1-9]\d{2}[A-Z])")

# Digit prefix, no hyphen: "300MIUM01359"
DIGIT_PREFIXED_RE = re.compile(r"^(\d{2,4})([A-Z]{2,10})(\d{2,6})$")

# Single leading digit used by some sources: "1SDMU00123" -> SDMU-123
SINGLE_DIGIT_RE = re.compile(r"^\d([A-Z]{2,10})(\d{2,6})$")

# Letters then number: "SSIS00865"
LETTERS_RE = re.compile(r"^([A-Z]{2,10})(\d{2,6})$")

# Bracketed code inside a title: "[SSIS-865] ..." or "【SSIS-865】..."
TITLE_CODE_RE = re.compile(r"[\[【]\s*(\d{0,4}[A-Za-z]{2,10}-?\d{2,6})\s*[\]】]")

# Digit label prefix used by search variants: "200GANA-1040" -> "GANA-1040"
LABEL_PREFIX_RE = re.compile(r"^\d+(?=[A-Z])")

# Leading segment of a normalized id naming its source: "fanza-ssis00865"
KNOWN_SOURCE_PREFIXES = frozenset(name.lower() for name in SOURCE_PRIORITIES)


def _strip_number(number: str) -> str:
    return number.lstrip("0") or "0"


def normalize_product_code(raw: str | None) -> str | None:
    """Normalize a maker product code to ``PREFIX-NUMBER``.

    Noise prefixes are stripped first (an underscore-delimited label tag, a
    separated numeric tag), then the remainder is matched against the known
    code shapes. Leading zeros in the number are dropped.

    Args:
        raw: Code as supplied by a source (any case, any width).

    Returns:
        Canonical code such as ``"SSIS-865"``, or None if nothing matches.
    """
    if not isinstance(raw, str):
        return None
    code = unicodedata.normalize("NFKC", raw)
    code = re.sub(r"\s+", "", code).upper()
    if not code:
        return None

    code = UNDERSCORE_TAG_RE.sub("", code, count=1)
    code = NUMERIC_TAG_RE.sub("", code, count=1)

    m = HYPHENATED_RE.match(code)
    if m:
        prefix = LEADING_ONE_PREFIX_RE.sub("", m.group(1), count=1)
        return f"{prefix}-{_strip_number(m.group(2))}"

    m = LEADING_ONE_RE.match(code)
    if m:
        return f"{m.group(1)}{m.group(2)}-{_strip_number(m.group(3))}"

    m = DIGIT_PREFIXED_RE.match(code)
    if m:
        return f"{m.group(1)}{m.group(2)}-{_strip_number(m.group(3))}"

    m = SINGLE_DIGIT_RE.match(code)
    if m:
        return f"{m.group(1)}-{_strip_number(m.group(2))}"

    m = LETTERS_RE.match(code)
    if m:
        return f"{m.group(1)}-{_strip_number(m.group(2))}"

    return None


def extract_title_code(title: str | None) -> str | None:
    """Return the normalized code embedded in a title as ``[CODE]``, if any."""
    if not title:
        return None
    m = TITLE_CODE_RE.search(unicodedata.normalize("NFKC", title))
    if not m:
        return None
    return normalize_product_code(m.group(1))


def code_from_normalized_id(normalized_id: str | None) -> str | None:
    """Derive a code from a normalized id such as ``fanza-ssis00865``."""
    if not normalized_id:
        return None
    head, sep, rest = normalized_id.partition("-")
    if sep and head.lower() in KNOWN_SOURCE_PREFIXES:
        return normalize_product_code(rest)
    code = normalize_product_code(normalized_id)
    if code is None and sep:
        code = normalize_product_code(rest)
    return code


def extract_and_normalize_code(
    maker_code: str | None, normalized_id: str | None, title: str | None
) -> str | None:
    """Return the best normalized code for a record.

    Tries, in order: the record's own maker code, its normalized id with the
    source segment stripped, and a bracketed ``[CODE]`` inside its title.
    """
    code = normalize_product_code(maker_code)
    if code:
        return code
    code = code_from_normalized_id(normalized_id)
    if code:
        return code
    return extract_title_code(title)


def lookup_key(code: str) -> str:
    """Collapse a code to the form stored in ``performer_lookup.product_code_normalized``."""
    return re.sub(r"[-_\s]", "", code).upper()


def generate_code_variants(normalized_id: str, original_code: str | None = None) -> list[str]:
    """Build the code spellings used to search lookup data for one product.

    Produces hyphenated and unhyphenated forms, with and without a digit
    label prefix (``200GANA-1040`` also yields ``GANA-1040``). Order is
    stable and duplicates are removed.
    """
    variants: list[str] = []
    for code in (normalize_product_code(original_code), code_from_normalized_id(normalized_id)):
        if code is None:
            continue
        unprefixed = LABEL_PREFIX_RE.sub("", code)
        for form in (code, unprefixed):
            variants.append(form)
            variants.append(form.replace("-", ""))
    return list(dict.fromkeys(variants))


# ---------------------------------------------------------------------------
# Titles and names
# ---------------------------------------------------------------------------

TITLE_PUNCTUATION_RE = re.compile(r"[！!？?「」『』【】（）()＆&～~・:：,，。.、\[\]]")
WHITESPACE_RE = re.compile(r"[\s　]+")
PERFORMER_SEPARATOR_RE = re.compile(r"[・･=＝]")
KANJI_RE = re.compile(r"[一-鿿々]")


def normalize_title(raw: str | None) -> str:
    """Strip whitespace and punctuation from a title and lower-case it."""
    if not raw:
        return ""
    title = WHITESPACE_RE.sub("", raw)
    title = TITLE_PUNCTUATION_RE.sub("", title)
    return title.lower()


def normalize_performer_name(raw: str | None) -> str:
    """Strip whitespace and name separators from a performer name and lower-case it."""
    if not raw:
        return ""
    name = WHITESPACE_RE.sub("", raw)
    name = PERFORMER_SEPARATOR_RE.sub("", name)
    return name.lower()


@lru_cache(maxsize=1)
def _kakasi() -> pykakasi.kakasi:
    return pykakasi.kakasi()


def generate_normalized_key(name: str | None) -> str:
    """Collapse a performer name to a script-independent dedup key.

    Width variants are folded (NFKC), whitespace and separators removed,
    katakana and kanji converted to their hiragana reading, Latin letters
    lower-cased. "山田花子" and "ヤマダ ハナコ" share a key.

    Two performers with the same key are dedup candidates; the key alone is
    not proof of identity. Homophones written with different kanji
    ("佐藤愛", "佐藤藍") share a key too, see ``kanji_spelling``.
    """
    if not name:
        return ""
    cleaned = unicodedata.normalize("NFKC", name)
    cleaned = normalize_performer_name(cleaned)
    cleaned = re.sub(r"[^\w぀-ヿ一-鿿]", "", cleaned)
    if not cleaned:
        return ""
    reading = "".join(item["hira"] for item in _kakasi().convert(cleaned))
    return reading.lower()


def kanji_spelling(name: str | None) -> str | None:
    """Width-folded, separator-free spelling of a name written with kanji.

    Returns None for names without kanji, whose written form cannot tell
    homophones apart.
    """
    if not name:
        return None
    cleaned = normalize_performer_name(unicodedata.normalize("NFKC", name))
    return cleaned if KANJI_RE.search(cleaned) else None


# ---------------------------------------------------------------------------
# Placeholder ("fake") names and name validity
# ---------------------------------------------------------------------------

# "ゆな 21歳 歯科助手"; 千歳 and 万歳 are ordinary words
JA_AGE_RE = re.compile(r"(?<![千万])歳")

# "Woman, 24, office worker", "Yuna (21)", "22 years old"
EN_AGE_RE = re.compile(
    r"(?:^|[\s,、(（])(?:1[89]|[2-9]\d)(?=$|[\s,、)）])|\d+\s*(?:years?\s*old|y/?o)\b",
    re.IGNORECASE,
)

PLACEHOLDER_MARKERS = frozenset(
    {
        "unpublished",
        "placeholder",
        "unknown performer",
        "非公開",
        "名前非公開",
        "仮名",
        "名無し",
    }
)
"""Substrings that mark a name as a stand-in for an unidentified performer."""


def is_fake_performer_name(name: str | None) -> bool:
    """Check whether a performer name is a placeholder label, not a person.

    Args:
        name: Performer display name.

    Returns:
        True for names carrying an age marker ("21歳", "Woman, 24, ...") or
        an explicit unpublished/placeholder marker.
    """
    if not name:
        return False
    text = unicodedata.normalize("NFKC", name)
    if JA_AGE_RE.search(text) or EN_AGE_RE.search(text):
        return True
    lowered = text.lower()
    return any(marker in lowered for marker in PLACEHOLDER_MARKERS)


VALID_NAME_RE = re.compile(r"^[぀-ゟ゠-ヿ一-龯\sA-Za-z・]+$")

EXACT_EXCLUDED_NAMES = frozenset({"素人", "ナンパ", "企画", "熟女", "人妻"})
"""Genre words that scrapers return in performer slots."""

EXCLUDED_NAME_TOKENS = (
    "AV",
    "動画",
    "サンプル",
    "無料",
    "高画質",
    "HD",
    "4K",
    "VR",
    "カテゴリ",
    "タグ",
    "ジャンル",
    "人気",
    "ランキング",
    "新着",
    "特集",
    "セール",
    "配信",
    "page",
    "Page",
    "PAGE",
    "next",
    "prev",
)


def is_valid_performer_name(name: str | None) -> bool:
    """Check whether a lookup-table name is plausible as a real performer."""
    if not name:
        return False
    name = name.strip()
    if len(name) < 2 or len(name) > 30:
        return False
    if not VALID_NAME_RE.match(name):
        return False
    if name in EXACT_EXCLUDED_NAMES:
        return False
    if any(token in name for token in EXCLUDED_NAME_TOKENS):
        return False
    return not is_fake_performer_name(name)
