"""Keyword/regex intent heuristics for the order flow.

Everything here is pure: text in, tagged value out. The order flow only looks at
the returned variant, so a model-based classifier can replace ``classify_intent``
without touching the callers.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class ContactIntent:
    ad_id: int


@dataclass(frozen=True)
class VipIntent:
    pass


@dataclass(frozen=True)
class AdIntent:
    pass


@dataclass(frozen=True)
class Affirmative:
    pass


@dataclass(frozen=True)
class Negative:
    pass


@dataclass(frozen=True)
class NoIntent:
    pass


Intent = Union[ContactIntent, VipIntent, AdIntent, Affirmative, Negative, NoIntent]

AFFIRMATIVE_PATTERN = re.compile(r"\b(ha|xa|xo'p|mayli|olaman|ok)\b", re.IGNORECASE)
NEGATIVE_PATTERN = re.compile(r"\b(yoq|yo'q|kerak emas|bekor|istamayman)\b", re.IGNORECASE)
MEDIA_RESET_PATTERN = re.compile(r"(reset media|media reset|media tozalash|media tozalansin)", re.IGNORECASE)
FEMALE_PATTERN = re.compile(r"\b(ayol|qiz(?!iq))", re.IGNORECASE)
MALE_PATTERN = re.compile(r"\b(erkak|yigit)", re.IGNORECASE)

# Amount suffixes keep "#90 ming" from reading as an anketa id.
_NOT_AMOUNT = r"(?!\d)(?!\s*(?:ming|so'm|som))"
ANKETA_ID_PATTERNS = (
    re.compile(r"#\s*(\d{1,6})" + _NOT_AMOUNT, re.IGNORECASE),
    re.compile(r"\b(?:anketa|nomzod|id|raqam)\s*[:#]?\s*(\d{1,6})" + _NOT_AMOUNT, re.IGNORECASE),
    re.compile(r"\b(\d{1,6})\s*(?:anketa|nomzod)\b", re.IGNORECASE),
)
BARE_ID_PATTERN = re.compile(r"^\d{3,6}$")

CONTACT_WORDS = ("kontakt", "nomer", "raqam", "telefon", "tel", "aloqa", "lich", "lichka", "dm")
STRONG_CONTACT_WORDS = ("raqam", "kontakt", "nomer", "telefon", "tel", "aloqa", "lich")
PHOTO_WORDS = ("rasm", "surat", "foto")
SUBJECT_WORDS = ("anketa", "nomzod", "egasi", "id")
ANKETA_LABELS = ("anketa", "nomzod", "id", "raqam")
AD_WORDS = ("joyla", "chiqar", "tashla", "post", "kanal")
ANKETA_KEYWORDS = ("jins", "ism", "yosh", "manzil", "raqam", "telefon", "boy")


def is_affirmative(text: str) -> bool:
    return bool(AFFIRMATIVE_PATTERN.search(text or ""))


def is_negative(text: str) -> bool:
    return bool(NEGATIVE_PATTERN.search(text or ""))


def is_media_reset_command(text: str) -> bool:
    return bool(MEDIA_RESET_PATTERN.search(text or ""))


def parse_gender(text: str) -> Optional[str]:
    if FEMALE_PATTERN.search(text or ""):
        return "female"
    if MALE_PATTERN.search(text or ""):
        return "male"
    return None


def is_likely_anketa(text: str) -> bool:
    """At least three "label: value" lines and two known anketa labels."""
    if not text:
        return False
    normalized = text.lower()
    labelled_lines = [line for line in re.split(r"\r?\n", text) if ":" in line]
    keyword_hits = sum(1 for word in ANKETA_KEYWORDS if word in normalized)
    return len(labelled_lines) >= 3 and keyword_hits >= 2


def is_bare_anketa_id(text: str) -> bool:
    return bool(BARE_ID_PATTERN.match((text or "").strip()))


def extract_anketa_id(text: str) -> Optional[int]:
    for pattern in ANKETA_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    if is_bare_anketa_id(text):
        return int(text.strip())
    return None


def _has_contact_keyword(normalized: str) -> bool:
    if any(word in normalized for word in CONTACT_WORDS):
        return True
    has_photo = any(word in normalized for word in PHOTO_WORDS)
    has_subject = any(word in normalized for word in SUBJECT_WORDS)
    return has_photo and has_subject


def parse_contact_intent(text: str) -> Optional[ContactIntent]:
    if not text or is_likely_anketa(text):
        return None

    ad_id = extract_anketa_id(text)
    if ad_id is None:
        return None

    normalized = text.lower()
    if (
        _has_contact_keyword(normalized)
        or any(label in normalized for label in ANKETA_LABELS)
        or is_bare_anketa_id(text)
        or "#" in text
    ):
        return ContactIntent(ad_id=ad_id)
    return None


def is_vip_intent(text: str) -> bool:
    lowered = (text or "").lower()
    return "vip" in lowered and ("kanal" in lowered or "obuna" in lowered)


def is_ad_intent(text: str) -> bool:
    lowered = (text or "").lower()
    if re.search(r"(e'lon|elon|reklama)", lowered):
        return True
    if "anketa" not in lowered:
        return False
    if any(word in lowered for word in STRONG_CONTACT_WORDS):
        return False
    return any(word in lowered for word in AD_WORDS)


def classify_intent(text: str, expecting_answer: bool = False) -> Intent:
    """Classify an order-flow message.

    When the bot has just asked a yes/no question (``expecting_answer``), a
    yes/no answer wins over product keywords; otherwise product intents win.
    """
    text = (text or "").strip()
    if not text:
        return NoIntent()

    if expecting_answer:
        if is_affirmative(text):
            return Affirmative()
        if is_negative(text):
            return Negative()

    contact = parse_contact_intent(text)
    if contact:
        return contact
    if is_vip_intent(text):
        return VipIntent()
    if is_ad_intent(text):
        return AdIntent()

    if is_affirmative(text):
        return Affirmative()
    if is_negative(text):
        return Negative()
    return NoIntent()
