import math
import re
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ConversationProfile
from app.services.errors import ValidationError

logger = get_logger("profile_service")

USER_ID_MAX_LENGTH = 128
DEFAULT_PROMPT_CONTEXT_FIELD_MAX_LENGTH = 120
REDACTED = "[REDACTED]"

# field -> (max_length or None, prompt_safe, sensitive)
PROFILE_FIELD_RULES: dict[str, tuple[Optional[int], bool, bool]] = {
    "display_name": (80, True, False),
    "preferred_language": (16, True, False),
    "role_use_case": (120, True, False),
    "timezone": (64, True, False),
    "gender": (16, True, False),
    "ad_count": (None, False, False),
    "current_step": (64, False, False),
    "phone_number": (32, False, True),
    "email": (120, False, True),
    "notes": (500, False, True),
}

ALLOWED_UPDATE_FIELDS = (
    "display_name",
    "preferred_language",
    "role_use_case",
    "timezone",
    "gender",
    "ad_count",
    "phone_number",
    "email",
    "notes",
)
PROMPT_SAFE_FIELDS = tuple(name for name, rule in PROFILE_FIELD_RULES.items() if rule[1])
SENSITIVE_FIELDS = tuple(name for name, rule in PROFILE_FIELD_RULES.items() if rule[2])

LANGUAGE_PATTERN = re.compile(r"^[a-z]{2,8}(?:-[a-z]{2,8})?$", re.IGNORECASE)


def validate_user_id(user_id: Any) -> str:
    normalized = user_id.strip() if isinstance(user_id, str) else ""
    if not normalized:
        raise ValidationError("userId is required", field="user_id")
    if len(normalized) > USER_ID_MAX_LENGTH:
        raise ValidationError("userId is too long", field="user_id")
    return normalized


def validate_profile_update(payload: Any) -> dict[str, Any]:
    """Normalize a profile update; raises ValidationError before anything is written."""
    if not isinstance(payload, dict):
        raise ValidationError("Profile payload must be an object")

    disallowed = [key for key in payload if key not in ALLOWED_UPDATE_FIELDS]
    if disallowed:
        raise ValidationError(f"Unsupported profile field(s): {', '.join(disallowed)}")

    output: dict[str, Any] = {}
    for field, value in payload.items():
        if value is None:
            continue

        if field == "ad_count":
            if isinstance(value, bool):
                raise ValidationError("ad_count must be a non-negative number", field=field)
            try:
                numeric = float(value)
            except (TypeError, ValueError):
                raise ValidationError("ad_count must be a non-negative number", field=field)
            if not math.isfinite(numeric) or numeric < 0:
                raise ValidationError("ad_count must be a non-negative number", field=field)
            output["ad_count"] = int(numeric)
            continue

        if not isinstance(value, str):
            raise ValidationError(f"{field} must be a string", field=field)

        trimmed = value.strip()
        max_length = PROFILE_FIELD_RULES[field][0]
        if max_length and len(trimmed) > max_length:
            raise ValidationError(f"{field} exceeds max length ({max_length})", field=field)

        if field == "preferred_language":
            if not LANGUAGE_PATTERN.match(trimmed):
                raise ValidationError("preferred_language has invalid format", field=field)
            trimmed = trimmed.lower()
        elif field == "gender":
            trimmed = trimmed.lower()
            if trimmed not in ("female", "male"):
                raise ValidationError("gender must be female or male", field=field)
        elif field == "email":
            if "@" not in trimmed:
                raise ValidationError("email has invalid format", field=field)
            trimmed = trimmed.lower()

        output[field] = trimmed

    return output


def redact_profile(data: Optional[dict]) -> Optional[dict]:
    if data is None:
        return None
    output = dict(data)
    for field in SENSITIVE_FIELDS:
        if output.get(field) is not None:
            output[field] = REDACTED
    return output


def profile_to_dict(profile: ConversationProfile) -> dict:
    return {
        "user_id": profile.user_id,
        "display_name": profile.display_name,
        "preferred_language": profile.preferred_language,
        "role_use_case": profile.role_use_case,
        "timezone": profile.timezone,
        "gender": profile.gender,
        "phone_number": profile.phone_number,
        "email": profile.email,
        "notes": profile.notes,
        "current_step": profile.current_step,
        "ad_count": profile.ad_count,
    }


def get_profile(db: Session, user_id: str) -> Optional[ConversationProfile]:
    return db.query(ConversationProfile).filter(ConversationProfile.user_id == user_id).first()


def get_or_create_profile(db: Session, user_id: str) -> ConversationProfile:
    """Find the profile or lazily create it with defaults."""
    profile = get_profile(db, user_id)
    if not profile:
        now = datetime.now(timezone.utc)
        profile = ConversationProfile(
            user_id=user_id,
            preferred_language="uz",
            current_step="idle",
            ad_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(profile)
        db.flush()
    return profile


def update_profile(db: Session, user_id: str, payload: Any) -> ConversationProfile:
    user_id = validate_user_id(user_id)
    changes = validate_profile_update(payload)

    profile = get_or_create_profile(db, user_id)
    for field, value in changes.items():
        setattr(profile, field, value)
    profile.updated_at = datetime.now(timezone.utc)
    db.flush()

    logger.info(
        "Profile updated",
        extra={"context": {"user_id": user_id, "fields": sorted(changes)}},
    )
    return profile


def set_gender(db: Session, user_id: str, gender: str, only_if_unknown: bool = False) -> ConversationProfile:
    profile = get_or_create_profile(db, user_id)
    if only_if_unknown and profile.gender:
        return profile
    profile.gender = gender
    profile.updated_at = datetime.now(timezone.utc)
    db.flush()
    return profile


def increment_ad_count(db: Session, user_id: str) -> int:
    profile = get_or_create_profile(db, user_id)
    profile.ad_count = (profile.ad_count or 0) + 1
    profile.updated_at = datetime.now(timezone.utc)
    db.flush()
    return profile.ad_count
