from types import SimpleNamespace
from unittest.mock import patch

import pytest

from app.models import ConversationProfile
from app.services.errors import ValidationError
from app.services.profile_service import (
    REDACTED,
    get_or_create_profile,
    redact_profile,
    set_gender,
    update_profile,
    validate_profile_update,
    validate_user_id,
)


class TestValidateUserId:
    def test_trims(self):
        assert validate_user_id("  42 ") == "42"

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            validate_user_id("   ")

    def test_non_string_rejected(self):
        with pytest.raises(ValidationError):
            validate_user_id(42)

    def test_too_long_rejected(self):
        with pytest.raises(ValidationError):
            validate_user_id("1" * 200)


class TestValidateProfileUpdate:
    def test_normalizes_values(self):
        result = validate_profile_update(
            {"gender": " Female ", "preferred_language": "UZ-Latn", "email": "Ali@Example.com", "ad_count": "3"}
        )
        assert result == {"gender": "female", "preferred_language": "uz-latn", "email": "ali@example.com", "ad_count": 3}

    def test_none_values_skipped(self):
        assert validate_profile_update({"display_name": None}) == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_profile_update({"current_step": "idle"})
        assert "current_step" in exc.value.message

    def test_payload_must_be_object(self):
        with pytest.raises(ValidationError):
            validate_profile_update(["display_name"])

    @pytest.mark.parametrize("value", [-1, True, "many", float("nan"), "inf", "Infinity", "1e999", float("inf")])
    def test_bad_ad_count(self, value):
        with pytest.raises(ValidationError) as exc:
            validate_profile_update({"ad_count": value})
        assert exc.value.field == "ad_count"

    def test_bad_gender(self):
        with pytest.raises(ValidationError):
            validate_profile_update({"gender": "robot"})

    def test_bad_language(self):
        with pytest.raises(ValidationError):
            validate_profile_update({"preferred_language": "u"})

    def test_bad_email(self):
        with pytest.raises(ValidationError):
            validate_profile_update({"email": "not-an-email"})

    def test_too_long(self):
        with pytest.raises(ValidationError) as exc:
            validate_profile_update({"display_name": "x" * 81})
        assert exc.value.field == "display_name"

    def test_non_string_text_field(self):
        with pytest.raises(ValidationError):
            validate_profile_update({"notes": 12})


class TestRedactProfile:
    def test_sensitive_fields_redacted(self):
        redacted = redact_profile(
            {"display_name": "Ali", "phone_number": "+998901234567", "email": "a@b.uz", "notes": "vip", "gender": None}
        )
        assert redacted["display_name"] == "Ali"
        assert redacted["phone_number"] == REDACTED
        assert redacted["email"] == REDACTED
        assert redacted["notes"] == REDACTED

    def test_missing_values_stay_missing(self):
        assert redact_profile({"phone_number": None})["phone_number"] is None

    def test_none(self):
        assert redact_profile(None) is None

    def test_input_not_mutated(self):
        data = {"phone_number": "+998901234567"}
        redact_profile(data)
        assert data["phone_number"] == "+998901234567"


class TestProfilePersistence:
    def test_creates_profile_with_defaults(self, db_session):
        db_session.query().filter().first.return_value = None

        profile = get_or_create_profile(db_session, "42")

        assert isinstance(profile, ConversationProfile)
        assert profile.current_step == "idle"
        assert profile.ad_count == 0
        db_session.add.assert_called_once_with(profile)

    @patch("app.services.profile_service.get_or_create_profile")
    def test_invalid_update_writes_nothing(self, mock_get, db_session):
        with pytest.raises(ValidationError):
            update_profile(db_session, "42", {"gender": "robot"})

        mock_get.assert_not_called()
        db_session.flush.assert_not_called()

    @patch("app.services.profile_service.get_or_create_profile")
    def test_update_applies_fields(self, mock_get, db_session):
        profile = SimpleNamespace(display_name=None, gender=None, updated_at=None)
        mock_get.return_value = profile

        update_profile(db_session, "42", {"display_name": " Ali ", "gender": "male"})

        assert profile.display_name == "Ali"
        assert profile.gender == "male"
        assert profile.updated_at is not None

    @patch("app.services.profile_service.get_or_create_profile")
    def test_set_gender_only_if_unknown(self, mock_get, db_session):
        profile = SimpleNamespace(gender="male", updated_at=None)
        mock_get.return_value = profile

        set_gender(db_session, "42", "female", only_if_unknown=True)

        assert profile.gender == "male"
