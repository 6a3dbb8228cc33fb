from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.schemas.profile import ProfileResponse
from app.services.errors import ValidationError
from app.services.profile_service import get_profile, profile_to_dict, redact_profile, update_profile, validate_user_id

logger = get_logger("profiles_router")

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.get("/{user_id}", response_model=ProfileResponse)
def read_profile(user_id: str, db: Session = Depends(get_db)):
    try:
        user_id = validate_user_id(user_id)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    profile = get_profile(db, user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return ProfileResponse(**redact_profile(profile_to_dict(profile)))


@router.put("/{user_id}", response_model=ProfileResponse)
def write_profile(user_id: str, payload: Any = Body(...), db: Session = Depends(get_db)):
    """Partial update; unknown or malformed fields reject the whole request."""
    try:
        profile = update_profile(db, user_id, payload)
    except ValidationError as e:
        db.rollback()
        logger.info("Profile update rejected", extra={"context": {"user_id": user_id, "field": e.field}})
        raise HTTPException(status_code=400, detail=e.message)

    db.commit()
    return ProfileResponse(**redact_profile(profile_to_dict(profile)))
