from typing import Optional

from pydantic import BaseModel


class ProfileResponse(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    preferred_language: Optional[str] = None
    role_use_case: Optional[str] = None
    timezone: Optional[str] = None
    gender: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    current_step: Optional[str] = None
    ad_count: int = 0
