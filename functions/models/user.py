"""User profile model for Domux.

Profiles live in /users/{uid} next to the Firebase Auth account.
"""

from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class UserRole(str, Enum):
    USER = "user"
    COLLABORATOR = "collaborator"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class UserProfile(BaseModel):
    """Acting user, as shown on the certified PDF."""

    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    company_name: Optional[str] = Field(default=None, alias="companyName")
    role: UserRole = UserRole.USER
    disabled: bool = False

    class Config:
        populate_by_name = True
        use_enum_values = True

    @classmethod
    def from_firestore(cls, uid: str, data: Optional[Dict[str, Any]]) -> "UserProfile":
        return cls.model_validate({**(data or {}), "uid": uid})

    @property
    def label(self) -> str:
        """Name printed in the PDF header."""
        return self.company_name or self.display_name or self.email or self.uid
