from pydantic import BaseModel
from typing import Optional
from enum import Enum

class UserRole(str, Enum):
    """Platform roles"""
    MASTER = "master"
    EMPLOYEE = "employee"
    PARTNER = "partner"
    TRAVELER = "traveler"

class Identity(BaseModel):
    """Authenticated caller as resolved by the identity provider"""
    user_id: str
    role: UserRole
    email: Optional[str] = None
    
    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.MASTER, UserRole.EMPLOYEE)
    
    def owns_partner(self, partner_id: str) -> bool:
        return self.role == UserRole.PARTNER and self.user_id == partner_id
    
    def matches_email(self, email: Optional[str]) -> bool:
        if not self.email or not email:
            return False
        return self.email.strip().lower() == email.strip().lower()
