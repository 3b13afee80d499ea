from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict

Role = Literal["user", "admin"]


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    display_name: Optional[str] = None
    email: Optional[str] = None
    role: Role = "user"

    @staticmethod
    def normalized_display_name(user_id: str, display_name: Optional[str] = None) -> str:
        if display_name and display_name.strip():
            return display_name.strip()
        # Deterministic fallback handle
        import hashlib
        h = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
        return f"@u_{h[-6:]}"


class Principal(BaseModel):
    """Authenticated caller as yielded by the credential boundary."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class UserSummary(BaseModel):
    """User fields joined onto admin subscription listings."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    role: Role = "user"
