from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, timezone


class User(BaseModel):
    """Store customer. Owned by the auth collaborator; read here for grants."""

    id: str = Field(..., alias="_id")
    firebase_uid: Optional[str] = None
    name: str = ""
    email: str = ""
    email_verified: bool = False
    role: str = "user"

    # Transaction document ids this user has been granted
    purchases: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {
        "from_attributes": True,
        "populate_by_name": True
    }
