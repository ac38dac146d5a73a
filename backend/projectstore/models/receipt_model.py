from pydantic import BaseModel, Field
from datetime import datetime, timezone


class Receipt(BaseModel):
    """Receipt record for one verified transaction. Document id = transaction id."""
    id: str = Field(..., alias="_id")
    user_id: str
    transaction_id: str
    product_id: str
    pdf_url: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {
        "from_attributes": True,
        "populate_by_name": True
    }
