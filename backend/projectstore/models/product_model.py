from pydantic import BaseModel, Field
from typing import Optional, List


class Product(BaseModel):
    """Digital product. CRUD lives elsewhere; verification only reads price and buyers."""
    id: str = Field(..., alias="_id")
    title: str
    price: float
    short_description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    download_link: Optional[str] = None
    buyers: List[str] = Field(default_factory=list)

    model_config = {
        "from_attributes": True,
        "populate_by_name": True
    }

    def summary(self) -> dict:
        return {"_id": self.id, "title": self.title, "price": self.price, "images": self.images}
