"""
Validation schemas for the catalog entities.

These are the shapes SchemaValidator checks create payloads against; the
partial variants used for updates are derived automatically.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CategorySchema(BaseModel):
    """
    Category payload.

    Attributes:
        name: Category name, at least 2 characters
        description: Optional free text
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=255, description="Category name")
    description: Optional[str] = Field(default=None, description="Free text description")


class ProductSchema(BaseModel):
    """
    Product payload.

    Attributes:
        name: Display name, at least 2 characters
        sku: Stock keeping unit (optional, unique)
        price: Unit price, strictly positive
        description: Optional free text
        in_stock: Availability flag (default: True)
        stock_quantity: Units on hand, non-negative (default: 0)
        image_url: URL of the product image in the file store
        category_id: Owning category (alternative to the nested ``category`` relation)
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=255, description="Product name")
    sku: Optional[str] = Field(default=None, max_length=64, description="Stock keeping unit")
    price: float = Field(gt=0, description="Unit price")
    description: Optional[str] = Field(default=None, description="Free text description")
    in_stock: bool = Field(default=True, description="Availability flag")
    stock_quantity: int = Field(default=0, ge=0, description="Units on hand")
    image_url: Optional[str] = Field(default=None, max_length=1024, description="Product image URL")
    category_id: Optional[str] = Field(default=None, description="Category id")


class ReviewSchema(BaseModel):
    """Review payload. ``product_id`` is optional when created through a product."""

    author: str = Field(min_length=1, max_length=255)
    rating: int = Field(ge=1, le=5)
    body: Optional[str] = None
    product_id: Optional[str] = None
