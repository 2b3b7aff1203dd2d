"""
Catalog models: categories, products and product reviews.

These back the sample entities exposed through the gateway. Products
carry a file-bearing image field and support soft delete.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    CheckConstraint,
)
from sqlalchemy.orm import relationship

from datagate.models.base import (
    Base,
    ModelMixin,
    SoftDeleteMixin,
    TimestampMixin,
    UUIDMixin,
)


class Category(Base, UUIDMixin, TimestampMixin, ModelMixin):
    """
    Product category.

    Attributes:
        id: UUID primary key
        name: Category name (unique)
        description: Optional free text
    """

    __tablename__ = "categories"

    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)

    products = relationship("Product", back_populates="category")


class Product(Base, UUIDMixin, TimestampMixin, SoftDeleteMixin, ModelMixin):
    """
    Product sold in the catalog.

    Attributes:
        id: UUID primary key
        name: Display name
        sku: Stock keeping unit (unique)
        price: Unit price, strictly positive
        description: Optional free text
        in_stock: Availability flag
        stock_quantity: Units on hand
        image_url: Blob-store URL of the product image (file field)
        category_id: Foreign key to categories.id
        deleted_at: Soft-delete marker
    """

    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("price > 0", name="ck_products_price_positive"),
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_nonnegative"),
    )

    name = Column(String(255), nullable=False, index=True)
    sku = Column(String(64), nullable=True, unique=True)
    price = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    in_stock = Column(Boolean, nullable=False, default=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    image_url = Column(String(1024), nullable=True)

    category_id = Column(
        String(36),
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Relationships
    category = relationship("Category", back_populates="products")
    reviews = relationship(
        "Review",
        back_populates="product",
        cascade="all, delete-orphan",
    )


class Review(Base, UUIDMixin, TimestampMixin, ModelMixin):
    """
    Customer review of a product.

    Attributes:
        product_id: Foreign key to products.id
        author: Reviewer display name
        rating: 1-5 stars
        body: Optional review text
    """

    __tablename__ = "reviews"
    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating_range"),
    )

    product_id = Column(
        String(36),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    author = Column(String(255), nullable=False)
    rating = Column(Integer, nullable=False)
    body = Column(Text, nullable=True)

    product = relationship("Product", back_populates="reviews")
