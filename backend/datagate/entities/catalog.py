"""
Catalog entity wiring: descriptors, policies and raw-query whitelist.

Exposes ``products`` and ``categories``. Reviews are only reachable as a
nested relation of products.
"""

from datagate.models import Category, Product
from datagate.repositories.registry import EntityBinding
from datagate.schemas.catalog import CategorySchema, ProductSchema, ReviewSchema
from datagate.schemas.descriptors import (
    Cardinality,
    JoinConfig,
    ModelDescriptor,
    RawQueryWhitelist,
    RelationMetadata,
    SecurityPolicy,
    SortConfig,
)

REVIEW_DESCRIPTOR = ModelDescriptor(
    name="reviews",
    schema=ReviewSchema,
    relation_fields=("product",),
)

CATEGORY_DESCRIPTOR = ModelDescriptor(
    name="categories",
    schema=CategorySchema,
    relation_fields=("products",),
)

PRODUCT_DESCRIPTOR = ModelDescriptor(
    name="products",
    schema=ProductSchema,
    relation_fields=("category", "reviews"),
    file_fields=("image_url",),
    relations={
        "category": RelationMetadata(CATEGORY_DESCRIPTOR, Cardinality.MANY_TO_ONE),
        "reviews": RelationMetadata(REVIEW_DESCRIPTOR, Cardinality.ONE_TO_MANY),
    },
)

PRODUCT_POLICY = SecurityPolicy(
    allowed_filters={"name", "sku", "price", "category_id", "in_stock", "stock_quantity", "created_at"},
    allowed_sort_fields={"name", "price", "created_at"},
    allowed_includes={"category", "reviews"},
    allowed_select_fields={
        "id", "name", "sku", "price", "description", "in_stock",
        "stock_quantity", "image_url", "category_id", "created_at", "updated_at",
    },
    max_include_depth=2,
    max_page_size=100,
    soft_delete=True,
)

CATEGORY_POLICY = SecurityPolicy(
    allowed_filters={"name"},
    allowed_sort_fields={"name", "created_at"},
    allowed_includes={"products"},
    allowed_select_fields={"id", "name", "description", "created_at", "updated_at"},
    max_page_size=100,
)

PRODUCT_WHITELIST = RawQueryWhitelist(
    enabled=True,
    tables={"products", "categories"},
    columns={
        "products": {"id", "name", "sku", "price", "in_stock", "stock_quantity", "category_id"},
        "categories": {"id", "name"},
    },
    allowed_operations={"SELECT"},
    joins={"categories": JoinConfig(tables={"products"}, types={"inner", "left"})},
    sorting={"products": SortConfig(max_columns=2, allowed_columns={"name", "price"})},
    max_result_rows=500,
)


def catalog_bindings():
    return [
        EntityBinding(
            descriptor=PRODUCT_DESCRIPTOR,
            policy=PRODUCT_POLICY,
            orm_model=Product,
            whitelist=PRODUCT_WHITELIST,
        ),
        EntityBinding(
            descriptor=CATEGORY_DESCRIPTOR,
            policy=CATEGORY_POLICY,
            orm_model=Category,
        ),
    ]
