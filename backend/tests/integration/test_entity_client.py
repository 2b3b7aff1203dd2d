"""
Integration tests for SQLAlchemyEntityClient against a real SQLite store.

Tests cover:
- Filter compilation (operators, groups, case-insensitive matching)
- Ordering, pagination, projection and inclusion
- Nested writes through ORM relationships
- Bulk update / delete statements
- Raw query execution with positional and named parameters
"""

import pytest

from datagate.core.errors import MalformedPayloadError, NotFoundError, UnsupportedOperationError
from datagate.entities.catalog import CATEGORY_DESCRIPTOR, PRODUCT_DESCRIPTOR
from datagate.models.catalog import Category, Product
from datagate.repositories.entity import SQLAlchemyEntityClient
from datagate.schemas.descriptors import SecurityPolicy
from datagate.schemas.plans import Direction, FieldCondition, FilterGroup, QueryPlan
from datagate.services.nested_write import NestedWriteTranslator

POLICY = SecurityPolicy(max_nested_depth=2)


def write_tree(payload, is_update=False):
    return NestedWriteTranslator().translate(payload, is_update, POLICY, descriptor=PRODUCT_DESCRIPTOR)


def where(*conditions, kind="and"):
    return FilterGroup(kind, list(conditions))


@pytest.fixture
def products_client(database):
    """Factory opening a committed session and returning a product client."""
    def _client(session):
        return SQLAlchemyEntityClient(session, Product, PRODUCT_DESCRIPTOR)
    return _client


@pytest.fixture
async def seeded(database, products_client):
    """Three products, two of them in the Lighting category."""
    async with database.session() as session:
        client = products_client(session)
        desk = await client.create(write_tree({
            "name": "Desk Lamp", "price": 20.0, "in_stock": True,
            "category": {"name": "Lighting"},
        }))
        floor = await client.create(write_tree({
            "name": "Floor Lamp", "price": 80.0, "in_stock": False,
            "category": {"connect": {"id": desk["category_id"]}},
        }))
        chair = await client.create(write_tree({"name": "Chair", "price": 45.0, "in_stock": True}))
    return {"desk": desk, "floor": floor, "chair": chair}


async def names(database, products_client, plan: QueryPlan):
    async with database.session() as session:
        rows = await products_client(session).find_many(plan)
    return [row["name"] for row in rows]


class TestFilters:

    async def test_case_insensitive_contains(self, database, products_client, seeded):
        plan = QueryPlan(
            where=where(FieldCondition("name", {"contains": "LAMP", "mode": "insensitive"})),
            order_by=[("name", Direction.ASC)],
        )

        assert await names(database, products_client, plan) == ["Desk Lamp", "Floor Lamp"]

    async def test_insensitive_equals(self, database, products_client, seeded):
        plan = QueryPlan(where=where(FieldCondition("name", {"equals": "chair", "mode": "insensitive"})))

        assert await names(database, products_client, plan) == ["Chair"]

    async def test_in_list(self, database, products_client, seeded):
        plan = QueryPlan(
            where=where(FieldCondition("price", {"in": [20.0, 45.0]})),
            order_by=[("price", Direction.ASC)],
        )

        assert await names(database, products_client, plan) == ["Desk Lamp", "Chair"]

    async def test_range(self, database, products_client, seeded):
        plan = QueryPlan(where=where(FieldCondition("price", {"gte": 45, "lt": 80})))

        assert await names(database, products_client, plan) == ["Chair"]

    async def test_or_group(self, database, products_client, seeded):
        plan = QueryPlan(
            where=where(
                where(
                    where(FieldCondition("name", {"equals": "Chair"})),
                    where(FieldCondition("price", {"gt": 50})),
                    kind="or",
                )
            ),
            order_by=[("name", Direction.ASC)],
        )

        assert await names(database, products_client, plan) == ["Chair", "Floor Lamp"]

    async def test_not_group(self, database, products_client, seeded):
        plan = QueryPlan(where=where(where(FieldCondition("in_stock", {"equals": True}), kind="not")))

        assert await names(database, products_client, plan) == ["Floor Lamp"]

    async def test_nested_not_operator(self, database, products_client, seeded):
        plan = QueryPlan(
            where=where(FieldCondition("name", {"not": {"startsWith": "Desk"}})),
            order_by=[("name", Direction.ASC)],
        )

        assert await names(database, products_client, plan) == ["Chair", "Floor Lamp"]

    async def test_search_requires_every_term(self, database, products_client, seeded):
        plan = QueryPlan(where=where(FieldCondition("name", {"search": "lamp desk"})))

        assert await names(database, products_client, plan) == ["Desk Lamp"]

    async def test_null_equality(self, database, products_client, seeded):
        plan = QueryPlan(where=where(FieldCondition("category_id", {"equals": None})))

        assert await names(database, products_client, plan) == ["Chair"]

    async def test_like_wildcards_are_escaped(self, database, products_client, seeded):
        plan = QueryPlan(where=where(FieldCondition("name", {"contains": "%"})))

        assert await names(database, products_client, plan) == []

    async def test_in_requires_list(self, database, products_client, seeded):
        with pytest.raises(MalformedPayloadError):
            await names(database, products_client, QueryPlan(where=where(FieldCondition("price", {"in": 20}))))

    async def test_unknown_column(self, database, products_client, seeded):
        with pytest.raises(UnsupportedOperationError):
            await names(database, products_client, QueryPlan(where=where(FieldCondition("cost", {"equals": 1}))))

    async def test_count(self, database, products_client, seeded):
        async with database.session() as session:
            client = products_client(session)
            total = await client.count()
            lamps = await client.count(where(FieldCondition("name", {"endsWith": "Lamp"})))

        assert (total, lamps) == (3, 2)


class TestShaping:

    async def test_order_and_page(self, database, products_client, seeded):
        plan = QueryPlan(order_by=[("price", Direction.DESC)], skip=1, take=1)

        assert await names(database, products_client, plan) == ["Chair"]

    async def test_default_order_is_insertion_order(self, database, products_client, seeded):
        assert await names(database, products_client, QueryPlan()) == ["Desk Lamp", "Floor Lamp", "Chair"]

    async def test_projection(self, database, products_client, seeded):
        async with database.session() as session:
            rows = await products_client(session).find_many(QueryPlan(select=["id", "name"], take=1))

        assert set(rows[0]) == {"id", "name"}

    async def test_include_to_one(self, database, products_client, seeded):
        async with database.session() as session:
            row = await products_client(session).find_unique(
                seeded["floor"]["id"], QueryPlan(include={"category": None})
            )

        assert row["category"]["name"] == "Lighting"

    async def test_include_nested(self, database, products_client, seeded):
        async with database.session() as session:
            row = await products_client(session).find_unique(
                seeded["desk"]["id"], QueryPlan(include={"category": {"products": None}})
            )

        assert sorted(p["name"] for p in row["category"]["products"]) == ["Desk Lamp", "Floor Lamp"]

    async def test_include_unknown_relation(self, database, products_client, seeded):
        with pytest.raises(UnsupportedOperationError):
            await names(database, products_client, QueryPlan(include={"owner": None}))

    async def test_find_unique_missing(self, database, products_client, seeded):
        async with database.session() as session:
            assert await products_client(session).find_unique("missing") is None


class TestNestedWrites:

    async def test_create_with_reviews(self, database, products_client):
        async with database.session() as session:
            client = products_client(session)
            created = await client.create(write_tree({
                "name": "Kettle",
                "price": 30,
                "reviews": {"create": [{"author": "Ann", "rating": 5}, {"author": "Bo", "rating": 3}]},
            }))
            row = await client.find_unique(created["id"], QueryPlan(include={"reviews": None}))

        assert sorted((r["author"], r["rating"]) for r in row["reviews"]) == [("Ann", 5), ("Bo", 3)]

    async def test_connect_missing_target(self, database, products_client):
        with pytest.raises(NotFoundError):
            async with database.session() as session:
                await products_client(session).create(write_tree({
                    "name": "Kettle", "price": 30, "category": {"connect": {"id": "missing"}},
                }))

    async def test_update_scalars_and_reviews(self, database, products_client):
        """
        Test create / targeted update / delete of to-many children in one update.

        Arrange: Product with two reviews
        Act: Update price, add a review, re-rate one, delete the other
        Assert: Reviews reflect every sub-operation
        """
        # Arrange
        async with database.session() as session:
            client = products_client(session)
            created = await client.create(write_tree({
                "name": "Kettle",
                "price": 30,
                "reviews": {"create": [{"author": "Ann", "rating": 5}, {"author": "Bo", "rating": 1}]},
            }))
            row = await client.find_unique(created["id"], QueryPlan(include={"reviews": None}))
        ann = next(r for r in row["reviews"] if r["author"] == "Ann")
        bo = next(r for r in row["reviews"] if r["author"] == "Bo")

        # Act
        async with database.session() as session:
            updated = await products_client(session).update(created["id"], write_tree({
                "price": 35,
                "reviews": {
                    "create": {"author": "Cy", "rating": 4},
                    "update": [{"where": {"id": ann["id"]}, "data": {"rating": 4}}],
                    "delete": [{"id": bo["id"]}],
                },
            }, is_update=True))

        # Assert
        async with database.session() as session:
            row = await products_client(session).find_unique(created["id"], QueryPlan(include={"reviews": None}))
        assert updated["price"] == 35
        assert sorted((r["author"], r["rating"]) for r in row["reviews"]) == [("Ann", 4), ("Cy", 4)]

    async def test_update_to_one_in_place_and_disconnect(self, database, products_client, seeded):
        async with database.session() as session:
            await products_client(session).update(
                seeded["desk"]["id"], write_tree({"category": {"name": "Lights"}}, is_update=True)
            )
        async with database.session() as session:
            category = await session.get(Category, seeded["desk"]["category_id"])
            assert category.name == "Lights"

        async with database.session() as session:
            updated = await products_client(session).update(
                seeded["desk"]["id"], write_tree({"category": {"disconnect": True}}, is_update=True)
            )

        assert updated["category_id"] is None

    async def test_targeted_update_needs_match(self, database, products_client, seeded):
        with pytest.raises(NotFoundError):
            async with database.session() as session:
                await products_client(session).update(seeded["chair"]["id"], write_tree({
                    "reviews": {"update": [{"where": {"id": "nope"}, "data": {"rating": 2}}]},
                }, is_update=True))

    async def test_bare_array_relation_is_rejected(self, database, products_client):
        with pytest.raises(MalformedPayloadError):
            async with database.session() as session:
                await products_client(session).create(
                    write_tree({"name": "Kettle", "price": 3, "reviews": [{"author": "A", "rating": 1}]})
                )

    async def test_update_missing_row(self, database, products_client):
        with pytest.raises(NotFoundError):
            async with database.session() as session:
                await products_client(session).update("missing", write_tree({"price": 2}, is_update=True))

    async def test_delete_returns_row(self, database, products_client, seeded):
        async with database.session() as session:
            deleted = await products_client(session).delete(seeded["chair"]["id"])

        assert deleted["name"] == "Chair"
        async with database.session() as session:
            assert await products_client(session).find_unique(seeded["chair"]["id"]) is None


class TestBulkStatements:

    async def test_update_many_and_delete_many(self, database, products_client, seeded):
        lamps = where(FieldCondition("name", {"endsWith": "Lamp"}))

        async with database.session() as session:
            updated = await products_client(session).update_many(lamps, {"stock_quantity": 7})
        async with database.session() as session:
            deleted = await products_client(session).delete_many(lamps)
            remaining = await products_client(session).count()

        assert (updated, deleted, remaining) == (2, 2, 1)

    async def test_update_many_rejects_unknown_column(self, database, products_client, seeded):
        with pytest.raises(UnsupportedOperationError):
            async with database.session() as session:
                await products_client(session).update_many(where(), {"cost": 1})


class TestRawExecution:

    async def test_positional_parameters(self, database, products_client, seeded):
        async with database.session() as session:
            result = await products_client(session).execute_raw(
                "SELECT name FROM products WHERE price > ? ORDER BY price", [30]
            )

        assert result.rows == [{"name": "Chair"}, {"name": "Floor Lamp"}]
        assert result.row_count == 2

    async def test_named_parameters(self, database, products_client, seeded):
        async with database.session() as session:
            result = await products_client(session).execute_raw(
                "SELECT name, price FROM products WHERE name = :name", {"name": "Chair"}
            )

        assert result.rows == [{"name": "Chair", "price": 45.0}]

    async def test_write_reports_rowcount(self, database, products_client, seeded):
        async with database.session() as session:
            result = await products_client(session).execute_raw(
                "UPDATE products SET stock_quantity = ? WHERE in_stock = ?", [3, True]
            )

        assert result.rows == []
        assert result.row_count == 2

    async def test_category_client(self, database, seeded):
        async with database.session() as session:
            client = SQLAlchemyEntityClient(session, Category, CATEGORY_DESCRIPTOR)
            rows = await client.find_many(QueryPlan(include={"products": None}))

        assert [len(row["products"]) for row in rows] == [2]
