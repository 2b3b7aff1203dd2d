"""
Entity gateway: CRUD, bulk and raw-query handlers for one entity.

Orchestrates the translators, the validator, the per-entity client, the
transaction runner and the raw-query guard. Every read goes through a
plain session; every write goes through TransactionRunner so that nested
writes and bulk operations are atomic and retried on transient failures.

File-bearing fields are cleaned up in the file store after the write that
orphaned them has committed. Cleanup failures are logged and never fail
the request.
"""

import asyncio
import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from datagate.core.database import Database
from datagate.core.errors import (
    ClientInputError,
    MalformedPayloadError,
    NotFoundError,
    StoreError,
    UnsupportedOperationError,
    ValidationFailedError,
)
from datagate.models.base import utc_now_iso
from datagate.repositories.registry import EntityBinding
from datagate.schemas.envelopes import (
    BulkCreateResponse,
    BulkItemError,
    CountResponse,
    ItemResponse,
    Link,
    PageMeta,
    PageResponse,
    RawQueryResponse,
)
from datagate.schemas.plans import FieldCondition, FilterGroup, QueryPlan, WriteTree
from datagate.services.interfaces.file_store import IFileStore
from datagate.services.file_store import NullFileStore
from datagate.services.nested_write import NestedWriteTranslator
from datagate.services.query_params import QueryParamTranslator
from datagate.services.raw_query_guard import RawQueryGuard
from datagate.services.schema_validator import SchemaValidator
from datagate.services.transaction_runner import TransactionRunner

logger = logging.getLogger(__name__)


class EntityGateway:
    """
    Request handlers for one registered entity.

    Attributes:
        binding: Descriptor, policy, whitelist and model of the entity
        database: Store handle used for read sessions
        runner: Transaction runner used for every write
        file_store: Blob store holding files referenced by file fields
        bulk_concurrency: Items in flight during partial-success bulk create

    Example:
        gateway = EntityGateway(binding, database, TransactionRunner(database))
        page = await gateway.list({"limit": "5"}, base_url="http://api/products")
    """

    def __init__(
        self,
        binding: EntityBinding,
        database: Database,
        runner: TransactionRunner,
        file_store: Optional[IFileStore] = None,
        query_translator: Optional[QueryParamTranslator] = None,
        write_translator: Optional[NestedWriteTranslator] = None,
        validator: Optional[SchemaValidator] = None,
        bulk_concurrency: int = 5,
    ):
        self.binding = binding
        self.database = database
        self.runner = runner
        self.file_store = file_store or NullFileStore()
        self.query_translator = query_translator or QueryParamTranslator()
        self.write_translator = write_translator or NestedWriteTranslator()
        self.validator = validator or SchemaValidator()
        self.bulk_concurrency = bulk_concurrency
        self.guard = RawQueryGuard(binding.whitelist, entity=binding.name)

    @property
    def name(self) -> str:
        return self.binding.name

    @property
    def policy(self):
        return self.binding.policy

    # ========================
    # Reads
    # ========================

    async def list(self, params: Mapping[str, Any], base_url: str) -> PageResponse:
        """
        List one page of rows from query-string parameters.

        Args:
            params: Raw query parameters (repeated keys as lists)
            base_url: Collection URL used for HATEOAS links

        Returns:
            Page with ``meta`` (total, page, limit, total_pages) and links
        """
        plan = self.query_translator.translate(params, self.policy, entity=self.name)
        return await self._page(plan, base_url)

    async def search(self, body: Any, base_url: str) -> PageResponse:
        """
        List rows from an explicit search body.

        A ``take`` above the policy maximum is rejected, not clamped.
        """
        plan = self.query_translator.from_search_body(body, self.policy, entity=self.name)
        return await self._page(plan, base_url)

    async def get(self, identifier: str, params: Mapping[str, Any], base_url: str) -> ItemResponse:
        plan = self.query_translator.translate_single(params, self.policy, entity=self.name)

        async with self.database.session() as session:
            row = await self.binding.client(session).find_unique(identifier, plan)

        if row is None:
            raise NotFoundError(self.name, identifier)
        return ItemResponse(data=row, links=self.item_links(base_url, identifier))

    async def _page(self, plan: QueryPlan, base_url: str) -> PageResponse:
        async with self.database.session() as session:
            client = self.binding.client(session)
            rows = await client.find_many(plan)
            total = await client.count(plan.where)

        return PageResponse(
            data=rows,
            meta=PageMeta(
                total=total,
                page=plan.page,
                limit=plan.take,
                total_pages=max(1, math.ceil(total / plan.take)),
            ),
            links=self.collection_links(base_url),
        )

    # ========================
    # Single-row writes
    # ========================

    async def create(self, payload: Any, base_url: str) -> ItemResponse:
        tree = self._create_tree(payload)
        row = await self.runner.run(
            lambda session: self.binding.client(session).create(tree),
            label=f"{self.name}.create",
        )
        logger.info("Entity created", extra={"entity": self.name, "id": row.get(self.binding.primary_key)})
        return ItemResponse(
            data=row,
            links=self.item_links(base_url, row.get(self.binding.primary_key)),
        )

    async def update(self, identifier: str, payload: Any, base_url: str) -> ItemResponse:
        tree = self._update_tree(payload)

        async def unit_of_work(session):
            client = self.binding.client(session)
            before = await self._previous_files(client, identifier, tree)
            after = await client.update(identifier, tree)
            return before, after

        before, row = await self.runner.run(unit_of_work, label=f"{self.name}.update")
        await self._cleanup_files(self._replaced_files(before, row))
        return ItemResponse(data=row, links=self.item_links(base_url, identifier))

    async def delete(self, identifier: str) -> Dict[str, Any]:
        """Hard-delete one row and clean up its files."""
        row = await self.runner.run(
            lambda session: self.binding.client(session).delete(identifier),
            label=f"{self.name}.delete",
        )
        logger.info("Entity deleted", extra={"entity": self.name, "id": identifier})
        await self._cleanup_files(self._file_urls([row]))
        return row

    async def soft_delete(self, identifier: str) -> None:
        """
        Mark one row as deleted.

        Raises:
            UnsupportedOperationError: Entity has no soft-delete marker
            NotFoundError: Row missing or already deleted
        """
        field = self._soft_delete_field()
        where = self._id_filter([identifier], FieldCondition(field, {"equals": None}))
        count = await self.runner.run(
            lambda session: self.binding.client(session).update_many(where, {field: utc_now_iso()}),
            label=f"{self.name}.soft_delete",
        )
        if count == 0:
            raise NotFoundError(self.name, identifier, message="Not found or already deleted")

    async def restore(self, identifier: str) -> None:
        """
        Clear the soft-delete marker of one row.

        Raises:
            UnsupportedOperationError: Entity has no soft-delete marker
            NotFoundError: Row missing or not deleted
        """
        field = self._soft_delete_field()
        where = self._id_filter([identifier], FieldCondition(field, {"not": None}))
        count = await self.runner.run(
            lambda session: self.binding.client(session).update_many(where, {field: None}),
            label=f"{self.name}.restore",
        )
        if count == 0:
            raise NotFoundError(self.name, identifier, message="Not found or not deleted")

    # ========================
    # Bulk writes
    # ========================

    async def bulk_create(self, items: Any) -> Tuple[BulkCreateResponse, bool]:
        """
        Create each item in its own transaction, with bounded concurrency.

        Returns:
            The aggregated result, and whether every item succeeded
        """
        if not isinstance(items, list) or not items:
            raise MalformedPayloadError("Bulk create expects a non-empty array")

        semaphore = asyncio.Semaphore(self.bulk_concurrency)

        async def create_one(index: int, item: Any):
            async with semaphore:
                try:
                    tree = self._create_tree(item)
                    row = await self.runner.run(
                        lambda session: self.binding.client(session).create(tree),
                        label=f"{self.name}.bulk_create",
                    )
                    return row, None
                except (ClientInputError, ValidationFailedError, NotFoundError, StoreError) as exc:
                    return None, self._item_error(index, exc)

        outcomes = await asyncio.gather(
            *(create_one(index, item) for index, item in enumerate(items))
        )
        created = [row for row, error in outcomes if error is None]
        errors = [error for _, error in outcomes if error is not None]

        logger.info(
            "Bulk create finished",
            extra={"entity": self.name, "created": len(created), "failed": len(errors)},
        )
        return BulkCreateResponse(created=created, errors=errors), not errors

    async def bulk_update(self, items: Any) -> List[Dict[str, Any]]:
        """
        Update several rows atomically.

        Body: ``[{"id": ..., "data": {...}}, ...]``. Every item is validated
        before any store access; validation errors are reported for all items
        at once.
        """
        if not isinstance(items, list) or not items:
            raise MalformedPayloadError("Bulk update expects a non-empty array")

        updates: List[Tuple[Any, WriteTree]] = []
        errors = []
        for index, item in enumerate(items):
            if not isinstance(item, Mapping) or "id" not in item or not isinstance(item.get("data"), Mapping):
                raise MalformedPayloadError(
                    f"Bulk update item {index} must be an object with 'id' and 'data'"
                )
            try:
                updates.append((item["id"], self._update_tree(item["data"], prefix=f"{index}.data")))
            except ValidationFailedError as exc:
                errors.extend(exc.errors)
        if errors:
            raise ValidationFailedError(errors)

        async def unit_of_work(session):
            client = self.binding.client(session)
            results = []
            for identifier, tree in updates:
                before = await self._previous_files(client, identifier, tree)
                results.append((before, await client.update(identifier, tree)))
            return results

        results = await self.runner.run(unit_of_work, label=f"{self.name}.bulk_update")
        for before, row in results:
            await self._cleanup_files(self._replaced_files(before, row))
        return [row for _, row in results]

    async def bulk_delete(self, body: Any) -> CountResponse:
        ids = self._parse_ids(body)
        where = self._id_filter(ids)

        async def unit_of_work(session):
            client = self.binding.client(session)
            rows = []
            if self.binding.descriptor.file_fields:
                rows = await client.find_many(QueryPlan(take=len(ids), where=where))
            return rows, await client.delete_many(where)

        rows, count = await self.runner.run(unit_of_work, label=f"{self.name}.bulk_delete")
        logger.info("Bulk delete finished", extra={"entity": self.name, "count": count})
        await self._cleanup_files(self._file_urls(rows))
        return CountResponse(count=count)

    async def bulk_soft_delete(self, body: Any) -> CountResponse:
        field = self._soft_delete_field()
        ids = self._parse_ids(body)
        where = self._id_filter(ids, FieldCondition(field, {"equals": None}))
        count = await self.runner.run(
            lambda session: self.binding.client(session).update_many(where, {field: utc_now_iso()}),
            label=f"{self.name}.bulk_soft_delete",
        )
        return CountResponse(count=count)

    async def bulk_restore(self, body: Any) -> CountResponse:
        field = self._soft_delete_field()
        ids = self._parse_ids(body)
        where = self._id_filter(ids, FieldCondition(field, {"not": None}))
        count = await self.runner.run(
            lambda session: self.binding.client(session).update_many(where, {field: None}),
            label=f"{self.name}.bulk_restore",
        )
        return CountResponse(count=count)

    # ========================
    # Raw queries
    # ========================

    async def raw_query(self, body: Any) -> RawQueryResponse:
        """
        Run a whitelisted raw query.

        Reads use a plain session; write verbs run inside TransactionRunner.

        Raises:
            RawQueryRejectedError: Query violates the entity's whitelist
            QueryExecutionError: Store failure (details only logged)
        """
        if not isinstance(body, Mapping):
            raise MalformedPayloadError("Raw query body must be a JSON object")
        query = body.get("query")
        values = body.get("values")

        shape = self.guard.check(query)

        if shape.is_write:
            result = await self.runner.run(
                lambda session: self.guard.execute(
                    query, values, self.binding.client(session).execute_raw
                ),
                label=f"{self.name}.raw_query",
            )
        else:
            async with self.database.session() as session:
                result = await self.guard.execute(
                    query, values, self.binding.client(session).execute_raw
                )

        return RawQueryResponse(
            data=result.rows,
            row_count=result.row_count,
            truncated=result.truncated,
        )

    # ========================
    # Links
    # ========================

    def collection_links(self, base_url: str) -> List[Link]:
        return [
            Link(href=base_url, rel="self", method="GET"),
            Link(href=base_url, rel="create", method="POST"),
        ]

    def item_links(self, base_url: str, identifier: Any) -> List[Link]:
        item_url = f"{base_url}/{identifier}"
        links = self.collection_links(base_url) + [
            Link(href=item_url, rel="self", method="GET"),
            Link(href=item_url, rel="update", method="PUT"),
            Link(href=item_url, rel="delete", method="DELETE"),
        ]
        if self.policy.soft_delete:
            links += [
                Link(href=f"{item_url}/soft", rel="soft-delete", method="DELETE"),
                Link(href=f"{item_url}/restore", rel="restore", method="POST"),
            ]
        return links

    # ========================
    # Helpers
    # ========================

    def _create_tree(self, payload: Any) -> WriteTree:
        descriptor = self.binding.descriptor
        tree = self.write_translator.translate(payload, False, self.policy, descriptor=descriptor)
        tree.scalars = self.validator.validate_entity(descriptor, payload)
        self.validator.validate_tree(descriptor, tree)
        return tree

    def _update_tree(self, payload: Any, prefix: str = "") -> WriteTree:
        descriptor = self.binding.descriptor
        tree = self.write_translator.translate(payload, True, self.policy, descriptor=descriptor)
        tree.scalars = self.validator.validate_entity(descriptor, payload, partial=True, prefix=prefix)
        self.validator.validate_tree(descriptor, tree, prefix=prefix)
        return tree

    def _soft_delete_field(self) -> str:
        if not self.policy.soft_delete:
            raise UnsupportedOperationError(f"{self.name} does not support soft delete")
        return self.policy.soft_delete_field

    def _id_filter(self, ids: List[Any], *extra: FieldCondition) -> FilterGroup:
        conditions = [FieldCondition(self.binding.primary_key, {"in": list(ids)}), *extra]
        return FilterGroup("and", conditions)

    @staticmethod
    def _parse_ids(body: Any) -> List[Any]:
        ids = body.get("ids") if isinstance(body, Mapping) else None
        if not isinstance(ids, list) or not ids:
            raise MalformedPayloadError("Expected an object with a non-empty 'ids' array")
        if not all(isinstance(i, (str, int)) and not isinstance(i, bool) for i in ids):
            raise MalformedPayloadError("'ids' must contain strings or integers")
        return ids

    async def _previous_files(self, client, identifier: Any, tree: WriteTree) -> Optional[Dict[str, Any]]:
        """Current values of the file fields an update is about to overwrite."""
        touched = [f for f in self.binding.descriptor.file_fields if f in tree.scalars]
        if not touched:
            return None
        row = await client.find_unique(identifier, QueryPlan(select=touched))
        if row is None:
            raise NotFoundError(self.name, identifier)
        return row

    def _replaced_files(self, before: Optional[Dict[str, Any]], after: Dict[str, Any]) -> List[str]:
        if not before:
            return []
        return [
            before[name]
            for name in self.binding.descriptor.file_fields
            if before.get(name) and before.get(name) != after.get(name)
        ]

    def _file_urls(self, rows: Iterable[Dict[str, Any]]) -> List[str]:
        return [
            row[name]
            for row in rows
            for name in self.binding.descriptor.file_fields
            if row.get(name)
        ]

    async def _cleanup_files(self, urls: Iterable[str]) -> None:
        for url in urls:
            key = self.file_store.extract_key(url)
            if not key:
                continue
            try:
                await self.file_store.delete(key)
            except Exception as exc:
                logger.error(
                    "File cleanup failed",
                    extra={"entity": self.name, "key": key, "error": str(exc)},
                )

    def _item_error(self, index: int, exc: Exception) -> BulkItemError:
        if isinstance(exc, ValidationFailedError):
            return BulkItemError(index=index, error=exc.kind, message=exc.message, details=exc.to_list())
        if isinstance(exc, (ClientInputError, NotFoundError)):
            return BulkItemError(index=index, error=exc.kind, message=exc.message)
        logger.error(
            "Bulk create item failed",
            extra={"entity": self.name, "index": index, "error": str(exc)},
        )
        return BulkItemError(index=index, error="internal_error", message="Internal Server Error")
