"""
Nested write translation.

Normalizes a create/update payload into a WriteTree. For every declared
relation field the payload may use explicit sub-operation keys
(create, connect, disconnect, delete, update) or the implicit shorthand of
a bare object, which means "create" in create mode and "update" in update
mode. Recursion is bounded by SecurityPolicy.max_nested_depth, counted in
relation hops.
"""

import logging
from typing import Any, List, Mapping, Optional, Union

from datagate.core.errors import MalformedPayloadError, NestedDepthExceededError
from datagate.schemas.descriptors import ModelDescriptor, SecurityPolicy
from datagate.schemas.plans import (
    NESTED_WRITE_KEYS,
    RelationWrite,
    TargetedUpdate,
    WriteTree,
)

logger = logging.getLogger(__name__)


class NestedWriteTranslator:
    """
    Translates caller payloads into WriteTrees.

    Example:
        >>> translator = NestedWriteTranslator()
        >>> tree = translator.translate(
        ...     {"name": "Lamp", "category": {"name": "Lighting"}},
        ...     is_update=False,
        ...     policy=policy,
        ...     descriptor=product_descriptor,
        ... )
        >>> tree.as_dict()
        {'name': 'Lamp', 'category': {'create': {'name': 'Lighting'}}}
    """

    def translate(
        self,
        payload: Mapping[str, Any],
        is_update: bool,
        policy: SecurityPolicy,
        descriptor: Optional[ModelDescriptor] = None,
        relation_fields: Optional[List[str]] = None,
    ) -> WriteTree:
        """
        Translate one payload.

        Args:
            payload: Caller-supplied object
            is_update: Update mode (implicit shorthand means update) vs create mode
            policy: Policy carrying the nested depth budget
            descriptor: Entity descriptor; supplies relation fields and, through
                relation metadata, the relation fields of nested entities
            relation_fields: Relation names to use when no descriptor is given

        Raises:
            MalformedPayloadError: Payload or a relation value has the wrong shape
            NestedDepthExceededError: Relation hops beyond the budget (unless the
                policy truncates instead)
        """
        if not isinstance(payload, Mapping):
            raise MalformedPayloadError("Payload must be a JSON object")
        relations = (
            list(descriptor.relation_fields)
            if descriptor is not None
            else list(relation_fields or [])
        )
        return self._translate(payload, is_update, policy, descriptor, relations, depth=0)

    def _translate(
        self,
        payload: Mapping[str, Any],
        is_update: bool,
        policy: SecurityPolicy,
        descriptor: Optional[ModelDescriptor],
        relations: List[str],
        depth: int,
    ) -> WriteTree:
        tree = WriteTree()

        for key, value in payload.items():
            if value is None:
                continue

            if key not in relations:
                tree.scalars[key] = value
                continue

            if depth >= policy.max_nested_depth:
                if policy.truncate_excess_nesting:
                    logger.warning(
                        "Nested write truncated at depth limit",
                        extra={
                            "entity": descriptor.name if descriptor else None,
                            "field": key,
                            "max_nested_depth": policy.max_nested_depth,
                        },
                    )
                    continue
                raise NestedDepthExceededError(key, policy.max_nested_depth)

            if isinstance(value, list):
                tree.passthrough[key] = list(value)
                continue

            if not isinstance(value, Mapping):
                raise MalformedPayloadError(
                    f"Relation '{key}' expects an object"
                )

            related = descriptor.related(key) if descriptor is not None else None
            child_relations = list(related.relation_fields) if related is not None else []

            def nested(data: Any, update_mode: bool) -> Any:
                return self._translate_nested(
                    data, update_mode, policy, related, child_relations, depth + 1, key
                )

            relation_write = (
                self._translate_update_relation(value, nested)
                if is_update
                else self._translate_create_relation(value, nested)
            )
            if relation_write is not None:
                tree.relations[key] = relation_write

        return tree

    @staticmethod
    def _translate_update_relation(value: Mapping[str, Any], nested) -> Optional[RelationWrite]:
        explicit = [op for op in NESTED_WRITE_KEYS if op in value]
        if not explicit:
            if not value:
                return None
            # Shorthand: update the related row in place
            return RelationWrite(update=nested(value, True))

        relation_write = RelationWrite()
        for op in explicit:
            operand = value[op]
            if operand is None:
                continue
            if op == "create":
                relation_write.create = nested(operand, False)
            elif op == "update":
                relation_write.update = nested(operand, True)
            else:
                setattr(relation_write, op, operand)
        return relation_write if relation_write.operations() else None

    @staticmethod
    def _translate_create_relation(value: Mapping[str, Any], nested) -> RelationWrite:
        if value.get("create") is not None or value.get("connect") is not None:
            relation_write = RelationWrite()
            if value.get("create") is not None:
                relation_write.create = nested(value["create"], False)
            if value.get("connect") is not None:
                relation_write.connect = value["connect"]
            return relation_write
        # Shorthand: create a new related row from these fields
        return RelationWrite(create=nested(value, False))

    def _translate_nested(
        self,
        data: Any,
        is_update: bool,
        policy: SecurityPolicy,
        descriptor: Optional[ModelDescriptor],
        relations: List[str],
        depth: int,
        field: str,
    ) -> Union[WriteTree, List[Any]]:
        if isinstance(data, list):
            return [
                self._translate_nested_item(item, is_update, policy, descriptor, relations, depth, field)
                for item in data
            ]
        return self._translate_nested_item(data, is_update, policy, descriptor, relations, depth, field)

    def _translate_nested_item(
        self,
        data: Any,
        is_update: bool,
        policy: SecurityPolicy,
        descriptor: Optional[ModelDescriptor],
        relations: List[str],
        depth: int,
        field: str,
    ) -> Union[WriteTree, TargetedUpdate]:
        if not isinstance(data, Mapping):
            raise MalformedPayloadError(
                f"Nested write on '{field}' expects objects"
            )

        if is_update and "where" in data and "data" in data:
            where = data["where"]
            if not isinstance(where, Mapping):
                raise MalformedPayloadError(
                    f"Nested update on '{field}' needs an object 'where'"
                )
            return TargetedUpdate(
                where=dict(where),
                data=self._translate_nested_item(
                    data["data"], True, policy, descriptor, relations, depth, field
                ),
            )

        return self._translate(data, is_update, policy, descriptor, relations, depth)


def translate_nested_write(
    payload: Mapping[str, Any],
    is_update: bool,
    policy: SecurityPolicy,
    descriptor: Optional[ModelDescriptor] = None,
    relation_fields: Optional[List[str]] = None,
) -> WriteTree:
    """Translate a nested write payload with a one-off translator."""
    return NestedWriteTranslator().translate(
        payload,
        is_update,
        policy,
        descriptor=descriptor,
        relation_fields=relation_fields,
    )

