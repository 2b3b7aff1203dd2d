"""
Payload validation against pydantic schemas.

Wraps pydantic so callers get either the validated data or a
ValidationFailedError carrying ``{field_path, message, code}`` entries.
Relation payloads are validated against the related entity's schema when
the descriptor declares relation metadata.
"""

import logging
from typing import Any, Dict, List, Mapping, Type, Union

from pydantic import BaseModel, ValidationError

from datagate.core.errors import FieldError, ValidationFailedError
from datagate.schemas.descriptors import ModelDescriptor, build_partial_schema
from datagate.schemas.plans import RelationWrite, TargetedUpdate, WriteTree

logger = logging.getLogger(__name__)


def _field_errors(exc: ValidationError, prefix: str = "") -> List[FieldError]:
    errors: List[FieldError] = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ()))
        if prefix:
            path = f"{prefix}.{path}" if path else prefix
        errors.append(
            FieldError(
                field_path=path,
                message=error.get("msg", "Invalid value"),
                code=error.get("type", "invalid"),
            )
        )
    return errors


class SchemaValidator:
    """
    Validates payloads for one or more entities.

    Example:
        >>> validator = SchemaValidator()
        >>> validator.validate(ProductSchema, {"name": "Lamp", "price": 10})
        {'name': 'Lamp', 'price': 10.0, 'in_stock': True, ...}
    """

    def validate(
        self,
        schema: Type[BaseModel],
        data: Any,
        partial: bool = False,
        prefix: str = "",
    ) -> Dict[str, Any]:
        """
        Validate ``data`` against ``schema``.

        Args:
            schema: Full validation schema
            data: Payload to validate
            partial: Validate against the all-optional variant and keep only
                the fields that were supplied
            prefix: Path prefix for reported field errors

        Returns:
            Validated data as a plain dict

        Raises:
            ValidationFailedError: With one FieldError per problem
        """
        result = self.collect(schema, data, partial=partial, prefix=prefix)
        if isinstance(result, list):
            logger.info(
                "Payload validation failed",
                extra={"schema": schema.__name__, "error_count": len(result)},
            )
            raise ValidationFailedError(result)
        return result

    def collect(
        self,
        schema: Type[BaseModel],
        data: Any,
        partial: bool = False,
        prefix: str = "",
    ) -> Union[Dict[str, Any], List[FieldError]]:
        """Like validate(), but return the error list instead of raising."""
        target = build_partial_schema(schema) if partial else schema
        if not isinstance(data, Mapping):
            return [FieldError(prefix or "body", "Expected an object", "model_type")]

        known = {
            key: value for key, value in data.items()
            if key in target.model_fields
        }
        try:
            model = target.model_validate(known)
        except ValidationError as exc:
            return _field_errors(exc, prefix)
        return model.model_dump(exclude_unset=partial)

    def validate_entity(
        self,
        descriptor: ModelDescriptor,
        payload: Mapping[str, Any],
        partial: bool = False,
        prefix: str = "",
    ) -> Dict[str, Any]:
        """Validate the scalar part of an entity payload (relations are ignored)."""
        scalars = {
            key: value for key, value in payload.items()
            if not descriptor.is_relation(key)
        }
        return self.validate(descriptor.schema, scalars, partial=partial, prefix=prefix)

    def validate_tree(
        self,
        descriptor: ModelDescriptor,
        tree: WriteTree,
        prefix: str = "",
    ) -> None:
        """
        Validate nested create/update payloads of a WriteTree in place.

        Nested scalars are replaced by their validated form. Relations without
        metadata are left untouched. Every problem in the tree is collected
        before raising.

        Raises:
            ValidationFailedError: Aggregated errors from every nested payload
        """
        errors: List[FieldError] = []
        self._validate_relations(descriptor, tree, prefix, errors)
        if errors:
            raise ValidationFailedError(errors)

    def _validate_relations(
        self,
        descriptor: ModelDescriptor,
        tree: WriteTree,
        prefix: str,
        errors: List[FieldError],
    ) -> None:
        for name, relation in tree.relations.items():
            related = descriptor.related(name)
            if related is None:
                continue
            path = f"{prefix}.{name}" if prefix else name
            self._validate_relation(related, relation, path, errors)

    def _validate_relation(
        self,
        related: ModelDescriptor,
        relation: RelationWrite,
        path: str,
        errors: List[FieldError],
    ) -> None:
        for op, partial in (("create", False), ("update", True)):
            value = getattr(relation, op)
            if value is None:
                continue
            items = value if isinstance(value, list) else [value]
            for index, item in enumerate(items):
                item_path = f"{path}.{op}" if not isinstance(value, list) else f"{path}.{op}.{index}"
                subtree = item.data if isinstance(item, TargetedUpdate) else item
                result = self.collect(related.schema, subtree.scalars, partial=partial, prefix=item_path)
                if isinstance(result, list):
                    errors.extend(result)
                else:
                    subtree.scalars = result
                self._validate_relations(related, subtree, item_path, errors)


def validate(schema: Type[BaseModel], data: Any) -> Dict[str, Any]:
    return SchemaValidator().validate(schema, data)


def validate_partial(schema: Type[BaseModel], data: Any) -> Dict[str, Any]:
    return SchemaValidator().validate(schema, data, partial=True)
