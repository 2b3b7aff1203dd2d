"""
Tests for QueryParamTranslator.

Covers allow-list enforcement per identifier class, include depth,
page-size clamping vs. rejection, value coercion and soft-delete
injection.

Tests follow AAA (Arrange, Act, Assert) pattern.
"""

from datetime import datetime

import pytest

from datagate.core.errors import (
    DisallowedFieldError,
    IncludeDepthExceededError,
    InvalidJSONParameterError,
    LimitExceededError,
    MalformedPayloadError,
    UnsupportedOperationError,
)
from datagate.schemas.descriptors import SecurityPolicy
from datagate.schemas.plans import Direction, FieldCondition, FilterGroup, QueryPlan
from datagate.services.query_params import (
    QueryParamTranslator,
    coerce_value,
    query_params_from_pairs,
    sanitize_string,
    translate_query_params,
)


@pytest.fixture
def translator() -> QueryParamTranslator:
    return QueryParamTranslator()


@pytest.fixture
def email_policy() -> SecurityPolicy:
    return SecurityPolicy(allowed_filters={"email"}, max_page_size=50)


@pytest.fixture
def product_policy() -> SecurityPolicy:
    return SecurityPolicy(
        allowed_filters={"name", "price", "in_stock"},
        allowed_sort_fields={"name", "price"},
        allowed_select_fields={"id", "name", "price"},
        allowed_includes={"category", "reviews", "category.products"},
        max_include_depth=2,
        max_page_size=100,
    )


def conditions(plan: QueryPlan):
    return {c.field: c.operators for c in plan.where.iter_conditions()} if plan.where else {}


class TestEmailPolicyScenarios:
    """The two reference scenarios for a policy allowing only ``email``."""

    def test_unlisted_filter_is_rejected_by_name(self, translator, email_policy):
        with pytest.raises(DisallowedFieldError) as exc_info:
            translator.translate({"status": "active", "email": "x@y.com"}, email_policy)

        assert exc_info.value.field == "status"
        assert exc_info.value.message == "Filtering by 'status' is not allowed"

    def test_limit_is_clamped_on_the_query_string_path(self, translator, email_policy):
        plan = translator.translate({"email": "x@y.com", "limit": "999"}, email_policy)

        assert plan.take == 50
        assert conditions(plan) == {"email": {"equals": "x@y.com"}}

    def test_limit_is_rejected_on_the_explicit_path(self, translator, email_policy):
        with pytest.raises(LimitExceededError):
            translator.from_search_body(
                {"where": {"email": "x@y.com"}, "take": 999}, email_policy
            )

    def test_validate_plan_rejects_oversized_take(self, translator, email_policy):
        with pytest.raises(LimitExceededError) as exc_info:
            translator.validate_plan(QueryPlan(take=51), email_policy)

        assert exc_info.value.maximum == 50


class TestAllowLists:
    """Every identifier class is checked against its own allow-list."""

    @pytest.mark.parametrize(
        "raw, operation, field",
        [
            ({"sort": "sku:asc"}, "Sorting", "sku"),
            ({"fields": "id,secret"}, "Selecting", "secret"),
            ({"include": '{"owner": true}'}, "Including", "owner"),
            ({"filter": '{"OR": [{"name": "a"}, {"sku": "b"}]}'}, "Filtering", "sku"),
            ({"filter": '{"NOT": {"cost": {"gt": 1}}}'}, "Filtering", "cost"),
        ],
    )
    def test_disallowed_identifier_is_named(self, translator, product_policy, raw, operation, field):
        with pytest.raises(DisallowedFieldError) as exc_info:
            translator.translate(raw, product_policy)

        assert exc_info.value.operation == operation
        assert exc_info.value.field == field

    def test_allowed_identifiers_are_accepted(self, translator, product_policy):
        plan = translator.translate(
            {
                "sort": "price:desc,name",
                "fields": "id,name",
                "include": '{"category": true}',
                "price": "gte:10",
            },
            product_policy,
        )

        assert plan.order_by == [("price", Direction.DESC), ("name", Direction.ASC)]
        assert plan.select == ["id", "name"]
        assert plan.include == {"category": None}
        assert conditions(plan) == {"price": {"gte": 10}}

    def test_default_policy_denies_everything(self, translator):
        with pytest.raises(DisallowedFieldError):
            translator.translate({"name": "x"}, SecurityPolicy())

    def test_dotted_include_path_is_allowed(self, translator, product_policy):
        plan = translator.translate(
            {"include": '{"category": {"include": {"products": true}}}'}, product_policy
        )

        assert plan.include == {"category": {"products": None}}


class TestIncludeDepth:
    """Inclusion depth is rejected at the first level beyond the maximum."""

    def test_depth_beyond_maximum_is_rejected(self, translator, product_policy):
        include = '{"category": {"products": {"reviews": true}}}'

        with pytest.raises(IncludeDepthExceededError) as exc_info:
            translator.translate({"include": include}, product_policy)

        assert exc_info.value.max_depth == 2

    def test_depth_is_checked_before_names_at_that_level(self, translator, product_policy):
        # "unknown" at depth 3 would be disallowed, but depth fails first
        include = '{"category": {"products": {"unknown": true}}}'

        with pytest.raises(IncludeDepthExceededError):
            translator.translate({"include": include}, product_policy)

    def test_disallowed_name_above_the_limit_is_reported_first(self, translator, product_policy):
        include = '{"secret": {"products": {"reviews": true}}}'

        with pytest.raises(DisallowedFieldError):
            translator.translate({"include": include}, product_policy)


class TestPagination:

    def test_defaults(self, translator, product_policy):
        plan = translator.translate({}, product_policy)

        assert (plan.page, plan.take, plan.skip) == (1, 10, 0)
        assert plan.where is None

    def test_page_is_floored_at_one(self, translator, product_policy):
        assert translator.translate({"page": "-3"}, product_policy).page == 1
        assert translator.translate({"page": "abc"}, product_policy).page == 1

    def test_skip_follows_page_and_limit(self, translator, product_policy):
        plan = translator.translate({"page": "3", "limit": "20"}, product_policy)

        assert plan.skip == 40
        assert plan.take == 20

    def test_limit_below_one_is_raised_to_one(self, translator, product_policy):
        assert translator.translate({"limit": "0"}, product_policy).take == 1

    def test_configured_default_page_size(self, product_policy):
        translator = QueryParamTranslator(default_page_size=25)

        assert translator.translate({}, product_policy).take == 25


class TestSortParsing:

    def test_malformed_pairs_are_dropped(self, translator, product_policy):
        plan = translator.translate({"sort": "name:sideways,price:desc,:asc,a:b:c"}, product_policy)

        assert plan.order_by == [("price", Direction.DESC)]

    def test_repeated_field_keeps_first_position_last_direction(self, translator, product_policy):
        plan = translator.translate({"sort": "name:asc,price:asc,name:desc"}, product_policy)

        assert plan.order_by == [("name", Direction.DESC), ("price", Direction.ASC)]


class TestSimpleFilters:

    def test_operator_prefix(self, translator, product_policy):
        plan = translator.translate({"price": "lt:9.5", "in_stock": "true"}, product_policy)

        assert conditions(plan) == {"price": {"lt": 9.5}, "in_stock": {"equals": True}}

    def test_in_list_elements_are_coerced(self, translator, product_policy):
        plan = translator.translate({"price": "in:1,2.5,3"}, product_policy)

        assert conditions(plan) == {"price": {"in": [1, 2.5, 3]}}

    def test_string_match_operators_are_not_coerced(self, translator, product_policy):
        plan = translator.translate({"name": "contains:123"}, product_policy)

        assert conditions(plan) == {"name": {"contains": "123"}}

    def test_unknown_prefix_is_part_of_the_value(self, translator, product_policy):
        plan = translator.translate({"name": "time:12"}, product_policy)

        assert conditions(plan) == {"name": {"equals": "time:12"}}

    def test_repeated_parameters_are_merged(self, translator, product_policy):
        raw = query_params_from_pairs([("price", "gte:10"), ("price", "lte:20")])

        plan = translator.translate(raw, product_policy)

        assert conditions(plan) == {"price": {"gte": 10, "lte": 20}}

    def test_oversized_integer_does_not_fail(self, translator, product_policy):
        digits = "9" * 5000

        plan = translator.translate({"price": f"gt:{digits}"}, product_policy)

        assert conditions(plan) == {"price": {"gt": digits}}


class TestJsonFilter:

    def test_invalid_json_is_rejected(self, translator, product_policy):
        with pytest.raises(InvalidJSONParameterError) as exc_info:
            translator.translate({"filter": "{not json"}, product_policy)

        assert exc_info.value.message == "Invalid JSON filter parameter"

    def test_invalid_include_json_is_rejected(self, translator, product_policy):
        with pytest.raises(InvalidJSONParameterError):
            translator.translate({"include": "[oops"}, product_policy)

    def test_oversized_integer_in_json_filter(self, translator, product_policy):
        with pytest.raises(InvalidJSONParameterError):
            translator.translate({"filter": '{"price": ' + "9" * 5000 + "}"}, product_policy)

    def test_non_object_filter_is_rejected(self, translator, product_policy):
        with pytest.raises(InvalidJSONParameterError):
            translator.translate({"filter": "[1, 2]"}, product_policy)

    def test_oversized_json_is_rejected(self, product_policy):
        translator = QueryParamTranslator(max_json_length=10)

        with pytest.raises(InvalidJSONParameterError):
            translator.translate({"filter": '{"name": "a long value"}'}, product_policy)

    def test_unknown_operator_is_rejected(self, translator, product_policy):
        with pytest.raises(UnsupportedOperationError):
            translator.translate({"filter": '{"name": {"regex": ".*"}}'}, product_policy)

    def test_groups_are_preserved(self, translator, product_policy):
        plan = translator.translate(
            {"filter": '{"OR": [{"name": "a"}, {"price": {"gt": 5}}], "in_stock": true}'},
            product_policy,
        )

        or_group = plan.where.children[0]
        assert isinstance(or_group, FilterGroup)
        assert or_group.kind == "or"
        assert [child.kind for child in or_group.children] == ["and", "and"]
        assert plan.where.children[1] == FieldCondition("in_stock", {"equals": True})

    def test_not_list_negates_each_item(self, translator, product_policy):
        """
        Test NOT with a list excludes rows matching any of its items.

        Arrange: NOT over two name conditions
        Act: Translate
        Assert: AND of one negated conjunction per item
        """
        plan = translator.translate(
            {"filter": '{"NOT": [{"name": "Alpha"}, {"name": "Beta"}]}'}, product_policy
        )

        group = plan.where.children[0]
        assert group.kind == "and"
        assert [child.kind for child in group.children] == ["not", "not"]
        assert group.children[0].children == [
            FilterGroup("and", [FieldCondition("name", {"equals": "Alpha"})])
        ]

    def test_not_object_negates_the_conjunction(self, translator, product_policy):
        plan = translator.translate(
            {"filter": '{"NOT": {"name": "Alpha", "in_stock": true}}'}, product_policy
        )

        group = plan.where.children[0]
        assert group.kind == "not"
        assert group.children == [
            FieldCondition("name", {"equals": "Alpha"}),
            FieldCondition("in_stock", {"equals": True}),
        ]

    def test_not_list_items_are_allow_listed(self, translator, product_policy):
        with pytest.raises(DisallowedFieldError):
            translator.translate({"filter": '{"NOT": [{"name": "a"}, {"cost": 1}]}'}, product_policy)


class TestSoftDelete:

    def test_marker_is_injected_and_exempt(self, translator):
        policy = SecurityPolicy(soft_delete=True)

        plan = translator.translate({}, policy)

        marker = plan.where.children[-1]
        assert marker == FieldCondition("deleted_at", {"equals": None}, exempt=True)

    def test_with_deleted_skips_marker(self, translator):
        plan = translator.translate({"withDeleted": "true"}, SecurityPolicy(soft_delete=True))

        assert plan.where is None

    def test_caller_filter_on_marker_is_kept(self, translator):
        policy = SecurityPolicy(soft_delete=True, allowed_filters={"deleted_at"})

        plan = translator.translate({"deleted_at": "not:null"}, policy)

        assert conditions(plan) == {"deleted_at": {"not": None}}

    def test_single_row_plan_only_honours_projection_and_inclusion(self, translator, product_policy):
        plan = translator.translate_single(
            {"fields": "id", "page": "4", "price": "gt:1"}, product_policy
        )

        assert plan.select == ["id"]
        assert (plan.skip, plan.take) == (0, 1)
        assert plan.where is None


class TestSearchBody:

    def test_unknown_keys_are_rejected(self, translator, product_policy):
        with pytest.raises(MalformedPayloadError):
            translator.from_search_body({"where": {}, "limit": 5}, product_policy)

    def test_full_body(self, translator, product_policy):
        plan = translator.from_search_body(
            {
                "where": {"price": {"gte": 5}},
                "orderBy": [{"price": "desc"}],
                "select": {"id": True, "name": True, "price": False},
                "skip": 20,
                "take": 10,
            },
            product_policy,
        )

        assert plan.page == 3
        assert plan.select == ["id", "name"]
        assert plan.order_by == [("price", Direction.DESC)]

    def test_negative_skip_is_rejected(self, translator, product_policy):
        with pytest.raises(MalformedPayloadError):
            translator.from_search_body({"skip": -1}, product_policy)


class TestCoercion:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("true", True),
            ("False", False),
            ("null", None),
            ("42", 42),
            ("-3.5", -3.5),
            ('{"a": 1}', {"a": 1}),
            ("[1, 2]", [1, 2]),
            ("plain", "plain"),
        ],
    )
    def test_inference(self, raw, expected):
        assert coerce_value(raw) == expected

    def test_iso_date(self):
        assert coerce_value("2024-05-01") == datetime(2024, 5, 1)

    def test_sanitizes_strings(self):
        assert coerce_value("<script>alert('x');</script>") == "scriptalert(x)/script"
        assert sanitize_string('a"b`c\\d') == "abcd"

    def test_never_decodes_oversized_json(self):
        assert coerce_value('{"a": 1}', max_json_length=3) == "{a: 1}"

    def test_integer_past_conversion_limit_stays_a_string(self):
        assert coerce_value("7" * 5000) == "7" * 5000

    def test_json_with_oversized_integer_is_not_decoded(self):
        raw = '{"a": ' + "1" * 5000 + "}"

        assert coerce_value(raw) == sanitize_string(raw)

    def test_module_level_helper(self, email_policy):
        plan = translate_query_params({"email": "a@b.c"}, email_policy)

        assert plan.take == 10
