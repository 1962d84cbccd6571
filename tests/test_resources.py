"""Tests for resource types, predicate handling, and filter merging."""

import uuid

import pytest

from dashboard_sync.resources import (
    FetchResult,
    InvalidPredicateError,
    ResourceType,
    SubscriptionError,
    UnknownResourceError,
    filter_rows,
    filters_cover,
    matches,
    merge_predicates,
    normalize_predicate,
)


class TestResourceType:
    def test_parse_accepts_enum_and_string(self):
        assert ResourceType.parse(ResourceType.LEADS) is ResourceType.LEADS
        assert ResourceType.parse("conversations") is ResourceType.CONVERSATIONS

    def test_parse_rejects_unknown(self):
        with pytest.raises(UnknownResourceError):
            ResourceType.parse("invoices")

    def test_unknown_resource_is_a_subscription_error(self):
        assert issubclass(UnknownResourceError, SubscriptionError)
        assert issubclass(SubscriptionError, ValueError)

    def test_closed_set(self):
        assert {rt.value for rt in ResourceType} == {
            "leads", "projects", "clients", "conversations", "messages",
        }


class TestNormalizePredicate:
    def test_none_and_empty_mean_all_rows(self):
        assert normalize_predicate(None) == {}
        assert normalize_predicate({}) == {}

    def test_scalar_becomes_single_value_tuple(self):
        assert normalize_predicate({"project_id": "p1"}) == {"project_id": ("p1",)}

    def test_collection_deduplicated_in_order(self):
        pred = normalize_predicate({"project_id": ["p2", "p1", "p2"]})
        assert pred == {"project_id": ("p2", "p1")}

    def test_none_value_leaves_key_unconstrained(self):
        assert normalize_predicate({"project_id": None, "state": "new_lead"}) == {
            "state": ("new_lead",),
        }

    def test_uuid_values_become_strings(self):
        pid = uuid.uuid4()
        assert normalize_predicate({"project_id": pid}) == {"project_id": (str(pid),)}
        assert normalize_predicate({"project_id": [pid, str(pid)]}) == {"project_id": (str(pid),)}

    def test_bool_and_int_kept_apart(self):
        assert normalize_predicate({"flag": (1, True, 1)}) == {"flag": (1, True)}

    @pytest.mark.parametrize(
        "predicate",
        [
            "project_id=p1",
            ["project_id"],
            {1: "p1"},
            {"": "p1"},
            {"project_id": []},
            {"project_id": {"nested": True}},
            {"project_id": [["p1"]]},
        ],
    )
    def test_malformed_predicates_rejected(self, predicate):
        with pytest.raises(InvalidPredicateError):
            normalize_predicate(predicate)


class TestFiltering:
    ROWS = [
        {"id": 1, "project_id": "p1", "state": "new_lead"},
        {"id": 2, "project_id": "p1", "state": "qualified"},
        {"id": 3, "project_id": "p2", "state": "new_lead"},
    ]

    def test_equality(self):
        rows = filter_rows(self.ROWS, {"project_id": ("p1",)})
        assert [r["id"] for r in rows] == [1, 2]

    def test_in_set(self):
        rows = filter_rows(self.ROWS, {"project_id": ("p1", "p2"), "state": ("new_lead",)})
        assert [r["id"] for r in rows] == [1, 3]

    def test_empty_predicate_passes_everything(self):
        assert filter_rows(self.ROWS, {}) == self.ROWS

    def test_missing_field_does_not_match(self):
        assert not matches({"id": 9}, {"project_id": ("p1",)})

    def test_uuid_predicate_matches_string_ids(self):
        pid = uuid.uuid4()
        predicate = normalize_predicate({"project_id": pid})
        assert matches({"project_id": str(pid)}, predicate)
        assert not matches({"project_id": str(uuid.uuid4())}, predicate)

    def test_bool_does_not_match_int(self):
        assert not matches({"flag": True}, normalize_predicate({"flag": 1}))
        assert not matches({"flag": 0}, normalize_predicate({"flag": False}))
        assert matches({"flag": True}, normalize_predicate({"flag": True}))
        assert matches({"score": 1.0}, normalize_predicate({"score": 1}))


class TestMergePredicates:
    def test_union_of_values(self):
        merged = merge_predicates([{"project_id": ("p1",)}, {"project_id": ("p2", "p1")}])
        assert merged == {"project_id": ["p1", "p2"]}

    def test_any_empty_predicate_means_unfiltered(self):
        merged = merge_predicates([{"project_id": ("p1",)}, {}])
        assert merged == {}

    def test_key_not_shared_by_all_is_dropped(self):
        merged = merge_predicates([
            {"project_id": ("p1",), "state": ("new_lead",)},
            {"project_id": ("p2",)},
        ])
        assert merged == {"project_id": ["p1", "p2"]}

    def test_disjoint_keys_fall_back_to_unfiltered(self):
        assert merge_predicates([{"project_id": ("p1",)}, {"lead_id": ("l1",)}]) == {}

    def test_merged_filter_is_superset_of_each_member(self):
        rows = [
            {"project_id": p, "state": s}
            for p in ("p1", "p2", "p3")
            for s in ("new_lead", "qualified")
        ]
        members = [
            {"project_id": ("p1",), "state": ("qualified",)},
            {"project_id": ("p2",)},
        ]
        merged = merge_predicates(members)
        batch = filter_rows(rows, merged)
        for member in members:
            assert filter_rows(rows, member) == filter_rows(batch, member)


class TestFiltersCover:
    def test_unfiltered_entry_covers_anything(self):
        assert filters_cover({}, {"project_id": ["p1"]})
        assert filters_cover({}, {})

    def test_subset_of_values_is_covered(self):
        assert filters_cover({"project_id": ["p1", "p2"]}, {"project_id": ["p2"]})

    def test_new_value_is_not_covered(self):
        assert not filters_cover({"project_id": ["p1"]}, {"project_id": ["p1", "p3"]})

    def test_filtered_entry_does_not_cover_unfiltered_request(self):
        assert not filters_cover({"project_id": ["p1"]}, {})

    def test_bool_does_not_cover_int(self):
        assert not filters_cover({"flag": [True]}, {"flag": [1]})


def test_fetch_result_ok_copies_rows():
    source = [{"id": 1}]
    result = FetchResult.ok(source)
    result.data[0]["id"] = 2
    assert source[0]["id"] == 1
    assert FetchResult.ok(None).data == []
    assert FetchResult.failure("boom").success is False
    assert FetchResult.ok([]).filters is None


def test_fetch_result_ok_records_served_filter():
    result = FetchResult.ok([{"lead_id": "l1"}], filters={"lead_id": ("l1",)})
    assert result.filters == {"lead_id": ["l1"]}
