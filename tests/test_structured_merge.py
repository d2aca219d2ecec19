import copy

import pytest

from utils.structured_merge import (
    merge_structured_values,
    sanitize_structured_object,
    sanitize_structured_value,
    stable_stringify,
)

SAMPLES = [
    {"traits": [" Brave", "brave ", "loyal"], "hp": 10},
    [" Foo", "foo ", "bar", {"b": 1, "a": 2}, {"a": 2, "b": 1}],
    {"nested": {"tags": ["A", "a"], "note": "  padded  "}, "flag": True},
    "  plain  ",
    42,
    None,
]


@pytest.mark.parametrize("value", SAMPLES)
def test_merge_with_own_sanitized_form_is_idempotent(value):
    sanitized = sanitize_structured_value(value)
    assert merge_structured_values(value, sanitized) == sanitized


def test_array_dedupe_keeps_first_casing():
    assert sanitize_structured_value([" Foo", "foo ", "bar"]) == ["Foo", "bar"]


def test_object_dedupe_ignores_key_order():
    assert sanitize_structured_value([{"a": 1, "b": 2}, {"b": 2, "a": 1}]) == [{"a": 1, "b": 2}]


def test_disjoint_patches_match_a_single_combined_patch():
    base = {"name": "Mira"}
    first = {"goals": ["find the relic"]}
    second = {"mood": "wary"}

    sequential = merge_structured_values(merge_structured_values(base, first), second)
    combined = merge_structured_values(base, {**first, **second})

    assert sequential == combined


def test_arrays_concatenate_and_objects_merge_recursively():
    target = {"traits": {"personality": ["stoic"]}, "hp": 10}
    source = {"traits": {"personality": ["Stoic", "curious"], "physical": ["scar"]}, "hp": 7}

    merged = merge_structured_values(target, source)

    assert merged == {
        "traits": {"personality": ["stoic", "curious"], "physical": ["scar"]},
        "hp": 7,
    }


def test_scalar_source_overwrites_container():
    assert merge_structured_values({"hp": {"max": 10}}, {"hp": 3}) == {"hp": 3}
    assert merge_structured_values({"hp": 3}, {"hp": None}) == {"hp": None}


def test_merge_does_not_mutate_inputs():
    target = {"tags": ["a"], "meta": {"x": 1}}
    source = {"tags": ["b"], "meta": {"y": 2}}
    target_before = copy.deepcopy(target)
    source_before = copy.deepcopy(source)

    merge_structured_values(target, source)

    assert target == target_before
    assert source == source_before


def test_stable_stringify_is_order_and_case_insensitive():
    assert stable_stringify({"b": " X", "a": 1}) == stable_stringify({"a": 1, "b": "x"})


def test_sanitize_object_rejects_non_objects():
    assert sanitize_structured_object(None) == {}
    assert sanitize_structured_object(["a"]) == {}
    assert sanitize_structured_object({"k": " v "}) == {"k": "v"}
