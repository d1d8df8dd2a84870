from __future__ import annotations

from decimal import Decimal

import pytest

from stagegate.transitions.conditions import (
    MAX_CONDITION_DEPTH,
    ConditionSyntaxError,
    evaluate_condition,
    parse_condition,
    resolve_path,
)

CONTEXT = {
    "estimated_value": Decimal("82000.00"),
    "category": "commercial",
    "contact_name": "Dana Reyes",
    "workflow_metadata": {"documents": ["contract", "insurance_card"], "source": "referral"},
    "project": {"selling_price": "15000", "signed_on": "2026-03-01"},
}


def _check(payload: dict) -> bool:
    return evaluate_condition(parse_condition(payload), CONTEXT)


def test_leaf_operators() -> None:
    assert _check({"path": "estimated_value", "op": "gte", "value": 75000})
    assert not _check({"path": "estimated_value", "op": "lt", "value": 50000})
    assert _check({"path": "category", "op": "eq", "value": "commercial"})
    assert _check({"path": "category", "op": "neq", "value": "residential"})
    assert _check({"path": "category", "op": "in", "value": ["commercial", "industrial"]})
    assert _check({"path": "workflow_metadata.documents", "op": "contains", "value": "contract"})
    assert _check({"path": "contact_name", "op": "contains", "value": "Reyes"})
    assert _check({"path": "workflow_metadata.source", "op": "exists"})


def test_numeric_strings_and_dates_compare_by_value() -> None:
    assert _check({"path": "project.selling_price", "op": "gt", "value": 9999.5})
    assert _check({"path": "project.signed_on", "op": "lt", "value": "2026-04-01"})


def test_missing_paths_fail_closed() -> None:
    assert not _check({"path": "gross_profit", "op": "gte", "value": 0})
    assert not _check({"path": "gross_profit", "op": "exists"})
    assert _check({"not": {"path": "gross_profit", "op": "exists"}})


def test_combinators() -> None:
    assert _check(
        {
            "all": [
                {"path": "category", "op": "eq", "value": "commercial"},
                {"any": [{"path": "estimated_value", "op": "gt", "value": 1_000_000}, {"path": "contact_name", "op": "exists"}]},
            ]
        }
    )
    assert not _check({"all": [{"path": "category", "op": "eq", "value": "commercial"}, {"path": "category", "op": "eq", "value": "x"}]})


def test_resolve_path_reports_presence() -> None:
    assert resolve_path(CONTEXT, "workflow_metadata.source") == (True, "referral")
    assert resolve_path(CONTEXT, "workflow_metadata.source.deeper") == (False, None)


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"path": "category"},
        {"path": "category", "op": "matches", "value": ".*"},
        {"all": {"path": "category", "op": "eq", "value": "x"}},
        {"all": []},
    ],
)
def test_malformed_conditions_are_rejected(payload: object) -> None:
    with pytest.raises(ConditionSyntaxError):
        parse_condition(payload)


def test_nesting_depth_is_bounded() -> None:
    payload: dict = {"path": "category", "op": "exists"}
    for _ in range(MAX_CONDITION_DEPTH + 1):
        payload = {"not": payload}
    with pytest.raises(ConditionSyntaxError):
        parse_condition(payload)
