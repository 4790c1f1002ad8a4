"""
tests/test_schemas_rules.py — Tests for sync rule and request body schemas

Called by: pytest
Depends on: schemas/rules.py, schemas/sync.py
"""

import pytest
from pydantic import ValidationError

from channelsync.schemas.rules import SyncRuleCreate, SyncRuleUpdate
from channelsync.schemas.sync import InventoryAdjustRequest, OrderStatusUpdate, SyncTriggerRequest


def _rule(**kw):
    return {"merchant_id": 1, "name": "Rule", "target_account_ids": [1], **kw}


# ── SyncRuleCreate ────────────────────────────────────────────────────


def test_defaults():
    rule = SyncRuleCreate(**_rule())
    assert rule.strategy == "EXACT"
    assert rule.scope == "ALL_PRODUCTS"
    assert rule.is_active is True


def test_strategy_and_scope_normalized():
    rule = SyncRuleCreate(**_rule(strategy=" threshold ", parameter=5, scope="category", category_ids=[3]))
    assert rule.strategy == "THRESHOLD"
    assert rule.scope == "CATEGORY"


def test_targets_deduplicated():
    assert SyncRuleCreate(**_rule(target_account_ids=[2, 1, 2])).target_account_ids == [2, 1]


@pytest.mark.parametrize("parameter", [0, 50, 100])
def test_percentage_bounds_ok(parameter):
    SyncRuleCreate(**_rule(strategy="PERCENTAGE", parameter=parameter))


@pytest.mark.parametrize(
    "kw,message",
    [
        ({"strategy": "PERCENTAGE", "parameter": -1}, "between 0 and 100"),
        ({"strategy": "PERCENTAGE", "parameter": 100.5}, "between 0 and 100"),
        ({"strategy": "OFFSET", "parameter": 2.5}, "integer"),
        ({"strategy": "OFFSET"}, "integer"),
        ({"strategy": "THRESHOLD", "parameter": -3}, ">= 0"),
        ({"strategy": "CUSTOM"}, "needs an expression"),
        ({"strategy": "CUSTOM", "expression": "quantity.real"}, "invalid expression"),
        ({"strategy": "CUSTOM", "expression": "quantity * weight"}, "weight"),
        ({"scope": "PRODUCT_LIST"}, "product_ids"),
        ({"scope": "CATEGORY"}, "category_ids"),
        ({"scope": "WAREHOUSE"}, "scope must be one of"),
        ({"strategy": "ROUND_ROBIN"}, "strategy must be one of"),
        ({"target_account_ids": []}, "at least 1"),
        ({"name": ""}, "at least 1"),
    ],
)
def test_invalid_rules(kw, message):
    with pytest.raises(ValidationError) as exc:
        SyncRuleCreate(**_rule(**kw))
    assert message in str(exc.value)


def test_offset_accepts_negative_integers():
    assert SyncRuleCreate(**_rule(strategy="OFFSET", parameter=-5)).parameter == -5


def test_custom_expression_with_known_fields():
    rule = SyncRuleCreate(**_rule(strategy="CUSTOM", expression="min(available, floor(last_pushed * 1.1))"))
    assert rule.expression.startswith("min(")


def test_update_is_partial():
    assert SyncRuleUpdate(parameter=3).model_dump(exclude_unset=True) == {"parameter": 3}


# ── Request bodies ────────────────────────────────────────────────────


def test_trigger_dedupes_and_limits():
    assert SyncTriggerRequest(product_ids=[3, 3, 1]).product_ids == [3, 1]
    with pytest.raises(ValidationError):
        SyncTriggerRequest(product_ids=list(range(501)))


@pytest.mark.parametrize("body", [{"quantity": 5}, {"delta": -2}, {"delta": 4, "reason": "restock"}])
def test_adjust_valid(body):
    InventoryAdjustRequest(**body)


@pytest.mark.parametrize("body", [{}, {"quantity": 1, "delta": 1}, {"delta": 0}, {"quantity": -5}])
def test_adjust_invalid(body):
    with pytest.raises(ValidationError):
        InventoryAdjustRequest(**body)


def test_order_status_canonicalized():
    assert OrderStatusUpdate(status=" shipped ").status == "SHIPPED"
    with pytest.raises(ValidationError):
        OrderStatusUpdate(status="LOST")
