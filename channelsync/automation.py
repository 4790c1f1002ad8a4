"""
automation.py — Merchant order automation rules

Evaluated after every order status write. A rule fires when all of its
conditions hold; its actions then run in order. Each action that changes
the order leaves an AUTOMATION entry on the order timeline.

Business Rules:
- Condition fields: status, total_amount, channel, customer_email, needs_review
- Operators: equals, not_equals, greater_than, less_than, contains
- Unknown fields or operators never match
- Actions: add_tag (no-op if already tagged), assign_to_user
- Unknown actions are logged and skipped

Called by: order_sync.py
Depends on: models/orders.py, utils (safe_float)
"""

import logging

from .models import Order, OrderAutomationRule, OrderStatusEvent
from .utils import safe_float

log = logging.getLogger(__name__)

FIELDS = ("status", "total_amount", "channel", "customer_email", "needs_review")
OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains")
ACTIONS = ("add_tag", "assign_to_user")

AUTOMATION = "AUTOMATION"


def field_value(order: Order, name: str):
    if name == "status":
        return order.status
    if name == "total_amount":
        return order.total_amount
    if name == "channel":
        return order.account.channel_code if order.account else None
    if name == "customer_email":
        return (order.customer or {}).get("email")
    if name == "needs_review":
        return bool(order.needs_review)
    return None


def evaluate_condition(condition: dict, order: Order) -> bool:
    name = condition.get("field")
    op = condition.get("operator")
    expected = condition.get("value")
    if name not in FIELDS:
        return False
    actual = field_value(order, name)

    if op == "equals":
        return actual == expected
    if op == "not_equals":
        return actual != expected
    if op in ("greater_than", "less_than"):
        a, b = safe_float(actual), safe_float(expected)
        if a is None or b is None:
            return False
        return a > b if op == "greater_than" else a < b
    if op == "contains":
        return actual is not None and expected is not None and str(expected) in str(actual)
    return False


def rule_matches(rule: OrderAutomationRule, order: Order) -> bool:
    conditions = rule.conditions or []
    return all(evaluate_condition(c, order) for c in conditions)


def apply_rules(db, order: Order, rules: list[OrderAutomationRule]) -> list[str]:
    """Run matching rules against ``order`` inside the caller's transaction.

    Returns a description of each action applied.
    """
    applied = []
    for rule in rules:
        if not rule_matches(rule, order):
            continue
        for action in rule.actions or []:
            kind = action.get("type")
            value = action.get("value")
            if kind == "add_tag":
                tags = list(order.tags or [])
                if not value or value in tags:
                    continue
                order.tags = tags + [value]
                note = f"tag '{value}' added by rule '{rule.name}'"
            elif kind == "assign_to_user":
                if not value or order.assigned_to == value:
                    continue
                order.assigned_to = value
                note = f"assigned to {value} by rule '{rule.name}'"
            else:
                log.warning(f"Automation rule {rule.id}: unknown action {kind!r}")
                continue
            db.add(
                OrderStatusEvent(
                    order_id=order.id,
                    from_status=order.status,
                    to_status=order.status,
                    actor=AUTOMATION,
                    reason=note,
                )
            )
            applied.append(note)
    if applied:
        log.info(f"Order {order.id}: {len(applied)} automation action(s) applied")
    return applied


def active_rules(db, merchant_id: int) -> list[OrderAutomationRule]:
    return (
        db.query(OrderAutomationRule)
        .filter(OrderAutomationRule.merchant_id == merchant_id, OrderAutomationRule.is_active.is_(True))
        .order_by(OrderAutomationRule.id)
        .all()
    )
