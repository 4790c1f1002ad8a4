"""
routers/rules.py — Sync Rule CRUD

Business Rules:
- Body validation (strategy parameters, scope lists, CUSTOM expression) in schemas/rules.py
- Every target account must belong to the rule's merchant and be CONNECTED + active
- Updates are merged onto the stored rule and validated as a whole
- Deactivating or deleting a rule cancels its still-queued pushes

Called by: main.py (router mount)
Depends on: models/rules.py, schemas/rules.py, context.py (backlog)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..context import SyncContext
from ..database import get_db
from ..dependencies import get_context
from ..models import AccountState, ChannelAccount, SyncRule
from ..schemas.rules import SyncRuleCreate, SyncRuleOut, SyncRuleUpdate

log = logging.getLogger(__name__)

router = APIRouter(tags=["rules"])


def _check_targets(db: Session, merchant_id: int, account_ids: list[int]) -> None:
    accounts = {
        a.id: a for a in db.query(ChannelAccount).filter(ChannelAccount.id.in_(account_ids)).all()
    }
    for aid in account_ids:
        account = accounts.get(aid)
        if account is None or account.merchant_id != merchant_id:
            raise HTTPException(422, f"Target account {aid} not found for this merchant")
        if not account.is_active or account.state != AccountState.CONNECTED:
            raise HTTPException(422, f"Target account {aid} is {account.state}, not CONNECTED")


def _get_rule(db: Session, rule_id: int) -> SyncRule:
    rule = db.get(SyncRule, rule_id)
    if not rule:
        raise HTTPException(404, "Sync rule not found")
    return rule


@router.get("/api/sync/rules", response_model=list[SyncRuleOut])
def list_rules(
    merchant_id: int | None = Query(None),
    active: bool | None = Query(None),
    db: Session = Depends(get_db),
):
    q = db.query(SyncRule)
    if merchant_id is not None:
        q = q.filter(SyncRule.merchant_id == merchant_id)
    if active is not None:
        q = q.filter(SyncRule.is_active.is_(active))
    return [r.to_dict() for r in q.order_by(SyncRule.id).all()]


@router.post("/api/sync/rules", response_model=SyncRuleOut, status_code=201)
def create_rule(body: SyncRuleCreate, db: Session = Depends(get_db)):
    _check_targets(db, body.merchant_id, body.target_account_ids)
    rule = SyncRule(**body.model_dump())
    db.add(rule)
    db.commit()
    log.info(f"Sync rule {rule.id} '{rule.name}' created ({rule.strategy}, {rule.scope})")
    return rule.to_dict()


@router.get("/api/sync/rules/{rule_id}", response_model=SyncRuleOut)
def get_rule(rule_id: int, db: Session = Depends(get_db)):
    return _get_rule(db, rule_id).to_dict()


@router.put("/api/sync/rules/{rule_id}", response_model=SyncRuleOut)
def update_rule(
    rule_id: int,
    body: SyncRuleUpdate,
    db: Session = Depends(get_db),
    ctx: SyncContext = Depends(get_context),
):
    rule = _get_rule(db, rule_id)
    changes = body.model_dump(exclude_unset=True)
    merged = {**rule.to_dict(), **changes}
    try:
        validated = SyncRuleCreate.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(422, "; ".join(err["msg"] for err in e.errors()))
    if "target_account_ids" in changes:
        _check_targets(db, rule.merchant_id, validated.target_account_ids)

    was_active = rule.is_active
    for key in changes:
        setattr(rule, key, getattr(validated, key))
    db.commit()
    result = rule.to_dict()

    if was_active and not rule.is_active:
        ctx.backlog.cancel_queued(source_ref=f"rule:{rule_id}")
        log.info(f"Sync rule {rule_id} deactivated")
    return result


@router.delete("/api/sync/rules/{rule_id}")
def delete_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    ctx: SyncContext = Depends(get_context),
):
    rule = _get_rule(db, rule_id)
    db.delete(rule)
    db.commit()
    cancelled = ctx.backlog.cancel_queued(source_ref=f"rule:{rule_id}")
    log.info(f"Sync rule {rule_id} deleted, {cancelled} queued push(es) cancelled")
    return {"ok": True, "cancelled_jobs": cancelled}
