"""
schemas/rules.py — Pydantic models for Sync Rule CRUD

Business Rules:
- name required, max 255 chars
- PERCENTAGE needs 0 <= parameter <= 100
- OFFSET needs an integer parameter
- THRESHOLD needs parameter >= 0
- CUSTOM needs an expression that compiles in the sandbox and only uses
  known stock fields
- PRODUCT_LIST needs product_ids, CATEGORY needs category_ids
- At least one target account (ownership/CONNECTED checked in the router)

Called by: routers/rules.py
Depends on: pydantic, expressions.py
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from ..expressions import ExpressionError, compile_expression, names
from ..models import Scope, Strategy
from ..stock_sync import CUSTOM_FIELDS


class SyncRuleCreate(BaseModel):
    merchant_id: int
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    strategy: str = Strategy.EXACT
    scope: str = Scope.ALL_PRODUCTS
    product_ids: list[int] = Field(default_factory=list)
    category_ids: list[int] = Field(default_factory=list)
    target_account_ids: list[int] = Field(min_length=1)
    parameter: float | None = None
    expression: str | None = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("strategy", "scope", mode="before")
    @classmethod
    def upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("strategy")
    @classmethod
    def known_strategy(cls, v: str) -> str:
        if v not in Strategy.ALL:
            raise ValueError(f"strategy must be one of {', '.join(Strategy.ALL)}")
        return v

    @field_validator("scope")
    @classmethod
    def known_scope(cls, v: str) -> str:
        if v not in Scope.ALL:
            raise ValueError(f"scope must be one of {', '.join(Scope.ALL)}")
        return v

    @field_validator("target_account_ids")
    @classmethod
    def dedupe_targets(cls, v: list[int]) -> list[int]:
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def check_strategy_and_scope(self):
        p = self.parameter
        if self.strategy == Strategy.PERCENTAGE:
            if p is None or not 0 <= p <= 100:
                raise ValueError("PERCENTAGE needs a parameter between 0 and 100")
        elif self.strategy == Strategy.OFFSET:
            if p is None or not float(p).is_integer():
                raise ValueError("OFFSET needs an integer parameter")
        elif self.strategy == Strategy.THRESHOLD:
            if p is None or p < 0:
                raise ValueError("THRESHOLD needs a parameter >= 0")
        elif self.strategy == Strategy.CUSTOM:
            if not self.expression:
                raise ValueError("CUSTOM needs an expression")
            try:
                tree = compile_expression(self.expression)
            except ExpressionError as e:
                raise ValueError(f"invalid expression: {e}") from e
            unknown = names(tree) - set(CUSTOM_FIELDS)
            if unknown:
                raise ValueError(f"unknown field(s) in expression: {', '.join(sorted(unknown))}")

        if self.scope == Scope.PRODUCT_LIST and not self.product_ids:
            raise ValueError("PRODUCT_LIST scope needs product_ids")
        if self.scope == Scope.CATEGORY and not self.category_ids:
            raise ValueError("CATEGORY scope needs category_ids")
        return self


class SyncRuleUpdate(BaseModel):
    """Partial update; merged onto the stored rule and re-validated as a whole."""

    name: str | None = None
    description: str | None = None
    strategy: str | None = None
    scope: str | None = None
    product_ids: list[int] | None = None
    category_ids: list[int] | None = None
    target_account_ids: list[int] | None = None
    parameter: float | None = None
    expression: str | None = None
    is_active: bool | None = None


class SyncRuleOut(BaseModel, extra="allow"):
    id: int
    merchant_id: int
    name: str
    strategy: str
    scope: str
    target_account_ids: list[int] = Field(default_factory=list)
    parameter: float | None = None
    expression: str | None = None
    is_active: bool = True
