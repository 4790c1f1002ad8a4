"""Channel Accounts API — list, connection test, soft disconnect."""

from fastapi import APIRouter, Depends, Query

from ..context import SyncContext
from ..dependencies import get_context
from ..schemas.responses import AccountListResponse, AccountOut

router = APIRouter(tags=["accounts"])


@router.get("/api/accounts", response_model=AccountListResponse)
def list_accounts(
    merchant_id: int | None = Query(None),
    include_inactive: bool = Query(False),
    ctx: SyncContext = Depends(get_context),
):
    accounts = ctx.accounts.list(merchant_id=merchant_id, include_inactive=include_inactive)
    return {"accounts": accounts, "total": len(accounts)}


@router.post("/api/accounts/{account_id}/test", response_model=AccountOut)
async def test_account(account_id: int, ctx: SyncContext = Depends(get_context)):
    return await ctx.accounts.test_connection(account_id)


@router.post("/api/accounts/{account_id}/disconnect", response_model=AccountOut)
def disconnect_account(account_id: int, ctx: SyncContext = Depends(get_context)):
    return ctx.accounts.disconnect(account_id)
