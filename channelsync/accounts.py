"""
accounts.py — Channel account connection state

Business Rules:
- test_connection is the only inline (non-queued) channel call
- A successful test moves the account to CONNECTED; a channel error to ERROR
- Being rate limited is not a failed test: the state is left alone
- Disconnect is a soft delete: DISCONNECTED + inactive, queued work is cancelled
- Accounts are never hard-deleted so ledger rows keep their reference

Called by: routers/accounts.py, context.py
Depends on: models/accounts.py, rate_governor.py, channels/registry.py
"""

from datetime import datetime, timezone

from loguru import logger

from .config import settings
from .errors import ChannelError, NotFoundError, RateLimitedError
from .models import AccountState, ChannelAccount, JobStatus, SyncJob


def account_dict(a: ChannelAccount) -> dict:
    return {
        "id": a.id,
        "merchant_id": a.merchant_id,
        "channel_code": a.channel_code,
        "name": a.name,
        "shop_id": a.shop_id,
        "state": a.state,
        "is_active": a.is_active,
        "last_synced_at": a.last_synced_at.isoformat() if a.last_synced_at else None,
        "last_order_pull_at": a.last_order_pull_at.isoformat() if a.last_order_pull_at else None,
        "last_error": a.last_error,
    }


class AccountService:
    def __init__(self, session_factory, governor, adapter_factory):
        self._session_factory = session_factory
        self.governor = governor
        self._adapter_factory = adapter_factory

    def list(self, merchant_id: int | None = None, include_inactive: bool = False) -> list[dict]:
        with self._session_factory() as db:
            q = db.query(ChannelAccount)
            if merchant_id is not None:
                q = q.filter(ChannelAccount.merchant_id == merchant_id)
            if not include_inactive:
                q = q.filter(ChannelAccount.is_active.is_(True))
            return [account_dict(a) for a in q.order_by(ChannelAccount.id).all()]

    async def test_connection(self, account_id: int) -> dict:
        with self._session_factory() as db:
            account = db.get(ChannelAccount, account_id)
            if account is None:
                raise NotFoundError(f"account {account_id} not found")

        ok, info, error = False, {}, None
        try:
            adapter = self._adapter_factory(account)
            adapter.gate = self.governor.gate(account, timeout=settings.governor_acquire_timeout_seconds)
            info = await adapter.test_connection()
            ok = True
        except RateLimitedError:
            raise
        except ChannelError as e:
            error = str(e)
            logger.warning("Connection test failed for account {}: {}", account_id, e)

        with self._session_factory() as db:
            row = db.get(ChannelAccount, account_id)
            if ok:
                row.state = AccountState.CONNECTED
                row.last_error = None
                row.is_active = True
            else:
                row.state = AccountState.ERROR
                row.last_error = error
            db.commit()
            result = account_dict(row)

        result.update({"ok": ok, "info": info, "error": error})
        return result

    def disconnect(self, account_id: int) -> dict:
        with self._session_factory() as db:
            account = db.get(ChannelAccount, account_id)
            if account is None:
                raise NotFoundError(f"account {account_id} not found")
            account.state = AccountState.DISCONNECTED
            account.is_active = False
            cancelled = 0
            now = datetime.now(timezone.utc)
            for job in db.query(SyncJob).filter(SyncJob.status == JobStatus.QUEUED):
                if (job.payload or {}).get("account_id") == account_id:
                    job.status = JobStatus.CANCELLED
                    job.finished_at = now
                    cancelled += 1
            db.commit()
            result = account_dict(account)

        self.governor.forget(account_id)
        logger.info("Account {} disconnected ({} queued job(s) cancelled)", account_id, cancelled)
        result["cancelled_jobs"] = cancelled
        return result
