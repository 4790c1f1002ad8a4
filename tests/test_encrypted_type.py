"""
tests/test_encrypted_type.py — Tests for encrypted channel credentials

Covers: ciphertext at rest, transparent load, legacy plaintext rows,
unreadable rows.

Called by: pytest
Depends on: utils/encrypted_type.py, models/accounts.py
"""

import json

from sqlalchemy import text

from channelsync.models import ChannelAccount
from channelsync.utils.encrypted_type import get_fernet


def _raw(db_session, account_id):
    return db_session.execute(
        text("SELECT credentials FROM channel_accounts WHERE id = :id"), {"id": account_id}
    ).scalar_one()


def test_credentials_encrypted_at_rest(db_session, make_account):
    account = make_account(credentials={"partner_key": "s3cret", "access_token": "tok"})

    stored = _raw(db_session, account.id)
    assert "s3cret" not in stored
    assert json.loads(get_fernet().decrypt(stored.encode())) == {"partner_key": "s3cret", "access_token": "tok"}

    db_session.expire_all()
    assert db_session.get(ChannelAccount, account.id).credentials["partner_key"] == "s3cret"


def test_plaintext_rows_still_load(db_session, make_account):
    account = make_account()
    db_session.execute(
        text("UPDATE channel_accounts SET credentials = :c WHERE id = :id"),
        {"c": json.dumps({"access_token": "legacy"}), "id": account.id},
    )
    db_session.commit()
    db_session.expire_all()

    loaded = db_session.get(ChannelAccount, account.id)
    assert loaded.credentials == {"access_token": "legacy"}

    loaded.credentials = {"access_token": "legacy", "refresh_token": "r1"}
    db_session.commit()
    assert "legacy" not in _raw(db_session, account.id)


def test_unreadable_rows_load_empty(db_session, make_account):
    account = make_account()
    db_session.execute(
        text("UPDATE channel_accounts SET credentials = 'not-a-token' WHERE id = :id"), {"id": account.id}
    )
    db_session.commit()
    db_session.expire_all()
    assert db_session.get(ChannelAccount, account.id).credentials == {}
