"""
encrypted_type.py — Fernet-encrypted JSON column for channel credentials

Business Rules:
- Channel API keys, secrets and access tokens are never stored in plaintext
- The Fernet key is derived from SECRET_KEY (PBKDF2-SHA256, fixed salt), so
  rotating SECRET_KEY makes existing credentials unreadable
- Rows written before encryption (plain JSON) still load; they are
  re-encrypted on the next write

Called by: models/accounts.py (ChannelAccount.credentials)
Depends on: config.py (secret_key), cryptography
"""

import base64
import json
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import Text, TypeDecorator

log = logging.getLogger(__name__)

_SALT = b"channelsync-credentials-v1"


@lru_cache(maxsize=4)
def _fernet(secret_key: str) -> Fernet:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=_SALT, iterations=100_000)
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret_key.encode())))


def get_fernet() -> Fernet:
    from ..config import settings

    return _fernet(settings.secret_key)


class EncryptedJSON(TypeDecorator):
    """Stores a JSON-serializable value as a Fernet token in a TEXT column."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return get_fernet().encrypt(json.dumps(value).encode()).decode()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return json.loads(get_fernet().decrypt(value.encode()))
        except InvalidToken:
            pass
        try:
            plain = json.loads(value)
        except ValueError:
            log.error("Stored credentials are neither a valid token nor JSON; was SECRET_KEY rotated?")
            return {}
        log.warning("Loaded unencrypted credentials; they will be encrypted on next save")
        return plain
