"""
Custom column types.

JSONBCompat renders JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests).
EncryptedJSON stores a JSON document encrypted with Fernet so gateway
credentials are never written to disk in clear text.
"""
import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON, Text, TypeDecorator

from app.config import settings


class JSONBCompat(TypeDecorator):
    """JSONB on PostgreSQL, JSON on every other dialect."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


def _get_fernet() -> Fernet:
    if not settings.credentials_encryption_key:
        raise ValueError(
            "CREDENTIALS_ENCRYPTION_KEY is not configured. "
            "Generate one with cryptography.fernet.Fernet.generate_key()."
        )
    return Fernet(settings.credentials_encryption_key.encode())


class EncryptedJSON(TypeDecorator):
    """
    JSON document encrypted at rest.

    The column holds a Fernet token (text); Python code always sees a dict.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[Any], dialect) -> Optional[str]:
        if value is None:
            return None
        token = _get_fernet().encrypt(json.dumps(value).encode("utf-8"))
        return token.decode("ascii")

    def process_result_value(self, value: Optional[str], dialect) -> Optional[Any]:
        if value is None:
            return None
        try:
            raw = _get_fernet().decrypt(value.encode("ascii"))
        except InvalidToken as e:
            raise ValueError("Stored credentials could not be decrypted with the configured key") from e
        return json.loads(raw.decode("utf-8"))
