from sqlalchemy import LargeBinary
from sqlalchemy.types import TypeDecorator

from salary_advance.core.crypto import decrypt_secret, encrypt_secret


class EncryptedString(TypeDecorator):
    """Gateway secrets at rest; plaintext only ever exists on the ORM object."""

    impl = LargeBinary
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else encrypt_secret(str(value))

    def process_result_value(self, value, dialect):
        return None if value is None else decrypt_secret(value)
