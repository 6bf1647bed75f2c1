import base64
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.types import TypeDecorator, Text

from orca.core.config import settings
from orca.core.exceptions import EncryptionError

KDF_ITERATIONS = 100000


class FieldCipher:
    """Fernet cipher for PHI columns and stored gateway references"""

    def __init__(self, secret: str, salt: str):
        if not secret or not salt:
            raise EncryptionError("ENCRYPTION_KEY and ENCRYPTION_SALT must be set", error_code="ENCRYPTION_NOT_CONFIGURED")
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt.encode(), iterations=KDF_ITERATIONS)
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode())))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            # Rows written before encryption was enabled hold plaintext
            return token


@lru_cache
def get_cipher() -> FieldCipher:
    return FieldCipher(settings.ENCRYPTION_KEY, settings.ENCRYPTION_SALT)


class EncryptedString(TypeDecorator):
    """Text column encrypted on write and decrypted on read"""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect):
        if not value:
            return value
        return get_cipher().encrypt(str(value))

    def process_result_value(self, value: Optional[str], dialect):
        if not value:
            return value
        return get_cipher().decrypt(value)
