"""Symmetric encryption for channel config values stored at rest."""

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KDF_SALT = b"paygate.payment_configs"
KDF_ITERATIONS = 200_000


class SecretBox:
    """Fernet cipher keyed by the process-wide config secret."""

    def __init__(self, secret: str):
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=KDF_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
        self.fernet = Fernet(key)

    def encrypt(self, text: str) -> str:
        return self.fernet.encrypt(text.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Return the plaintext, or ``token`` unchanged when it cannot be decrypted.

        Legacy rows may hold plaintext or ciphertext made with another key;
        those are logged and passed through instead of failing the caller.
        """
        try:
            return self.fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError):
            logger.error(
                "Config value decryption failed, using stored value",
                extra={"category": "CONFIG_MANAGER"},
            )
            return token
