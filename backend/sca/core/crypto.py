# backend/sca/core/crypto.py
import base64
import hashlib
import logging
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import SCAError

logger = logging.getLogger(__name__)

SECRET_PREFIX = "enc_"


def is_secret(key: str) -> bool:
    return key.startswith(SECRET_PREFIX)


def mask_secrets(config: Dict[str, Any]) -> Dict[str, Any]:
    """Replace every enc_* value with True so secrets never leave the service"""
    return {k: (True if is_secret(k) else v) for k, v in (config or {}).items()}


class SecretCipher:
    """Encrypts resource config secrets at rest"""

    def __init__(self, secret_key: str):
        # Generate key from secret
        key_material = hashlib.sha256(secret_key.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(key_material))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("Failed to decrypt resource secret")
            raise SCAError("Decryption failed")

    def encrypt_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of config with every enc_* string encrypted"""
        encrypted = dict(config or {})
        for k, v in encrypted.items():
            if is_secret(k) and isinstance(v, str):
                encrypted[k] = self.encrypt(v)
        return encrypted

    def decrypt_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of config with every enc_* string decrypted"""
        decrypted = dict(config or {})
        for k, v in decrypted.items():
            if is_secret(k) and isinstance(v, str):
                decrypted[k] = self.decrypt(v)
        return decrypted
