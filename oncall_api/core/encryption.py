"""Channel config encryption.

Channel configs (webhook secrets, Slack tokens, recipient lists) are stored
as Fernet-encrypted JSON. The Fernet key is derived with PBKDF2-HMAC-SHA256
from ENCRYPTION_KEY, or from SECRET_KEY when no separate key is set.
"""

import base64
import hashlib
import json
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from oncall_api.config import settings

_PBKDF2_ITERATIONS = 600_000
# Static salt: the input key material is expected to be high-entropy already.
# Changing it invalidates every stored channel config.
_PBKDF2_SALT = b"oncall-channel-config-encryption-v1"


def _get_raw_key() -> str:
    return settings.encryption_key if settings.encryption_key else settings.secret_key


@lru_cache(maxsize=4)
def _derive_key(raw_key: str) -> bytes:
    """Derive a Fernet-compatible key (32 bytes, urlsafe base64)."""
    key_bytes = hashlib.pbkdf2_hmac(
        "sha256",
        raw_key.encode("utf-8"),
        _PBKDF2_SALT,
        _PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(key_bytes)


def encrypt_credential(plaintext: str) -> str:
    """Encrypt a string and return the Fernet token as text."""
    fernet = Fernet(_derive_key(_get_raw_key()))
    return fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_credential(encrypted: str) -> str:
    """Decrypt a Fernet token produced by encrypt_credential.

    Raises:
        ValueError: If the key is wrong or the token is corrupted
    """
    fernet = Fernet(_derive_key(_get_raw_key()))
    try:
        return fernet.decrypt(encrypted.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise ValueError(
            "Failed to decrypt credential - invalid key or corrupted data"
        ) from e


def encrypt_channel_config(config: dict[str, Any]) -> str:
    """Serialize and encrypt a channel config object."""
    return encrypt_credential(json.dumps(config, sort_keys=True))


def decrypt_channel_config(encrypted: str) -> dict[str, Any]:
    """Decrypt a channel config back into a dict.

    Raises:
        ValueError: If decryption fails or the payload is not a JSON object
    """
    payload = json.loads(decrypt_credential(encrypted))
    if not isinstance(payload, dict):
        raise ValueError("Channel config must be a JSON object")
    return payload
