"""Provider credential encryption.

WHAT:
    Fernet cipher for `integration_secrets.value_encrypted`, built once at
    import from TOKEN_ENCRYPTION_KEY.

WHY:
    Secrets are written encrypted by the install flow; the sync engine only
    needs to decrypt them when building an integration context. A missing or
    malformed key is a deployment error, so it fails at import rather than on
    the first run.

REFERENCES:
    - syncengine/services/context_resolver.py (decrypt on load)
    - syncengine/models.py:IntegrationSecret
"""

import binascii
import logging
import os

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _read_key() -> str:
    key = os.getenv("TOKEN_ENCRYPTION_KEY", "")
    if not key:
        # Workers started from a shell may rely on backend/.env
        from syncengine.utils.env import load_env_file
        load_env_file()
        key = os.getenv("TOKEN_ENCRYPTION_KEY", "")
    return key


def _build_cipher(key: str) -> Fernet:
    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set; export it or add it to backend/.env "
            "(any key from Fernet.generate_key() works)."
        )
    try:
        return Fernet(key)
    except (ValueError, TypeError, binascii.Error) as exc:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY is not a URL-safe base64-encoded 32-byte key.") from exc


_cipher = _build_cipher(_read_key())


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a secret for `integration_secrets` (install flow and test seeding).

    Raises:
        ValueError: For an empty secret
    """
    if not plaintext:
        raise ValueError("Refusing to store an empty secret.")
    logger.debug("[SECRETS] Encrypting secret for %s", context)
    return _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Plaintext of a stored secret.

    Args:
        ciphertext: `integration_secrets.value_encrypted`
        context: Label for logs, e.g. "meta_access_token:<integration id>"

    Raises:
        ValueError: Empty value, or a value the current key cannot decrypt
            (rotated key, corrupted row)
    """
    if not ciphertext:
        raise ValueError("Stored secret is empty.")
    try:
        return _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[SECRETS] Stored secret for %s cannot be decrypted with the current key", context)
        raise ValueError("Unable to decrypt stored secret.") from exc
