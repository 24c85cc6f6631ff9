"""Credential encryption for connected integrations.

WHAT:
    Symmetric encryption for the access tokens / API keys an integration
    uses to call its platform (Shopify admin token, Stripe secret key...).

WHY:
    Integration rows are long-lived and survive disconnects for audit, so the
    credential material must never sit in plaintext in the database or logs.

REFERENCES:
    - storepulse/models.py:Integration.credentials_enc
    - storepulse/services/integration_service.py (encrypts on connect)
    - storepulse/services/historical_sync.py (decrypts for backfills)
"""

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken

from storepulse.exceptions import CredentialError
from storepulse.utils.env import env_or_dotenv


TOKEN_ENCRYPTION_KEY = env_or_dotenv("TOKEN_ENCRYPTION_KEY")

logger = logging.getLogger(__name__)

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env (see backend/generate_keys.py)."
    )

try:
    # Validate key length by decoding without storing plaintext material.
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python backend/generate_keys.py"
    ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt integration credentials before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., Shopify admin API token).
        context:   Friendly label for logs (platform/account).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise CredentialError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt integration credentials when a sync needs to call the platform.

    Raises:
        CredentialError: If nothing is stored or the value cannot be decrypted
            (e.g., the encryption key was rotated).
    """
    if not ciphertext:
        raise CredentialError(f"No credentials stored for {context}.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise CredentialError("Unable to decrypt stored credentials.") from exc

    logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s", context)
    return plaintext
