"""
Encryption of destination credentials at rest.

Credentials are stored as a Fernet token of their JSON document. The Fernet key
is derived from the Flask SECRET_KEY, so the same key must be configured on any
machine that needs to read stored destinations.
"""

import base64
import json
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CredentialCipher:
    """Encrypts and decrypts credential documents with a SECRET_KEY-derived key."""

    # Fixed salt since SECRET_KEY itself is the secret
    SALT = b'backvault_credentials_v1'

    def __init__(self, secret_key: str):
        """
        Args:
            secret_key: Flask app SECRET_KEY
        """
        if not secret_key:
            raise RuntimeError("SECRET_KEY not configured - cannot encrypt destination credentials")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.SALT,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Raises:
            cryptography.fernet.InvalidToken: If the token was written with another key
        """
        return self._fernet.decrypt(token.encode()).decode()

    def encrypt_credentials(self, credentials: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(credentials, sort_keys=True))

    def decrypt_credentials(self, token: str) -> Dict[str, Any]:
        return json.loads(self.decrypt(token))


def get_credential_cipher(app=None) -> CredentialCipher:
    """
    Build a CredentialCipher from the Flask app config.

    Args:
        app: Flask application instance (defaults to current_app)
    """
    if app is None:
        from flask import current_app
        app = current_app

    return CredentialCipher(app.config.get('SECRET_KEY'))


__all__ = ['CredentialCipher', 'InvalidToken', 'get_credential_cipher']
