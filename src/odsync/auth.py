#!/usr/bin/env python3
"""Access-token collaborator for the sync engine.

The engine only ever calls ``TokenProvider.get_valid_access_token()``.
Obtaining the first token (the interactive OAuth flow) is left to an
external tool that stores it with ``TokenStore.save()``.
"""

import base64
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import certifi
import keyring
import requests
from cryptography.fernet import Fernet, InvalidToken

from .errors import AuthRequired
from .logging_config import sanitize_for_log

logger = logging.getLogger(__name__)


class TokenStore:
    """Fernet-encrypted token file whose key lives in the system keyring."""

    SERVICE_NAME = "odsync"
    KEY_NAME = "token_encryption_key"

    def __init__(self, token_path: Path):
        self.token_path = token_path

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key from system keyring.

        Returns:
            Encryption key bytes
        """
        key_str = keyring.get_password(self.SERVICE_NAME, self.KEY_NAME)

        if key_str:
            return base64.b64decode(key_str.encode())

        key = Fernet.generate_key()
        keyring.set_password(self.SERVICE_NAME, self.KEY_NAME, base64.b64encode(key).decode())

        logger.info("Generated new encryption key")
        return key

    def save(self, token_data: Dict[str, Any]) -> None:
        """Encrypt and save token data.

        Args:
            token_data: Token data dictionary
        """
        fernet = Fernet(self._get_encryption_key())
        encrypted = fernet.encrypt(json.dumps(token_data).encode())

        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_path.write_bytes(encrypted)
        # Owner read/write only
        self.token_path.chmod(0o600)

        logger.info("Token saved with encryption")

    def load(self) -> Optional[Dict[str, Any]]:
        """Load and decrypt token data.

        Returns:
            Token data or None if missing or unreadable
        """
        if not self.token_path.exists():
            return None

        try:
            fernet = Fernet(self._get_encryption_key())
            decrypted = fernet.decrypt(self.token_path.read_bytes())
            return json.loads(decrypted.decode())
        except InvalidToken:
            logger.warning("Could not decrypt token - please re-authenticate")
            return None
        except (OSError, ValueError) as e:
            logger.error(f"Error loading token: {e}")
            return None

    def clear(self) -> None:
        self.token_path.unlink(missing_ok=True)


class TokenProvider:
    """Hands out valid access tokens, refreshing them when needed."""

    TOKEN_URL = "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
    DEFAULT_CLIENT_ID = "df3a0308-c302-4962-b115-08bd59526bc5"
    REFRESH_MARGIN = 300  # refresh 5 minutes before expiry

    def __init__(self, token_store: TokenStore, client_id: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: int = 30):
        self.token_store = token_store
        self.client_id = client_id or self.DEFAULT_CLIENT_ID
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.verify = certifi.where()
        self._token_data: Optional[Dict[str, Any]] = None
        self._lock = threading.Lock()

    def get_valid_access_token(self) -> str:
        """Return an access token valid for at least a few minutes.

        Raises:
            AuthRequired: If no token is stored or the refresh fails
        """
        with self._lock:
            if self._token_data is None:
                self._token_data = self.token_store.load()
            if not self._token_data or 'access_token' not in self._token_data:
                raise AuthRequired("Not authenticated")

            if self._token_data.get('expires_at', 0) < time.time() + self.REFRESH_MARGIN:
                logger.info("Token expired or expiring soon, refreshing...")
                self._token_data = self._refresh(self._token_data)
                self.token_store.save(self._token_data)

            return self._token_data['access_token']

    def invalidate(self) -> None:
        """Force a refresh on the next request (after a 401)."""
        with self._lock:
            if self._token_data:
                self._token_data['expires_at'] = 0

    def _refresh(self, token_data: Dict[str, Any]) -> Dict[str, Any]:
        refresh_token = token_data.get('refresh_token')
        if not refresh_token:
            raise AuthRequired("No refresh token available")

        data = {
            'client_id': self.client_id,
            'refresh_token': refresh_token,
            'grant_type': 'refresh_token',
        }

        try:
            response = self._session.post(self.TOKEN_URL, data=data, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise AuthRequired(f"Token refresh failed: {sanitize_for_log(str(e))}") from e

        if response.status_code != 200:
            logger.error(f"Token refresh failed with status {response.status_code}")
            logger.error(f"Response: {sanitize_for_log(response.text)}")
            raise AuthRequired(f"Token refresh failed with status {response.status_code}")

        new_data = response.json()
        if 'refresh_token' not in new_data:
            new_data['refresh_token'] = refresh_token
        new_data['expires_at'] = time.time() + new_data.get('expires_in', 3600)
        logger.info("Successfully refreshed access token")
        return new_data
