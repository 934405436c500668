"""Secure storage of the GitHub token.

The token lives in the system keychain via ``keyring``. When no usable keyring
backend exists it is read from the environment instead, and kept in memory for
the current process only.
"""

import logging
import os
from typing import Dict, Optional

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError


logger = logging.getLogger(__name__)

TOKEN_KEY = "github_token"
ENV_VARS = ("SHELF_GITHUB_TOKEN", "GITHUB_TOKEN")


class CredentialManager:
    """GitHub token storage using the system keyring."""

    SERVICE_NAME = "shelf_sync"

    def __init__(self):
        self._fallback_storage: Dict[str, str] = {}
        self._keyring_available = self._probe_keyring()

    @staticmethod
    def _probe_keyring() -> bool:
        try:
            backend = keyring.get_keyring()
        except KeyringError as e:
            logger.warning(f"Keyring initialization failed: {e}, using fallback storage")
            return False
        if isinstance(backend, fail.Keyring):
            logger.warning("No keyring backend available, falling back to environment variables")
            return False
        logger.debug(f"Using keyring backend {backend}")
        return True

    def is_keyring_available(self) -> bool:
        """Check if keyring is available and working."""
        return self._keyring_available

    def store_token(self, token: str) -> bool:
        """Store the GitHub token.

        Returns:
            True if it went to the keyring, False if only kept for this process
        """
        if self._keyring_available:
            try:
                keyring.set_password(self.SERVICE_NAME, TOKEN_KEY, token)
                logger.debug("Stored GitHub token in keyring")
                return True
            except KeyringError as e:
                logger.error(f"Failed to store GitHub token in keyring: {e}")

        self._fallback_storage[TOKEN_KEY] = token
        logger.warning(
            f"Keyring not available. Export the token as {ENV_VARS[0]} to keep it between runs."
        )
        return False

    def get_token(self) -> Optional[str]:
        """Retrieve the token from keyring, memory or environment, in that order."""
        if self._keyring_available:
            try:
                value = keyring.get_password(self.SERVICE_NAME, TOKEN_KEY)
                if value:
                    return value
            except KeyringError as e:
                logger.error(f"Failed to read GitHub token from keyring: {e}")

        if TOKEN_KEY in self._fallback_storage:
            return self._fallback_storage[TOKEN_KEY]

        for env_var in ENV_VARS:
            value = os.getenv(env_var)
            if value:
                logger.debug(f"Using GitHub token from {env_var}")
                return value
        return None

    def delete_token(self) -> bool:
        """Delete the stored token. Environment variables are left alone."""
        deleted = self._fallback_storage.pop(TOKEN_KEY, None) is not None

        if self._keyring_available:
            try:
                keyring.delete_password(self.SERVICE_NAME, TOKEN_KEY)
                deleted = True
                logger.debug("Deleted GitHub token from keyring")
            except KeyringError as e:
                # PasswordDeleteError when nothing was stored
                logger.debug(f"GitHub token not found in keyring: {e}")

        return deleted

    def get_storage_info(self) -> Dict[str, object]:
        """Get information about credential storage."""
        return {
            "keyring_available": self._keyring_available,
            "keyring_backend": str(keyring.get_keyring()) if self._keyring_available else None,
            "service_name": self.SERVICE_NAME,
        }
