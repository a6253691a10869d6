"""Credential storage for workshop.

Holds an already-obtained auth token. Token acquisition happens elsewhere;
this module only loads, persists and clears it, and tells listeners when it
changes.

Priority when loading:
1. ~/.workshop/credentials.json
2. Environment variables (WORKSHOP_AUTH_TOKEN, WORKSHOP_USER_ID,
   WORKSHOP_BACKEND_URL)
"""

import json
import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

from workshop.types import Credential
from workshop.utils import get_workshop_home
from workshop.validation import validate_backend_url

logger = logging.getLogger(__name__)

CredentialListener = Callable[[Optional[Credential]], None]


class CredentialProvider:
    """Source of the current credential, with change notifications."""

    def __init__(self, credentials_path: Optional[Path] = None, *, load: bool = True):
        self.credentials_path = credentials_path or get_workshop_home() / "credentials.json"
        self._credential: Optional[Credential] = None
        self._listeners: List[CredentialListener] = []
        if load:
            self._credential = self._load()

    def _load(self) -> Optional[Credential]:
        backend_url = None
        auth_token = None
        user_id = None

        if self.credentials_path.exists():
            try:
                with open(self.credentials_path) as f:
                    creds = json.load(f)
                backend_url = creds.get("backend_url")
                # Accept both "auth_token" (preferred) and "token"
                auth_token = creds.get("auth_token") or creds.get("token")
                user_id = creds.get("user_id")
            except (json.JSONDecodeError, OSError) as e:
                logger.debug(f"Failed to load credentials file: {e}")

        backend_url = backend_url or os.environ.get("WORKSHOP_BACKEND_URL")
        auth_token = auth_token or os.environ.get("WORKSHOP_AUTH_TOKEN")
        user_id = user_id or os.environ.get("WORKSHOP_USER_ID")

        if backend_url:
            backend_url = validate_backend_url(backend_url)

        if not auth_token or not user_id:
            return None
        return Credential(identity_id=user_id, token=auth_token, backend_url=backend_url)

    def get_credential(self) -> Optional[Credential]:
        return self._credential

    def set_credential(
        self,
        identity_id: str,
        token: str,
        backend_url: Optional[str] = None,
        persist: bool = True,
    ) -> Credential:
        """Install a credential (e.g. after login) and notify listeners."""
        if backend_url:
            backend_url = validate_backend_url(backend_url)
            if not backend_url:
                raise ValueError("Refusing unsafe backend URL")
        credential = Credential(identity_id=identity_id, token=token, backend_url=backend_url)
        if persist:
            self._save(credential)
        self._credential = credential
        self._notify()
        return credential

    def clear(self, persist: bool = True) -> None:
        """Forget the credential (logout or expiry) and notify listeners."""
        if persist and self.credentials_path.exists():
            self.credentials_path.unlink()
        self._credential = None
        self._notify()

    def _save(self, credential: Credential) -> None:
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "user_id": credential.identity_id,
            "auth_token": credential.token,
        }
        if credential.backend_url:
            data["backend_url"] = credential.backend_url
        # Create with owner-only permissions before writing the token
        fd = os.open(self.credentials_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.chmod(self.credentials_path, 0o600)

    def on_credential_change(self, callback: CredentialListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._credential)
            except Exception as e:
                logger.warning(f"Credential listener failed: {e}", exc_info=True)
