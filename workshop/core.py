"""
Workshop Core - offline-first painting log.

This module provides the Workshop class, the composition root that wires the
local store, the credential provider, the remote client and the sync engine
together. The UI path goes through it: every local mutation is persisted and
queued, then the engine is nudged.
"""

import logging
import uuid
from dataclasses import replace
from typing import List, Optional

from workshop.config import SyncSettings, get_settings
from workshop.credentials import CredentialProvider
from workshop.storage import LocalStore, RemoteClient, SQLiteStorage, SyncEngine
from workshop.types import Step, SyncStatus, Unit
from workshop.validation import clean_text

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_URL = "http://localhost:8000"

# Owner used for units created before any login
LOCAL_OWNER_ID = "local"


class Workshop:
    """Main interface for workshop operations.

    Constructs exactly one SyncEngine with its collaborators injected; pass
    the Workshop (or ``workshop.sync``) to call sites instead of reaching for
    a global.

    Examples:
        w = Workshop()
        unit = w.create_unit("Intercessors", game_system="40k")
        w.add_step(unit.id, "Prime black", technique=["airbrush"])
    """

    def __init__(
        self,
        storage: Optional[LocalStore] = None,
        credentials: Optional[CredentialProvider] = None,
        remote: Optional[RemoteClient] = None,
        settings: Optional[SyncSettings] = None,
        online: bool = True,
    ):
        """Initialize Workshop.

        Args:
            storage: Local store. Defaults to SQLite at ``settings.db_path``.
            credentials: Credential provider. Defaults to ~/.workshop/credentials.json.
            remote: Remote client. Defaults to one built from the configured backend URL.
            settings: Client settings. Defaults to environment-loaded settings.
            online: Initial connectivity reported to the engine.
        """
        self.settings = settings or get_settings()
        self._storage = storage if storage is not None else SQLiteStorage(self.settings.db_path)
        self._credentials = credentials if credentials is not None else CredentialProvider()
        self._remote = remote if remote is not None else RemoteClient(
            self.backend_url, timeout=self.settings.request_timeout
        )
        self.sync = SyncEngine(
            self._storage,
            self._credentials,
            self._remote,
            settings=self.settings,
            online=online,
        )
        self._credentials.on_credential_change(self._on_credential_change)
        credential = self._credentials.get_credential()
        if credential is not None:
            self._claim_local_units(credential.identity_id)
        logger.debug(
            f"Workshop initialized with storage: {type(self._storage).__name__}, "
            f"backend: {self._remote.backend_url}"
        )

    @property
    def storage(self) -> LocalStore:
        return self._storage

    @property
    def credentials(self) -> CredentialProvider:
        return self._credentials

    @property
    def remote(self) -> RemoteClient:
        return self._remote

    @property
    def backend_url(self) -> str:
        """Backend URL: settings, then the stored credential, then localhost."""
        credential = self._credentials.get_credential()
        return (
            self.settings.backend_url
            or (credential.backend_url if credential else None)
            or DEFAULT_BACKEND_URL
        )

    @property
    def owner_id(self) -> str:
        credential = self._credentials.get_credential()
        return credential.identity_id if credential else LOCAL_OWNER_ID

    def _on_credential_change(self, credential) -> None:
        if credential is not None:
            self._claim_local_units(credential.identity_id)

    def _claim_local_units(self, identity_id: str) -> None:
        self._storage.claim_local_units(LOCAL_OWNER_ID, identity_id)

    # === Units ===

    def create_unit(
        self,
        name: str,
        game_system: str = "",
        faction: Optional[str] = None,
        description: str = "",
        model_count: int = 1,
        is_public: bool = False,
    ) -> Unit:
        unit = Unit(
            id=str(uuid.uuid4()),
            owner_id=self.owner_id,
            name=clean_text(name, "name", max_length=200),
            description=clean_text(description, "description", 2000, required=False),
            game_system=clean_text(game_system, "game_system", 100, required=False),
            faction=clean_text(faction, "faction", 100, required=False) or None,
            model_count=max(1, int(model_count)),
            is_public=is_public,
        )
        return self.save_unit(unit)

    def save_unit(self, unit: Unit) -> Unit:
        """Persist a local edit, queue its snapshot and nudge the engine."""
        saved = self._storage.save_unit(unit)
        self.sync.notify_local_mutation()
        return saved

    def update_unit(self, unit_id: str, **changes) -> Optional[Unit]:
        unit = self._storage.get_entity(unit_id)
        if unit is None:
            return None
        return self.save_unit(replace(unit, **changes))

    def delete_unit(self, unit_id: str) -> bool:
        deleted = self._storage.delete_unit(unit_id)
        if deleted:
            self.sync.notify_local_mutation()
        return deleted

    def get_unit(self, unit_id: str) -> Optional[Unit]:
        return self._storage.get_entity(unit_id)

    def list_units(self) -> List[Unit]:
        return self._storage.list_entities()

    def add_step(
        self,
        unit_id: str,
        description: str,
        technique: Optional[List[str]] = None,
        other_tools: Optional[List[str]] = None,
    ) -> Optional[Unit]:
        step = Step(
            id=str(uuid.uuid4()),
            step_number=0,
            description=clean_text(description, "description", 2000),
            technique=list(technique or []),
            other_tools=list(other_tools or []),
        )
        unit = self._storage.add_step(unit_id, step)
        if unit is not None:
            self.sync.notify_local_mutation()
        return unit

    # === Sync ===

    def status(self) -> SyncStatus:
        return self.sync.get_status()

    async def aclose(self) -> None:
        """Stop the engine and release the HTTP client."""
        await self.sync.stop()
        await self._remote.aclose()
        self._storage.close()
