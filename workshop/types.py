"""
Shared types for workshop.

All record dataclasses live here. These are the shared vocabulary between
the local store, the sync engine, the remote client and the CLI. A unit is
edited locally, snapshotted into a mutation record, pushed, and pulled back;
the types are the contract between those steps.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 wire timestamp into an aware UTC datetime.

    Naive values are assumed to be UTC. ``datetime`` instances pass through
    (normalized to aware). Returns None for empty input.

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid ISO datetime value: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime for storage and the wire."""
    if dt is None:
        return None
    return dt.isoformat()


# Keys whose values are timestamps at any nesting level of a unit payload
TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at", "last_sync_at", "timestamp"})


def normalize_timestamps(data: Any) -> Any:
    """Recursively convert wire timestamps in a payload to ``datetime``.

    Walks nested dicts and lists; only keys listed in TIMESTAMP_FIELDS are
    converted. Returns a new structure, the input is not modified.
    """
    if isinstance(data, dict):
        normalized = {}
        for key, value in data.items():
            if key in TIMESTAMP_FIELDS and isinstance(value, (str, datetime)):
                normalized[key] = parse_datetime(value)
            else:
                normalized[key] = normalize_timestamps(value)
        return normalized
    if isinstance(data, list):
        return [normalize_timestamps(item) for item in data]
    return data


def _to_wire(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_wire(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_wire(v) for v in value]
    return value


# === Enums ===


class SyncState(str, Enum):
    """Per-unit tag: is the local copy known to match the server."""

    LOCAL = "local"  # Created or edited locally, not yet acknowledged
    SYNCING = "syncing"
    SYNCED = "synced"  # Confirmed by a round-trip or written by a pull
    CONFLICT = "conflict"


class EntityType(str, Enum):
    """Entity types a mutation record can carry."""

    UNIT = "unit"  # The work item; the only type the server applies today
    STEP = "step"
    PHOTO = "photo"


class MutationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EngineState(str, Enum):
    """Scheduling state of the sync engine."""

    IDLE = "idle"
    DEBOUNCING = "debouncing"  # Immediate-sync timer armed
    SYNCING = "syncing"  # Push+pull round-trip in flight
    BACKOFF_WAIT = "backoff_wait"  # Retry timer armed after a failed round-trip


class StatusCategory(str, Enum):
    """What the UI should show, in priority order."""

    OFFLINE = "offline"
    SYNCING = "syncing"
    FAILED = "failed"
    PENDING = "pending"
    SYNCED = "synced"


# Durable queue record states (sync_queue.state)
QUEUE_PENDING = 0
QUEUE_EXHAUSTED = 2  # Dead-letter: retry ceiling reached


# === Errors ===


class WorkshopError(Exception):
    """Base class for workshop errors."""


class TransportError(WorkshopError):
    """A whole push batch or pull request could not complete."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def unauthorized(self) -> bool:
        """The backend rejected the credential itself (HTTP 401)."""
        return self.status_code == 401


class MissingCredentialError(WorkshopError):
    """A sync path that requires a credential was called without one."""


# === Unit Types ===


@dataclass
class Paint:
    id: str
    brand: str
    color_name: str
    hex_color: Optional[str] = None


@dataclass
class Brush:
    id: str
    brush_type: str  # e.g. "Round", "Flat", "Detail"
    size: str  # e.g. "0", "2", "10/0"
    brand: Optional[str] = None


@dataclass
class Photo:
    """Attachment metadata. The image bytes live outside the sync engine."""

    id: str
    path: str
    thumbnail_path: str = ""
    photo_type: str = "detail"  # detail, full_model, unit_overview
    description: str = ""
    timestamp: Optional[datetime] = None
    s3_key: Optional[str] = None


@dataclass
class Step:
    """One ordered painting step of a unit."""

    id: str
    step_number: int
    description: str = ""
    technique: List[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None
    paints: List[Paint] = field(default_factory=list)
    paint_mix: Optional[Dict[str, Any]] = None
    brushes: List[Brush] = field(default_factory=list)
    other_tools: List[str] = field(default_factory=list)
    photos: List[Photo] = field(default_factory=list)
    applied_to_models: List[str] = field(default_factory=list)


@dataclass
class Unit:
    """A unit of miniatures and its painting log (the synchronized work item)."""

    id: str
    owner_id: str
    name: str
    description: str = ""
    game_system: str = ""
    faction: Optional[str] = None
    model_count: int = 1
    steps: List[Step] = field(default_factory=list)
    is_complete: bool = False
    thumbnail_photo_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_public: bool = False
    # Sync metadata
    sync_state: SyncState = SyncState.LOCAL
    last_sync_at: Optional[datetime] = None


def unit_to_dict(unit: Unit) -> Dict[str, Any]:
    """Convert a unit into its JSON-ready snapshot (queue payload and wire body)."""
    return _to_wire(asdict(unit))


def _step_from_dict(data: Dict[str, Any]) -> Step:
    return Step(
        id=data["id"],
        step_number=int(data.get("step_number", 0)),
        description=data.get("description", ""),
        technique=list(data.get("technique") or []),
        timestamp=parse_datetime(data.get("timestamp")),
        paints=[Paint(**p) for p in data.get("paints") or []],
        paint_mix=data.get("paint_mix"),
        brushes=[Brush(**b) for b in data.get("brushes") or []],
        other_tools=list(data.get("other_tools") or []),
        photos=[
            Photo(**{**p, "timestamp": parse_datetime(p.get("timestamp"))})
            for p in data.get("photos") or []
        ],
        applied_to_models=list(data.get("applied_to_models") or []),
    )


def unit_from_dict(data: Dict[str, Any]) -> Unit:
    """Build a unit from a snapshot dict. Timestamps may be strings or datetimes."""
    return Unit(
        id=data["id"],
        owner_id=data.get("owner_id", ""),
        name=data.get("name", ""),
        description=data.get("description", ""),
        game_system=data.get("game_system", ""),
        faction=data.get("faction"),
        model_count=int(data.get("model_count", 1)),
        steps=[_step_from_dict(s) for s in data.get("steps") or []],
        is_complete=bool(data.get("is_complete", False)),
        thumbnail_photo_id=data.get("thumbnail_photo_id"),
        created_at=parse_datetime(data.get("created_at")),
        updated_at=parse_datetime(data.get("updated_at")),
        is_public=bool(data.get("is_public", False)),
        sync_state=SyncState(data.get("sync_state") or SyncState.LOCAL.value),
        last_sync_at=parse_datetime(data.get("last_sync_at")),
    )


# === Sync Types ===


@dataclass
class MutationRecord:
    """A queued intent to create/update/delete an entity.

    ``payload`` always holds a full snapshot of the entity at enqueue time,
    never a diff. For deletes it holds at least ``id`` and ``owner_id``.
    """

    id: str
    entity_type: EntityType
    action: MutationAction
    payload: Dict[str, Any]
    enqueued_at: datetime
    retry_count: int = 0
    # Retry bookkeeping
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    @property
    def entity_id(self) -> Optional[str]:
        return self.payload.get("id")

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "action": self.action.value,
            "payload": _to_wire(self.payload),
            "enqueued_at": format_datetime(self.enqueued_at),
            "retry_count": self.retry_count,
        }


@dataclass
class FailedRecord:
    """A record the server (or transport) did not apply this round."""

    record: MutationRecord
    error_message: str


@dataclass
class PushBatchResult:
    """Response of one batch-apply request."""

    processed_count: int = 0
    failed: List[FailedRecord] = field(default_factory=list)


@dataclass
class PushResult:
    """Aggregate result of the push phase of one round-trip."""

    batches: int = 0
    removed: int = 0  # Acknowledged and removed from the queue
    failed: int = 0  # Failed this round, across all batches
    exhausted: int = 0  # Reached the retry ceiling this round
    errors: List[str] = field(default_factory=list)
    auth_expired: bool = False  # Backend rejected the token; queue left untouched


@dataclass
class PullResult:
    """Result of the pull/merge phase."""

    inserted: int = 0
    overwritten: int = 0
    kept_local: int = 0
    conflicts: int = 0
    error: Optional[str] = None
    auth_expired: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class SyncConflict:
    """A merge decision that discarded one side's unacknowledged content.

    Recorded for user visibility; last-writer-wins has already been applied.
    """

    id: str
    record_id: str
    local_version: Dict[str, Any]
    remote_version: Dict[str, Any]
    resolution: str  # "remote_wins" or "local_wins"
    resolved_at: datetime
    local_summary: Optional[str] = None
    remote_summary: Optional[str] = None


@dataclass
class Credential:
    """An already-obtained authentication credential."""

    identity_id: str
    token: str
    backend_url: Optional[str] = None


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of the engine status published to subscribers."""

    online: bool = True
    syncing: bool = False
    last_sync_at: Optional[datetime] = None
    pending_count: int = 0
    failed_count: int = 0
    immediate_sync_scheduled: bool = False
    exhausted_count: int = 0

    @property
    def category(self) -> StatusCategory:
        if not self.online:
            return StatusCategory.OFFLINE
        if self.syncing:
            return StatusCategory.SYNCING
        if self.failed_count > 0:
            return StatusCategory.FAILED
        if self.pending_count > 0:
            return StatusCategory.PENDING
        return StatusCategory.SYNCED

    @property
    def can_retry(self) -> bool:
        """Whether a manual retry action should be offered."""
        return self.online and not self.syncing

    def evolve(self, **changes: Any) -> "SyncStatus":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = _to_wire(asdict(self))
        data["category"] = self.category.value
        return data
