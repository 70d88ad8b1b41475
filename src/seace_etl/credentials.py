"""Priority-ordered pool of AI provider credentials with quota failover."""

from __future__ import annotations

import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock, RLock
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional

from .config import PROVIDER_GOOGLE, PROVIDERS
from .crypto import SecretCipher, mask_secret
from .models import CredentialUsageEntry, CredentialView
from .store import StateStore

logger = logging.getLogger(__name__)

USAGE_LOG_SIZE = 100
MAX_ERROR_MESSAGE_CHARS = 500
STORE_NAMESPACE = "credentials"


class CredentialNotFound(LookupError):
    def __init__(self, credential_id: int):
        self.credential_id = credential_id
        super().__init__(f"Credential {credential_id} not found")


class InvalidPermutation(ValueError):
    """Raised when a reorder request is not a permutation of the pool's ids."""


class CredentialInUse(ValueError):
    def __init__(self, credential_id: int, in_flight: int):
        self.credential_id = credential_id
        self.in_flight = in_flight
        super().__init__(
            f"Credential {credential_id} is in use by {in_flight} running call(s); retry after they finish"
        )


class NoCredentialAvailable(RuntimeError):
    """Every credential is inactive, quota-blocked or excluded."""

    def __init__(self, pool_name: str, total: int):
        self.pool_name = pool_name
        self.total = total
        if total == 0:
            message = f"No API keys configured in pool '{pool_name}'"
        else:
            message = (
                f"All {total} API key(s) in pool '{pool_name}' are inactive or over quota"
            )
        super().__init__(message)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Credential:
    """Mutable pool entry. Only the pool touches these, under its locks."""

    id: int
    alias: str
    provider: str
    stored_secret: str
    priority: int
    created_at: str
    active: bool = True
    quota_exceeded: bool = False
    quota_reset_at: Optional[datetime] = None
    usage_count: int = 0
    usage_by_kind: Dict[str, int] = field(default_factory=dict)
    error_count: int = 0
    last_used_at: Optional[str] = None
    in_flight: int = 0
    usage_log: Deque[CredentialUsageEntry] = field(default_factory=lambda: deque(maxlen=USAGE_LOG_SIZE))
    counter_lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def is_eligible(self, now: datetime) -> bool:
        if not self.active:
            return False
        if not self.quota_exceeded:
            return True
        return self.quota_reset_at is not None and self.quota_reset_at <= now

    def to_payload(self) -> dict:
        with self.counter_lock:
            return {
                "id": self.id,
                "alias": self.alias,
                "provider": self.provider,
                "secret": self.stored_secret,
                "priority": self.priority,
                "created_at": self.created_at,
                "active": self.active,
                "quota_exceeded": self.quota_exceeded,
                "quota_reset_at": _iso(self.quota_reset_at),
                "usage_count": self.usage_count,
                "usage_by_kind": dict(self.usage_by_kind),
                "error_count": self.error_count,
                "last_used_at": self.last_used_at,
                "usage_log": [entry.model_dump() for entry in self.usage_log],
            }

    @classmethod
    def from_payload(cls, payload: dict) -> "Credential":
        credential = cls(
            id=int(payload["id"]),
            alias=str(payload["alias"]),
            provider=str(payload.get("provider") or PROVIDER_GOOGLE),
            stored_secret=str(payload["secret"]),
            priority=int(payload.get("priority", 0)),
            created_at=str(payload.get("created_at") or _utcnow().isoformat()),
            active=bool(payload.get("active", True)),
            quota_exceeded=bool(payload.get("quota_exceeded", False)),
            quota_reset_at=_parse_iso(payload.get("quota_reset_at")),
            usage_count=int(payload.get("usage_count", 0)),
            usage_by_kind={str(k): int(v) for k, v in (payload.get("usage_by_kind") or {}).items()},
            error_count=int(payload.get("error_count", 0)),
            last_used_at=payload.get("last_used_at"),
        )
        for entry in payload.get("usage_log") or []:
            try:
                credential.usage_log.append(CredentialUsageEntry.model_validate(entry))
            except ValueError:
                continue
        return credential


@dataclass(frozen=True)
class AcquiredCredential:
    """What a worker gets back from `acquire`: enough to build a client."""

    id: int
    alias: str
    provider: str
    secret: str = field(repr=False)


class CredentialPool:
    """
    Ordered pool of provider credentials.

    Priorities always form the dense range [0, N). Selection and the in-flight
    marking share one pool-wide lock with reorder/add/update/remove, so a
    reorder is never observed half-applied. Usage counters are bumped under a
    per-credential lock instead.
    """

    def __init__(
        self,
        name: str = "gemini",
        store: Optional[StateStore] = None,
        cipher: Optional[SecretCipher] = None,
        quota_reset_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.name = name
        self._store = store
        self._cipher = cipher or SecretCipher()
        self._quota_window = timedelta(hours=quota_reset_hours)
        self._clock = clock
        self._lock = RLock()
        self._credentials: Dict[int, Credential] = {}
        self._next_id = 1
        self._version = 0
        if store is not None:
            self._load()

    # Persistence

    def _load(self) -> None:
        loaded: Dict[int, Credential] = {}
        for payload in self._store.load(STORE_NAMESPACE).values():
            try:
                credential = Credential.from_payload(payload)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed credential entry in state store")
                continue
            loaded[credential.id] = credential
        with self._lock:
            self._credentials = loaded
            self._next_id = max(loaded, default=0) + 1
            self._normalize_priorities_locked()

    def _snapshot_locked(self) -> tuple[int, dict]:
        self._version += 1
        return self._version, {
            str(cid): credential.to_payload() for cid, credential in self._credentials.items()
        }

    def _persist(self, snapshot: Optional[tuple[int, dict]]) -> None:
        if self._store is None or snapshot is None:
            return
        version, items = snapshot
        self._store.save(STORE_NAMESPACE, items, version=version)

    def _normalize_priorities_locked(self) -> None:
        ordered = sorted(self._credentials.values(), key=lambda c: (c.priority, c.id))
        for index, credential in enumerate(ordered):
            credential.priority = index

    def _get_locked(self, credential_id: int) -> Credential:
        credential = self._credentials.get(credential_id)
        if credential is None:
            raise CredentialNotFound(credential_id)
        return credential

    def _view(self, credential: Credential) -> CredentialView:
        try:
            masked = mask_secret(self._cipher.decrypt(credential.stored_secret))
        except ValueError:
            masked = "****"
        with credential.counter_lock:
            return CredentialView(
                id=credential.id,
                alias=credential.alias,
                provider=credential.provider,
                masked_secret=masked,
                priority=credential.priority,
                active=credential.active,
                quota_exceeded=credential.quota_exceeded,
                quota_reset_at=_iso(credential.quota_reset_at),
                usage_count=credential.usage_count,
                usage_by_kind=dict(credential.usage_by_kind),
                error_count=credential.error_count,
                last_used_at=credential.last_used_at,
                created_at=credential.created_at,
                in_flight=credential.in_flight,
            )

    # Selection

    def acquire(self, kind: str, exclude: Iterable[int] = ()) -> AcquiredCredential:
        """
        Return the lowest-priority eligible credential and mark it in flight.

        Quota blocks whose reset time has passed are cleared here, lazily.

        Raises:
            NoCredentialAvailable: nothing is active, unblocked and not excluded.
        """
        excluded = set(exclude)
        now = self._clock()
        snapshot = None
        with self._lock:
            chosen: Optional[Credential] = None
            expired = False
            for credential in sorted(self._credentials.values(), key=lambda c: c.priority):
                if credential.quota_exceeded and credential.quota_reset_at and credential.quota_reset_at <= now:
                    credential.quota_exceeded = False
                    credential.quota_reset_at = None
                    expired = True
                    logger.info("Quota block expired for credential '%s'", credential.alias)
                if chosen is None and credential.id not in excluded and credential.is_eligible(now):
                    chosen = credential
            if chosen is None:
                if expired:
                    snapshot = self._snapshot_locked()
                total = len(self._credentials)
            else:
                secret = self._cipher.decrypt(chosen.stored_secret)
                chosen.in_flight += 1
                if expired:
                    snapshot = self._snapshot_locked()
                acquired = AcquiredCredential(
                    id=chosen.id, alias=chosen.alias, provider=chosen.provider, secret=secret
                )
        self._persist(snapshot)
        if chosen is None:
            raise NoCredentialAvailable(self.name, total)
        logger.debug("Acquired credential '%s' for %s", acquired.alias, kind)
        return acquired

    def release(self, credential_id: int) -> None:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is not None and credential.in_flight > 0:
                credential.in_flight -= 1

    @contextmanager
    def lease(self, kind: str, exclude: Iterable[int] = ()) -> Iterator[AcquiredCredential]:
        acquired = self.acquire(kind, exclude=exclude)
        try:
            yield acquired
        finally:
            self.release(acquired.id)

    # Outcome reporting

    def _log_usage(
        self,
        credential_id: int,
        kind: Optional[str],
        outcome: str,
        error_message: Optional[str] = None,
        success: bool = False,
        error: bool = False,
    ) -> None:
        with self._lock:
            credential = self._get_locked(credential_id)
        now_iso = self._clock().isoformat()
        with credential.counter_lock:
            if success:
                credential.usage_count += 1
                if kind:
                    credential.usage_by_kind[kind] = credential.usage_by_kind.get(kind, 0) + 1
            if error:
                credential.error_count += 1
            credential.last_used_at = now_iso
            credential.usage_log.append(
                CredentialUsageEntry(
                    timestamp=now_iso,
                    kind=kind,
                    outcome=outcome,
                    error_message=error_message[:MAX_ERROR_MESSAGE_CHARS] if error_message else None,
                )
            )
        with self._lock:
            snapshot = self._snapshot_locked()
        self._persist(snapshot)

    def report_success(self, credential_id: int, kind: str) -> None:
        self._log_usage(credential_id, kind, "success", success=True)

    def report_error(self, credential_id: int, kind: Optional[str], message: str) -> None:
        """Count a failed call. Errors never deactivate a credential."""
        self._log_usage(credential_id, kind, "error", error_message=message, error=True)

    def report_quota_exceeded(
        self,
        credential_id: int,
        reset_at: Optional[datetime] = None,
        kind: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        """Block a credential until `reset_at` (default: now + quota window)."""
        reset = reset_at or (self._clock() + self._quota_window)
        with self._lock:
            credential = self._get_locked(credential_id)
            credential.quota_exceeded = True
            credential.quota_reset_at = reset
        logger.warning("Credential '%s' hit its quota; blocked until %s", credential.alias, reset.isoformat())
        self._log_usage(credential_id, kind, "quota", error_message=message, error=True)

    # Administration

    def reorder(self, ordered_ids: List[int]) -> List[CredentialView]:
        """Assign priorities from array order. The input must be a permutation of the pool's ids."""
        with self._lock:
            current = set(self._credentials)
            requested = [int(cid) for cid in ordered_ids]
            if len(requested) != len(set(requested)):
                raise InvalidPermutation("Reorder list contains duplicate ids")
            if set(requested) != current:
                missing = sorted(current - set(requested))
                unknown = sorted(set(requested) - current)
                raise InvalidPermutation(
                    f"Reorder list must contain every credential id exactly once "
                    f"(missing: {missing}, unknown: {unknown})"
                )
            for index, cid in enumerate(requested):
                self._credentials[cid].priority = index
            snapshot = self._snapshot_locked()
            views = [self._view(c) for c in sorted(self._credentials.values(), key=lambda c: c.priority)]
        self._persist(snapshot)
        return views

    def add(self, alias: str, secret: str, provider: str = PROVIDER_GOOGLE) -> CredentialView:
        """Append a credential at the lowest precedence (priority N)."""
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}")
        if not secret.strip():
            raise ValueError("Secret must not be empty")
        with self._lock:
            credential = Credential(
                id=self._next_id,
                alias=alias.strip(),
                provider=provider,
                stored_secret=self._cipher.encrypt(secret.strip()),
                priority=len(self._credentials),
                created_at=self._clock().isoformat(),
            )
            self._credentials[credential.id] = credential
            self._next_id += 1
            snapshot = self._snapshot_locked()
            view = self._view(credential)
        self._persist(snapshot)
        logger.info("Added credential '%s' at priority %d", view.alias, view.priority)
        return view

    def update(
        self,
        credential_id: int,
        alias: Optional[str] = None,
        secret: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> CredentialView:
        """Edit a credential. A new secret clears its quota block and error count."""
        if alias is not None and not alias.strip():
            raise ValueError("Alias must not be empty")
        if secret is not None and not secret.strip():
            raise ValueError("Secret must not be empty")
        with self._lock:
            credential = self._get_locked(credential_id)
            if alias is not None:
                credential.alias = alias.strip()
            if secret is not None:
                credential.stored_secret = self._cipher.encrypt(secret.strip())
                credential.quota_exceeded = False
                credential.quota_reset_at = None
                with credential.counter_lock:
                    credential.error_count = 0
            if active is not None:
                credential.active = active
            snapshot = self._snapshot_locked()
            view = self._view(credential)
        self._persist(snapshot)
        return view

    def remove(self, credential_id: int) -> None:
        """Delete a credential and close the gap in the priority order."""
        with self._lock:
            credential = self._get_locked(credential_id)
            if credential.in_flight > 0:
                raise CredentialInUse(credential_id, credential.in_flight)
            del self._credentials[credential_id]
            self._normalize_priorities_locked()
            snapshot = self._snapshot_locked()
        self._persist(snapshot)
        logger.info("Removed credential '%s'", credential.alias)

    def reset_stats(self, credential_id: int) -> CredentialView:
        """Zero the counters and clear any quota block."""
        with self._lock:
            credential = self._get_locked(credential_id)
            credential.quota_exceeded = False
            credential.quota_reset_at = None
            with credential.counter_lock:
                credential.usage_count = 0
                credential.usage_by_kind = {}
                credential.error_count = 0
                credential.usage_log.clear()
            snapshot = self._snapshot_locked()
            view = self._view(credential)
        self._persist(snapshot)
        return view

    def get(self, credential_id: int) -> CredentialView:
        with self._lock:
            return self._view(self._get_locked(credential_id))

    def list(self) -> List[CredentialView]:
        """Masked views in priority order."""
        with self._lock:
            ordered = sorted(self._credentials.values(), key=lambda c: c.priority)
            return [self._view(c) for c in ordered]

    def stats(self, credential_id: int) -> List[CredentialUsageEntry]:
        """Most recent usage-log entries, newest first."""
        with self._lock:
            credential = self._get_locked(credential_id)
        with credential.counter_lock:
            return list(reversed(credential.usage_log))

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)

    def ensure_system_key(self, secret: Optional[str], alias: str = "System Key") -> Optional[CredentialView]:
        """Seed an empty pool from an environment-provided key."""
        if not secret:
            return None
        with self._lock:
            if self._credentials:
                return None
            return self.add(alias=alias, secret=secret)
