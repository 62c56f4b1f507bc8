"""Session management for conversation history."""

import asyncio
import hashlib
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

from loguru import logger

from errand.errors import LockTimeout, SessionNotFound, StoreIOFailure
from errand.utils.helpers import atomic_write_text, ensure_dir, safe_filename

ROLES = ("user", "assistant", "tool")


@dataclass(frozen=True)
class Turn:
    """One immutable unit of conversation content."""

    role: str
    content: str | None
    sequence: int = 0
    timestamp: str = ""
    tool_calls: tuple[dict[str, Any], ...] = ()  # assistant turns that request tools
    tool_call_id: str | None = None  # tool turns
    name: str | None = None  # tool turns
    error: dict[str, str] | None = None  # tool turns that failed

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid turn role: {self.role}")

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str | None, tool_calls: list[dict[str, Any]] | None = None) -> "Turn":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(
        cls,
        tool_call_id: str,
        name: str,
        content: str,
        error: dict[str, str] | None = None,
    ) -> "Turn":
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name, error=error)

    def to_message(self) -> dict[str, Any]:
        """Convert to the provider message shape ({role, content, ...})."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [dict(tc) for tc in self.tool_calls]
        if self.role == "tool":
            msg["tool_call_id"] = self.tool_call_id
            msg["name"] = self.name
        return msg

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
        }
        if self.tool_calls:
            record["tool_calls"] = [dict(tc) for tc in self.tool_calls]
        if self.tool_call_id is not None:
            record["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            record["name"] = self.name
        if self.error is not None:
            record["error"] = dict(self.error)
        return record

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Turn":
        return cls(
            role=data["role"],
            content=data.get("content"),
            sequence=int(data.get("sequence", 0)),
            timestamp=data.get("timestamp", ""),
            tool_calls=tuple(data.get("tool_calls") or ()),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            error=data.get("error"),
        )


@dataclass
class Session:
    """
    A conversation session.

    Stores turns in JSONL format for easy reading and persistence.
    Turns are append-only: sequence numbers start at 1 and only grow.
    Only SessionManager mutates a Session; everyone else reads snapshots.
    """

    key: str
    turns: list[Turn] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def last_sequence(self) -> int:
        return self.turns[-1].sequence if self.turns else 0

    def get_history(self, max_turns: int = 50) -> list[dict[str, Any]]:
        """Get recent turns in provider message format.

        The window never starts on a tool result whose assistant tool-call
        turn was cut off; providers reject orphaned tool messages.
        """
        recent = self.turns[-max_turns:] if max_turns > 0 else []
        while recent and recent[0].role == "tool":
            recent = recent[1:]
        return [t.to_message() for t in recent]

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            key=self.key,
            turns=tuple(self.turns),
            created_at=self.created_at,
            updated_at=self.updated_at,
            metadata=dict(self.metadata),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session at one point in time."""

    key: str
    turns: tuple[Turn, ...]
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any]

    def __len__(self) -> int:
        return len(self.turns)

    @property
    def roles(self) -> list[str]:
        return [t.role for t in self.turns]


class _SessionLock:
    """asyncio lock that the owning task may re-acquire."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._depth = 0

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(self, timeout: float | None) -> bool:
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            self._depth += 1
            return True
        try:
            if timeout is None:
                await self._lock.acquire()
            else:
                await asyncio.wait_for(self._lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._owner = task
        self._depth = 1
        return True

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()


class SessionManager:
    """
    Manages conversation sessions.

    Sessions are stored as JSONL files in the sessions directory. Each session
    has its own lock; there is no cross-session locking, so independent
    sessions proceed fully in parallel.
    """

    def __init__(self, sessions_dir: Path, lock_timeout: float = 10.0):
        self.sessions_dir = ensure_dir(Path(sessions_dir))
        self.lock_timeout = lock_timeout
        self._cache: dict[str, Session] = {}
        self._locks: dict[str, _SessionLock] = {}

    def _get_session_path(self, key: str) -> Path:
        """Get the file path for a session.

        The readable stem is lossy ("a:b" and "a_b" share it), so a digest of
        the raw key keeps every session in its own file.
        """
        stem = safe_filename(key.replace(":", "_"))[:64]
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
        return self.sessions_dir / f"{stem}-{digest}.jsonl"

    # ── Locking ───────────────────────────────────────────────

    def _lock_for(self, key: str) -> _SessionLock:
        lock = self._locks.get(key)
        if lock is None:
            lock = _SessionLock()
            self._locks[key] = lock
        return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked)

    @asynccontextmanager
    async def lock(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """
        Hold the exclusive lock for one session.

        Re-entrant for the task that holds it. Raises LockTimeout if the lock
        is not acquired within ``timeout`` (default: ``lock_timeout``).
        """
        wait = self.lock_timeout if timeout is None else timeout
        lock = self._lock_for(key)
        if not await lock.acquire(wait):
            raise LockTimeout(key, wait)
        try:
            yield
        finally:
            lock.release()

    # ── Reads ─────────────────────────────────────────────────

    def get_or_create(self, key: str) -> Session:
        """
        Get an existing session or create a new empty one.

        Args:
            key: Session key (usually channel:chat_id).

        Returns:
            The session.

        Raises:
            StoreIOFailure: the session file exists but cannot be parsed.
        """
        if key in self._cache:
            return self._cache[key]

        session = self._load(key)
        if session is None:
            session = Session(key=key)

        self._cache[key] = session
        return session

    def exists(self, key: str) -> bool:
        return key in self._cache or self._get_session_path(key).exists()

    async def read(self, key: str) -> SessionSnapshot:
        """Return an immutable snapshot. Raises SessionNotFound for unknown keys.

        A session file that cannot be parsed raises StoreIOFailure.
        """
        session = self._cache.get(key)
        if session is None:
            session = self._load(key)
            if session is None:
                raise SessionNotFound(key)
            self._cache[key] = session
        return session.snapshot()

    def _load(self, key: str) -> Session | None:
        """
        Load a session from disk. Returns None when no file exists.

        An unreadable file raises StoreIOFailure and is left in place, so a
        later append can never replace real history with an empty session.
        """
        path = self._get_session_path(key)

        if not path.exists():
            return None

        try:
            turns: list[Turn] = []
            metadata: dict[str, Any] = {}
            created_at = None
            updated_at = None

            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue

                    data = json.loads(line)

                    if data.get("_type") == "metadata":
                        metadata = data.get("metadata", {})
                        if data.get("created_at"):
                            created_at = datetime.fromisoformat(data["created_at"])
                        if data.get("updated_at"):
                            updated_at = datetime.fromisoformat(data["updated_at"])
                    else:
                        turns.append(Turn.from_record(data))

            return Session(
                key=key,
                turns=turns,
                created_at=created_at or datetime.now(),
                updated_at=updated_at or created_at or datetime.now(),
                metadata=metadata,
            )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Failed to load session {} from {}: {}", key, path, e)
            raise StoreIOFailure(f"Session {key} is unreadable ({path.name}): {e}") from e

    # ── Writes ────────────────────────────────────────────────

    def _serialize(self, session: Session) -> str:
        metadata_line = {
            "_type": "metadata",
            "id": session.key,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "metadata": session.metadata,
        }
        lines = [json.dumps(metadata_line, ensure_ascii=False)]
        lines.extend(json.dumps(t.to_record(), ensure_ascii=False) for t in session.turns)
        return "\n".join(lines) + "\n"

    def _persist(self, session: Session) -> None:
        try:
            atomic_write_text(self._get_session_path(session.key), self._serialize(session))
        except OSError as e:
            raise StoreIOFailure(f"Failed to persist session {session.key}: {e}") from e

    async def append(self, key: str, turns: Turn | Iterable[Turn]) -> list[Turn]:
        """
        Append one or more turns atomically.

        All turns are written in a single durable write under the session
        lock; if persistence fails, none of them are applied.

        Returns:
            The appended turns with their assigned sequence numbers.

        Raises:
            LockTimeout: another writer held the lock past ``lock_timeout``.
            StoreIOFailure: the write failed; the session is unchanged.
        """
        batch = [turns] if isinstance(turns, Turn) else list(turns)
        if not batch:
            return []

        async with self.lock(key):
            # No awaits below: a cancelled request cannot interleave a partial write.
            session = self.get_or_create(key)
            now = datetime.now()
            seq = session.last_sequence
            stamped: list[Turn] = []
            for turn in batch:
                seq += 1
                stamped.append(replace(turn, sequence=seq, timestamp=turn.timestamp or now.isoformat()))

            candidate = Session(
                key=session.key,
                turns=session.turns + stamped,
                created_at=session.created_at,
                updated_at=now,
                metadata=session.metadata,
            )
            self._persist(candidate)

            session.turns = candidate.turns
            session.updated_at = now
            logger.debug("Session {}: appended {} turn(s), now {}", key, len(stamped), len(session.turns))
            return stamped

    async def clear(self, key: str) -> None:
        """Clear all turns of a session (explicit reset)."""
        async with self.lock(key):
            session = self.get_or_create(key)
            cleared = Session(
                key=key,
                turns=[],
                created_at=session.created_at,
                updated_at=datetime.now(),
                metadata=session.metadata,
            )
            self._persist(cleared)
            session.turns = []
            session.updated_at = cleared.updated_at
            logger.info("Session {} cleared", key)

    def delete(self, key: str) -> bool:
        """Delete a session from cache and disk."""
        self._cache.pop(key, None)
        path = self._get_session_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def invalidate(self, key: str) -> None:
        """Remove a session from the in-memory cache."""
        self._cache.pop(key, None)

    def list_sessions(self) -> list[dict[str, Any]]:
        """
        List all sessions.

        Returns:
            List of session info dicts.
        """
        sessions = []

        for path in self.sessions_dir.glob("*.jsonl"):
            try:
                # Read just the metadata line
                with open(path, encoding="utf-8") as f:
                    first_line = f.readline().strip()
                    if first_line:
                        data = json.loads(first_line)
                        if data.get("_type") == "metadata":
                            sessions.append({
                                "key": data.get("id") or path.stem,
                                "created_at": data.get("created_at"),
                                "updated_at": data.get("updated_at"),
                                "path": str(path),
                            })
            except (OSError, ValueError) as e:
                logger.debug("Skipping unreadable session file {}: {}", path, e)
                continue

        return sorted(sessions, key=lambda x: x.get("updated_at") or "", reverse=True)
