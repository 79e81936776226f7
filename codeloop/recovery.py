"""Recovery journal: checkpoint in-progress turns so interrupted requests can resume."""

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite

from codeloop.config import RecoveryConfig
from codeloop.exceptions import RecoveryError
from codeloop.llm import Message, ToolCall, ToolStatus
from codeloop.logging import get_logger
from codeloop.session import AssistantMessage

log = get_logger(__name__)

CONTINUE_INSTRUCTION = "[System] The previous response was interrupted. Please continue from where you left off."
INTERRUPTED_MESSAGE = "Interrupted - pending recovery"


@dataclass
class RecoveryPoint:
    """Snapshot of one in-progress model call."""

    id: str
    timestamp: float
    assistant_message_id: str
    session_id: str = ""
    partial_content: str = ""
    completed_tool_calls: list[ToolCall] = field(default_factory=list)
    pending_tool_calls: list[ToolCall] = field(default_factory=list)
    provider_messages: list[Message] = field(default_factory=list)
    loop_count: int = 0
    error: str | None = None

    def to_dict(self, max_messages: int | None = None) -> dict[str, Any]:
        messages = self.provider_messages
        if max_messages is not None:
            messages = messages[-max_messages:] if max_messages > 0 else []
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "assistant_message_id": self.assistant_message_id,
            "session_id": self.session_id,
            "partial_content": self.partial_content,
            "completed_tool_calls": [tc.to_dict() for tc in self.completed_tool_calls],
            "pending_tool_calls": [tc.to_dict() for tc in self.pending_tool_calls],
            "provider_messages": [m.to_dict() for m in messages],
            "loop_count": self.loop_count,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecoveryPoint":
        """Rebuild a point; unknown fields are ignored."""
        return cls(
            id=str(data["id"]),
            timestamp=float(data.get("timestamp", 0.0)),
            assistant_message_id=str(data.get("assistant_message_id", "")),
            session_id=str(data.get("session_id", "")),
            partial_content=str(data.get("partial_content", "")),
            completed_tool_calls=[ToolCall.from_dict(tc) for tc in data.get("completed_tool_calls", [])],
            pending_tool_calls=[ToolCall.from_dict(tc) for tc in data.get("pending_tool_calls", [])],
            provider_messages=[Message.from_dict(m) for m in data.get("provider_messages", [])],
            loop_count=int(data.get("loop_count", 0)),
            error=data.get("error"),
        )


class RecoveryStore(ABC):
    """Persistence surface for serialized recovery points."""

    @abstractmethod
    async def save(self, data: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def load_all(self) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def delete(self, point_id: str) -> None:
        pass

    async def close(self) -> None:
        return None


class MemoryRecoveryStore(RecoveryStore):
    """Process-local store; survives journal instances, not process restarts."""

    def __init__(self):
        self._items: dict[str, str] = {}

    async def save(self, data: dict[str, Any]) -> None:
        self._items[data["id"]] = json.dumps(data)

    async def load_all(self) -> list[dict[str, Any]]:
        return [json.loads(raw) for raw in self._items.values()]

    async def delete(self, point_id: str) -> None:
        self._items.pop(point_id, None)


class SqliteRecoveryStore(RecoveryStore):
    """SQLite-backed store for recovery points."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            try:
                self._db = await aiosqlite.connect(str(self.db_path))
                await self._db.execute("""
                    CREATE TABLE IF NOT EXISTS recovery_points (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL DEFAULT '',
                        timestamp REAL NOT NULL,
                        data TEXT NOT NULL
                    )
                """)
                await self._db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_recovery_points_timestamp ON recovery_points(timestamp)"
                )
                await self._db.commit()
            except aiosqlite.Error as e:
                raise RecoveryError(f"Failed to open recovery store {self.db_path}: {e}") from e
        return self._db

    async def save(self, data: dict[str, Any]) -> None:
        db = await self._ensure_db()
        try:
            await db.execute(
                "INSERT OR REPLACE INTO recovery_points (id, session_id, timestamp, data) VALUES (?, ?, ?, ?)",
                (data["id"], data.get("session_id", ""), data["timestamp"], json.dumps(data, ensure_ascii=False)),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise RecoveryError(f"Failed to save recovery point {data['id']}: {e}") from e

    async def load_all(self) -> list[dict[str, Any]]:
        db = await self._ensure_db()
        try:
            async with db.execute("SELECT data FROM recovery_points ORDER BY timestamp DESC") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise RecoveryError(f"Failed to load recovery points: {e}") from e
        return [json.loads(row[0]) for row in rows]

    async def delete(self, point_id: str) -> None:
        db = await self._ensure_db()
        try:
            await db.execute("DELETE FROM recovery_points WHERE id = ?", (point_id,))
            await db.commit()
        except aiosqlite.Error as e:
            raise RecoveryError(f"Failed to delete recovery point {point_id}: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def create_recovery_store(config: RecoveryConfig) -> RecoveryStore:
    if config.storage == "sqlite":
        return SqliteRecoveryStore(config.path)
    return MemoryRecoveryStore()


class RecoveryJournal:
    """Tracks the current recovery point and a bounded set of older ones.

    Points older than the TTL are discarded and at most ``max_points`` are
    kept, evicting the least recently touched first.
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        store: RecoveryStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RecoveryConfig()
        self.store = store if store is not None else create_recovery_store(self.config)
        self._clock = clock
        self.points: dict[str, RecoveryPoint] = {}
        self.current_id: str | None = None
        self.resume_attempts = 0
        self._autosave_task: asyncio.Task[None] | None = None
        self._autosave_stop: asyncio.Event | None = None

    @property
    def current_point(self) -> RecoveryPoint | None:
        if self.current_id is None:
            return None
        return self.points.get(self.current_id)

    def _touch(self) -> RecoveryPoint | None:
        point = self.current_point
        if point is not None:
            point.timestamp = self._clock()
        return point

    def _is_expired(self, point: RecoveryPoint) -> bool:
        return self._clock() - point.timestamp > self.config.ttl_seconds

    # -- session lifecycle ----------------------------------------------

    def start_session(
        self,
        assistant_message_id: str,
        provider_messages: list[Message],
        session_id: str = "",
        loop_count: int = 0,
    ) -> str:
        """Open a new current point and start the autosave timer."""
        point_id = f"recovery-{int(self._clock() * 1000)}-{uuid.uuid4().hex[:6]}"
        self.points[point_id] = RecoveryPoint(
            id=point_id,
            timestamp=self._clock(),
            assistant_message_id=assistant_message_id,
            session_id=session_id,
            provider_messages=list(provider_messages),
            loop_count=loop_count,
        )
        self.current_id = point_id
        self.resume_attempts = 0
        self.cleanup_expired_points()
        self._start_autosave()
        log.debug("Recovery session started", recovery_id=point_id)
        return point_id

    def append_content(self, content: str) -> None:
        point = self._touch()
        if point is not None:
            point.partial_content += content

    def add_pending_tool_calls(self, tool_calls: list[ToolCall]) -> None:
        point = self._touch()
        if point is None:
            return
        completed = {tc.id for tc in point.completed_tool_calls}
        point.pending_tool_calls = [tc for tc in tool_calls if tc.id not in completed]

    def add_completed_tool_call(self, tool_call: ToolCall) -> None:
        point = self._touch()
        if point is None:
            return
        point.pending_tool_calls = [tc for tc in point.pending_tool_calls if tc.id != tool_call.id]
        if all(tc.id != tool_call.id for tc in point.completed_tool_calls):
            point.completed_tool_calls.append(tool_call)

    def record_error(self, error: str) -> None:
        point = self._touch()
        if point is not None:
            point.error = error

    async def end_session(self, success: bool = True) -> None:
        """Close the current session; failed sessions stay recoverable."""
        await self._stop_autosave()
        point = self.current_point
        if point is not None:
            if success:
                self.points.pop(point.id, None)
                await self.store.delete(point.id)
                log.debug("Recovery session completed", recovery_id=point.id)
            else:
                await self.store.save(point.to_dict(self.config.persisted_messages))
                log.info("Recovery point kept", recovery_id=point.id, error=point.error)
        self.current_id = None
        self.resume_attempts = 0

    # -- resumption -----------------------------------------------------

    def can_recover(self) -> bool:
        point = self.current_point
        if point is None:
            return False
        if self.resume_attempts >= self.config.max_resume_attempts:
            return False
        return not self._is_expired(point)

    def prepare_recovery_messages(self) -> list[Message] | None:
        """Replay the partial assistant output and ask the model to continue."""
        point = self.current_point
        if point is None:
            return None

        messages = list(point.provider_messages)
        while messages and messages[0].role == "tool":
            messages.pop(0)
        if point.partial_content or point.completed_tool_calls:
            messages.append(Message(
                role="assistant",
                content=point.partial_content or None,
                tool_calls=list(point.completed_tool_calls),
            ))
            for tool_call in point.completed_tool_calls:
                messages.append(Message(
                    role="tool",
                    content=tool_call.result or "",
                    tool_call_id=tool_call.id,
                    tool_name=tool_call.name,
                ))
        messages.append(Message(role="user", content=CONTINUE_INSTRUCTION))

        self.resume_attempts += 1
        log.info(
            "Preparing recovery",
            recovery_id=point.id,
            attempt=self.resume_attempts,
            max_attempts=self.config.max_resume_attempts,
        )
        return messages

    def restore_transcript(self, transcript: AssistantMessage) -> None:
        """Bring a transcript message back to the state recorded in the current point."""
        point = self.current_point
        if point is None:
            return
        if point.partial_content and not transcript.content:
            transcript.append_text(point.partial_content)

        for recorded in point.completed_tool_calls:
            transcript.add_tool_call(ToolCall.from_dict(recorded.to_dict()))
            tool_call = transcript.tool_calls[recorded.id]
            tool_call.status = ToolStatus.SUCCESS
            tool_call.result = recorded.result
        for recorded in point.pending_tool_calls:
            transcript.add_tool_call(ToolCall.from_dict(recorded.to_dict()))
            tool_call = transcript.tool_calls[recorded.id]
            if not tool_call.is_terminal:
                tool_call.status = ToolStatus.ERROR
                tool_call.error = INTERRUPTED_MESSAGE

    def get_recoverable_sessions(self) -> list[RecoveryPoint]:
        points = [point for point in self.points.values() if not self._is_expired(point)]
        return sorted(points, key=lambda point: point.timestamp, reverse=True)

    def recover_from_point(self, point_id: str) -> RecoveryPoint | None:
        point = self.points.get(point_id)
        if point is None:
            return None
        self.current_id = point_id
        self.resume_attempts = 0
        return point

    def cleanup_expired_points(self) -> None:
        for point_id in [pid for pid, point in self.points.items() if self._is_expired(point)]:
            del self.points[point_id]
        if len(self.points) > self.config.max_points:
            ranked = sorted(self.points.values(), key=lambda point: point.timestamp, reverse=True)
            for point in ranked[self.config.max_points:]:
                del self.points[point.id]

    # -- persistence ----------------------------------------------------

    async def save_to_storage(self) -> None:
        """Persist a bounded projection of the current point."""
        point = self.current_point
        if point is not None:
            await self.store.save(point.to_dict(self.config.persisted_messages))

    async def restore_from_storage(self) -> int:
        """Load persisted points, dropping expired ones. Returns how many were restored."""
        restored = 0
        for data in await self.store.load_all():
            point = RecoveryPoint.from_dict(data)
            if self._is_expired(point):
                await self.store.delete(point.id)
                continue
            self.points.setdefault(point.id, point)
            restored += 1
        self.cleanup_expired_points()
        log.info("Recovery points restored", count=restored)
        return restored

    def _start_autosave(self) -> None:
        if self._autosave_task is not None and not self._autosave_task.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._autosave_stop = asyncio.Event()
        self._autosave_task = asyncio.create_task(self._autosave_loop(self._autosave_stop))

    async def _stop_autosave(self) -> None:
        if self._autosave_stop is not None:
            self._autosave_stop.set()
        task = self._autosave_task
        self._autosave_task = None
        self._autosave_stop = None
        if task is not None:
            await task

    async def _autosave_loop(self, stop: asyncio.Event) -> None:
        interval = max(0.01, self.config.auto_save_interval_seconds)
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.save_to_storage()
            except RecoveryError as e:
                log.warning("Recovery autosave failed", error=str(e))
