"""Durable per-user conversation memory.

The whole table (uid -> list of messages) lives in one JSON file that is
rewritten in full on every mutation. Two lock levels guard it:

- a table lock serialising every read and write of the file, and
- one lock per uid, held across a load -> mutate -> commit span so two
  overlapping turns for the same user cannot both extend the same base
  conversation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from relay.core.errors import StorageFailure
from relay.core.models import Message


logger = logging.getLogger("relay.memory")

_conversation_adapter = TypeAdapter(List[Message])


class ConversationSession:
    """A locked view of one user's conversation.

    ``messages`` is a private copy; nothing reaches disk until ``commit``.
    """

    def __init__(self, store: "JsonConversationStore", user_id: str, messages: List[Message]):
        self._store = store
        self.user_id = user_id
        self.messages = messages
        self.committed = False

    async def commit(self, messages: Optional[List[Message]] = None) -> None:
        if messages is not None:
            self.messages = messages
        await self._store._write_conversation(self.user_id, self.messages)
        self.committed = True


class JsonConversationStore:
    def __init__(self, path: str | Path):
        self._path = Path(path).resolve()
        self._table_lock = asyncio.Lock()
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        self._ensure_table()

    @property
    def path(self) -> Path:
        return self._path

    # ---- public API ----

    async def load(self, user_id: str) -> List[Message]:
        async with self._table_lock:
            table = await asyncio.to_thread(self._read_table)
        return self._parse_conversation(user_id, table.get(user_id) or [])

    async def replace(self, user_id: str, messages: List[Message]) -> None:
        async with self._user_lock(user_id):
            await self._write_conversation(user_id, messages)

    async def delete(self, user_id: str) -> None:
        async with self._user_lock(user_id):
            await self._write_conversation(user_id, None)

    @asynccontextmanager
    async def session(self, user_id: str) -> AsyncIterator[ConversationSession]:
        async with self._user_lock(user_id):
            messages = await self.load(user_id)
            yield ConversationSession(self, user_id, messages)

    # ---- locking ----

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if self._lock_users[user_id] == 0:
                del self._lock_users[user_id]
                self._user_locks.pop(user_id, None)

    # ---- persistence ----

    async def _write_conversation(self, user_id: str, messages: Optional[List[Message]]) -> None:
        payload = None if messages is None else [m.to_wire() for m in messages]
        async with self._table_lock:
            await asyncio.to_thread(self._rewrite_entry, user_id, payload)
        logger.debug(
            "Persisted conversation uid=%s messages=%s",
            user_id,
            "deleted" if payload is None else len(payload),
        )

    def _rewrite_entry(self, user_id: str, payload: Optional[List[dict]]) -> None:
        table = self._read_table()
        if payload is None:
            if user_id not in table:
                return
            del table[user_id]
        else:
            table[user_id] = payload
        self._write_table(table)

    def _ensure_table(self) -> None:
        if self._path.exists():
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(code="STORE_WRITE_ERROR", message=str(e))
        self._write_table({})
        logger.info("Created conversation table at %s", self._path)

    def _read_table(self) -> Dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageFailure(code="STORE_READ_ERROR", message=str(e))
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise StorageFailure(code="STORE_CORRUPT", message=f"{self._path}: {e}")
        if not isinstance(data, dict):
            raise StorageFailure(
                code="STORE_CORRUPT",
                message=f"{self._path}: expected an object at top level, got {type(data).__name__}",
            )
        return data

    def _write_table(self, table: Dict[str, Any]) -> None:
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid4().hex}.tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                f.write(json.dumps(table, ensure_ascii=False, indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError as e:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove temp file %s", tmp_path)
            raise StorageFailure(code="STORE_WRITE_ERROR", message=str(e))

    def _parse_conversation(self, user_id: str, raw: Any) -> List[Message]:
        try:
            return _conversation_adapter.validate_python(raw)
        except ValidationError as e:
            raise StorageFailure(
                code="STORE_CORRUPT",
                message=f"Invalid conversation for uid={user_id}: {e.error_count()} error(s)",
            )
