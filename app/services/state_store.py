import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from app.errors import PersistenceFailure
from app.models.conversation import ConversationState
from app.models.database import get_state_row, upsert_state_row

logger = logging.getLogger(__name__)


class ConversationStateStore:
    """Load/save conversation states by session id, with per-session locking.

    The locks are process-local: one turn per session at a time within this
    worker, while distinct sessions never wait on each other.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[session_id] -= 1
            if self._holders[session_id] == 0:
                del self._holders[session_id]
                self._locks.pop(session_id, None)

    async def load(self, session_id: str) -> ConversationState:
        """Return the stored state, or a fresh one for an unknown session."""
        try:
            row = await get_state_row(self.db_path, session_id)
        except aiosqlite.Error as exc:
            logger.error("Loading session %s failed: %s", session_id, exc)
            raise PersistenceFailure("Conversation storage is unavailable") from exc
        if row is None:
            return ConversationState(session_id=session_id)
        return ConversationState.model_validate_json(row["state"])

    async def save(self, state: ConversationState) -> None:
        try:
            await upsert_state_row(
                self.db_path,
                state.session_id,
                state.phase.value,
                state.model_dump_json(),
            )
        except aiosqlite.Error as exc:
            logger.error("Saving session %s failed: %s", state.session_id, exc)
            raise PersistenceFailure("Conversation storage is unavailable") from exc

    async def reset(self, session_id: str) -> ConversationState:
        """Start the session over with an empty state."""
        state = ConversationState(session_id=session_id)
        await self.save(state)
        logger.info("Session %s reset", session_id)
        return state

    async def exists(self, session_id: str) -> bool:
        return await get_state_row(self.db_path, session_id) is not None
