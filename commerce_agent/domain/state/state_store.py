from typing import AsyncIterator, Dict, List, Optional, Callable, Awaitable
from contextlib import asynccontextmanager
import asyncio
import structlog

from commerce_agent.domain.models.commands import BaseCommand, apply_commands
from commerce_agent.domain.models.conversation_state import ConversationState

logger = structlog.get_logger(__name__)

Checkpointer = Callable[[ConversationState], Awaitable[None]]


class _SessionLock:
    """Lock plus the number of tasks holding or waiting for it"""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class StateStore:
    """Holds one ConversationState per session; changes only through commands

    Session locks exist only while some task holds or waits for them, so the
    lock table never outgrows the sessions that are busy right now.
    """

    def __init__(self, checkpointer: Optional[Checkpointer] = None):
        self.states: Dict[str, ConversationState] = {}
        self.checkpointer = checkpointer
        self._locks: Dict[str, _SessionLock] = {}

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Per-session lock serialising turns"""

        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(session_id) is entry:
                del self._locks[session_id]

    def locked(self, session_id: str) -> bool:
        entry = self._locks.get(session_id)
        return entry is not None and entry.lock.locked()

    async def load(self, session_id: str) -> ConversationState:
        state = self.states.get(session_id)
        if state is None:
            state = ConversationState(session_id=session_id)
        return state

    async def commit(self, session_id: str, commands: List[BaseCommand]) -> ConversationState:
        """Apply a turn's commands to the stored state"""

        state = apply_commands(await self.load(session_id), commands)
        self.states[session_id] = state

        if self.checkpointer is not None:
            await self.checkpointer(state)

        logger.debug("State committed", session_id=session_id, commands=len(commands))
        return state

    async def clear(self, session_id: str) -> None:
        self.states.pop(session_id, None)

    async def end(self, session_id: str) -> None:
        """Discard a session once any running turn on it has finished"""

        async with self.lock(session_id):
            await self.clear(session_id)
        logger.debug("Session state discarded", session_id=session_id)

    def sessions(self) -> List[str]:
        return list(self.states)
