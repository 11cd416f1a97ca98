"""In-memory SessionStore.

Bounded LRU: the least recently used session is evicted once max_sessions
is exceeded. Durable persistence is an external concern behind the
SessionStore protocol.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from clodds.agent.models import Session

logger = logging.getLogger(__name__)

MAX_SESSIONS = 100


class InMemorySessionStore:
    def __init__(self, max_sessions: int = MAX_SESSIONS) -> None:
        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._max = max_sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    async def save(self, session: Session) -> None:
        self._sessions[session.id] = session
        self._sessions.move_to_end(session.id)
        while len(self._sessions) > self._max:
            evicted, _ = self._sessions.popitem(last=False)
            logger.info("Evicted session %s (LRU, max=%d)", evicted, self._max)

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
