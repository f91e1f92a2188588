"""In-memory token store for authenticated sessions."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace

from authflow.client.models.tokens import TokenSet
from authflow.errors import SessionNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Binds a token set to one logical user session.

    ``family_id`` groups sessions that are logged out together when a
    refresh token reuse is detected.
    """

    session_id: str
    family_id: str
    tokens: TokenSet
    created_at: float = field(default_factory=time.time)
    refreshed_at: float | None = None


class TokenStore:
    """Holds token sets per session with expiry tracking.

    Sessions are created at a successful code exchange, have their token set
    replaced on every refresh, and are destroyed on logout or refresh failure.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    # ================================
    # Creation
    # ================================

    def create(self, tokens: TokenSet, family_id: str | None = None) -> Session:
        """Create a session for a freshly exchanged token set."""
        session_id = str(uuid.uuid4())
        session = Session(
            session_id=session_id,
            family_id=family_id or str(uuid.uuid4()),
            tokens=tokens,
        )
        self._sessions[session_id] = session

        logger.debug(f"Created session {session_id} in family {session.family_id}")
        return session

    # ================================
    # Access
    # ================================

    def get(self, session_id: str) -> Session:
        """Get a session.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"Unknown session {session_id}") from None

    def get_tokens(self, session_id: str) -> TokenSet:
        return self.get(session_id).tokens

    def sessions_in_family(self, family_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.family_id == family_id]

    def expiring(self, within: float, now: float | None = None) -> list[Session]:
        """List sessions whose access token expires within ``within`` seconds."""
        now = time.time() if now is None else now
        return [
            s for s in self._sessions.values() if s.tokens.is_expired(within, now)
        ]

    # ================================
    # Mutation
    # ================================

    def replace_tokens(self, session_id: str, tokens: TokenSet) -> Session:
        """Replace the token set of a session after a refresh."""
        session = replace(self.get(session_id), tokens=tokens, refreshed_at=time.time())
        self._sessions[session_id] = session

        logger.debug(f"Replaced token set for session {session_id}")
        return session

    # ================================
    # Termination
    # ================================

    def destroy(self, session_id: str) -> bool:
        """Destroy a session.

        Returns True if session existed and was destroyed, False otherwise.
        """
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug(f"Destroyed session {session_id}")
            return True
        return False

    def destroy_family(self, family_id: str) -> list[str]:
        """Destroy every session in a family and return their ids."""
        doomed = [s.session_id for s in self.sessions_in_family(family_id)]
        for session_id in doomed:
            del self._sessions[session_id]

        logger.debug(f"Destroyed {len(doomed)} sessions in family {family_id}")
        return doomed

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
