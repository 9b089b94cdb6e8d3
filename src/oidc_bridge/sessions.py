# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/oidc_bridge

"""
Server-side session storage.
"""

import secrets
import time

import anyio

from oidc_bridge.models import Session
from oidc_bridge.utils.logger import logger


class SessionStore:
    """
    In-memory session store keyed by an opaque session id.

    Sessions expire after `inactivity_timeout` seconds without access. Expired entries are
    removed lazily. Each session has its own lock so transitions within one session can be
    serialized without coordinating across sessions. Not suitable for multi-process deployments.
    """

    def __init__(self, inactivity_timeout: float) -> None:
        self.inactivity_timeout = inactivity_timeout
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, anyio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _is_stale(self, session: Session, now: float) -> bool:
        return now - session.last_accessed_at > self.inactivity_timeout

    def _purge(self, now: float) -> None:
        stale = [sid for sid, s in self._sessions.items() if self._is_stale(s, now)]
        for sid in stale:
            self.invalidate(sid)
        if stale:
            logger.debug(f"Purged {len(stale)} inactive sessions")

    def create(self) -> Session:
        """Creates and stores a new anonymous session with a fresh random id."""
        now = time.time()
        self._purge(now)
        session = Session(session_id=secrets.token_urlsafe(32), created_at=now, last_accessed_at=now)
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str | None) -> Session | None:
        """
        Returns the live session for `session_id`, or None if unknown, invalidated or inactive.
        Does not refresh the inactivity timer; use `touch` for that.
        """
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_stale(session, time.time()):
            logger.debug("Session expired after inactivity")
            self.invalidate(session_id)
            return None
        return session

    def load(self, session_id: str | None) -> tuple[Session, bool]:
        """
        Returns the session for the cookie value, creating a new one if needed.

        Returns:
            tuple[Session, bool]: The touched session and whether it was newly created.
        """
        session = self.get(session_id)
        if session is None:
            return self.create(), True
        self.touch(session)
        return session, False

    def touch(self, session: Session) -> None:
        session.last_accessed_at = time.time()

    def invalidate(self, session_id: str) -> None:
        """Removes the session id entirely. A later lookup of the same id yields nothing."""
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)

    def lock(self, session_id: str) -> anyio.Lock:
        """
        Returns the lock that serializes state transitions of one session.

        Ids that are no longer live get a throwaway lock that is never stored. Callers
        must check that the session is still in the store once they hold the lock.
        """
        if session_id not in self._sessions:
            return anyio.Lock()
        lock = self._locks.get(session_id)
        if lock is None:
            lock = anyio.Lock()
            self._locks[session_id] = lock
        return lock
