"""
Chat session manager.

Each user has at most one live bot message. Content of the same type
replaces the live message in place; content of another type replaces the
message itself. All operations for one user run under that user's lock.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..errors import ChatError
from ..models import ChatSession, MessageContent
from .transport import ChatTransport

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4096


def fit_text(text: str) -> str:
    if len(text) <= MAX_TEXT_LENGTH:
        return text
    return text[:MAX_TEXT_LENGTH - 3] + '...'


class SessionManager:
    def __init__(self, transport: ChatTransport, timeout_minutes: int = 60,
                 clock: Callable[[], float] = time.time):
        self.transport = transport
        self.timeout = timeout_minutes * 60
        self.clock = clock
        self._sessions: Dict[int, ChatSession] = {}
        self._user_locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def _delete(self, session: ChatSession):
        try:
            self.transport.delete_message(session.chat_id, session.message_id)
        except ChatError as e:
            logger.debug("Could not delete message %d: %s", session.message_id, e)

    def _send_new(self, user_id: int, chat_id: int, content: MessageContent) -> ChatSession:
        message_id = self.transport.send_message(chat_id, fit_text(content.text), content.keyboard)
        previous = self._sessions.get(user_id)
        if previous is not None and previous.message_id != message_id:
            self._delete(previous)
        now = self.clock()
        session = ChatSession(chat_id=chat_id, message_id=message_id, message_type=content.type,
                              created_at=now, expires_at=now + self.timeout)
        self._sessions[user_id] = session
        return session

    def send_new(self, user_id: int, chat_id: int, content: MessageContent) -> ChatSession:
        """Send a fresh message and drop the previous live one"""
        with self._lock_for(user_id):
            return self._send_new(user_id, chat_id, content)

    def send_or_edit(self, user_id: int, chat_id: int, content: MessageContent) -> ChatSession:
        """Edit the live message when it has the same type, otherwise send a new one"""
        with self._lock_for(user_id):
            session = self._sessions.get(user_id)
            if session is not None and session.expires_at <= self.clock():
                self._delete(session)
                del self._sessions[user_id]
                session = None

            if session is None or session.message_type != content.type or session.chat_id != chat_id:
                return self._send_new(user_id, chat_id, content)

            try:
                self.transport.edit_message(chat_id, session.message_id, fit_text(content.text), content.keyboard)
            except ChatError as e:
                if e.not_modified:
                    return session
                logger.debug("Edit of message %d failed, sending a new one: %s", session.message_id, e)
                return self._send_new(user_id, chat_id, content)
            return session

    def get(self, user_id: int) -> Optional[ChatSession]:
        with self._lock_for(user_id):
            return self._sessions.get(user_id)

    def clear(self, user_id: int):
        with self._lock_for(user_id):
            session = self._sessions.pop(user_id, None)
            if session is not None:
                self._delete(session)

    def cleanup_expired(self) -> int:
        """Delete live messages older than the timeout; returns how many were dropped"""
        with self._locks_guard:
            user_ids = list(self._user_locks)
        removed = 0
        now = self.clock()
        for user_id in user_ids:
            with self._lock_for(user_id):
                session = self._sessions.get(user_id)
                if session is not None and session.expires_at <= now:
                    self._delete(session)
                    del self._sessions[user_id]
                    removed += 1
        if removed:
            logger.debug("Cleaned up %d expired chat sessions", removed)
        return removed

    def __len__(self) -> int:
        return len(self._sessions)
