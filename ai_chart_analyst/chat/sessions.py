"""
Chat session lifecycle.

One user owns many sessions under ``users/{uid}/chatSessions``; messages of a
session live under ``users/{uid}/chatMessages/{sessionId}``. An active
session younger than 24 hours is reused rather than re-created.
"""

import logging
import time
from typing import Callable, List, Optional

from ..storage.db import IndexNotReadyError, RealtimeDatabase, join_path
from ..storage.models import ChatMessage, ChatSession, now_ms

logger = logging.getLogger(__name__)

SESSION_MAX_AGE_MS = 24 * 60 * 60 * 1000
MIN_MESSAGE_INTERVAL_MS = 500
MAX_INDEX_RETRIES = 3
MESSAGE_WINDOW = 100

SENDERS = ("user", "agent", "system")


class ChatSessionNotFound(Exception):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Chat session {session_id} not found")


class ChatSessionInactive(Exception):
    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Chat session {session_id} is {status}")


class MessageRateLimited(Exception):
    """Raised when messages arrive faster than the minimum interval."""
    def __init__(self, retry_after_ms: int):
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Please wait {retry_after_ms}ms before sending another message"
        )


class ChatService:
    """Chat sessions and messages of one authenticated user.

    ``clock`` returns epoch milliseconds and ``sleep`` takes seconds; both
    are injectable so the time-based rules can be driven in tests.
    """

    def __init__(
        self,
        db: RealtimeDatabase,
        user_id: str,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
        session_max_age_ms: int = SESSION_MAX_AGE_MS,
        min_message_interval_ms: int = MIN_MESSAGE_INTERVAL_MS
    ):
        if not user_id:
            raise ValueError("user_id is required")
        self.db = db
        self.user_id = user_id
        self.clock = clock
        self.sleep = sleep
        self.session_max_age_ms = session_max_age_ms
        self.min_message_interval_ms = min_message_interval_ms

    def _sessions_path(self, *parts: str) -> str:
        return join_path("users", self.user_id, "chatSessions", *parts)

    def _messages_path(self, session_id: str, *parts: str) -> str:
        return join_path("users", self.user_id, "chatMessages", session_id, *parts)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        data = self.db.get(self._sessions_path(session_id))
        if not data:
            return None
        return ChatSession.from_dict(session_id, data)

    def _find_recent_session(self) -> Optional[ChatSession]:
        now = self.clock()
        active = self.db.query(self._sessions_path(), order_by_child="status", equal_to="active")
        recent = [
            ChatSession.from_dict(key, data) for key, data in active
            if now - data.get("startedAt", 0) < self.session_max_age_ms
        ]
        if not recent:
            return None
        return max(recent, key=lambda s: s.started_at)

    def get_or_create_chat_session(self, metadata: Optional[dict] = None) -> ChatSession:
        """Return the user's recent active session, creating one if needed.

        Queries that fail because the status index is not ready yet are
        retried up to 3 times, waiting 1s, 2s, then 4s. Any other error
        propagates immediately.
        """
        retry_count = 0
        while True:
            try:
                session = self._find_recent_session()
                break
            except IndexNotReadyError:
                if retry_count >= MAX_INDEX_RETRIES:
                    raise
                delay = 2 ** retry_count
                logger.warning("Session index not ready, retrying in %ds", delay)
                self.sleep(delay)
                retry_count += 1

        if session is not None:
            logger.debug("Reusing chat session %s", session.id)
            return session

        now = self.clock()
        session = ChatSession(
            id=self.db.new_key(),
            user_id=self.user_id,
            status="active",
            started_at=now,
            last_message_at=now,
            metadata=dict(metadata or {"source": "api"})
        )
        self.db.set(self._sessions_path(session.id), session.to_dict())
        logger.info("Created chat session %s for %s", session.id, self.user_id)
        return session

    def send_message(
        self,
        session_id: str,
        text: str,
        sender: str = "user",
        author_id: Optional[str] = None
    ) -> ChatMessage:
        """Append a message to an active session.

        Args:
            session_id: Target session
            text: Message body
            sender: One of ``user``, ``agent`` or ``system``
            author_id: Id stored as the message author; the session owner
                for user messages, the sender name otherwise

        Raises:
            ChatSessionNotFound: If the session does not exist
            ChatSessionInactive: If the session is not active
            MessageRateLimited: If the previous message is younger than
                ``min_message_interval_ms``
        """
        if sender not in SENDERS:
            raise ValueError(f"sender must be one of {', '.join(SENDERS)}")

        session = self.get_session(session_id)
        if session is None:
            raise ChatSessionNotFound(session_id)
        if not session.is_active:
            raise ChatSessionInactive(session_id, session.status)

        now = self.clock()
        last = self.db.query(self._messages_path(session_id), order_by_child="timestamp", limit_to_last=1)
        if last:
            elapsed = now - last[0][1].get("timestamp", 0)
            if elapsed < self.min_message_interval_ms:
                raise MessageRateLimited(self.min_message_interval_ms - elapsed)

        author_id = author_id or (self.user_id if sender == "user" else sender)
        message = ChatMessage(
            id=self.db.new_key(),
            text=text,
            sender=sender,
            timestamp=now,
            user_id=author_id,
            status="sent",
            read_by={author_id: now}
        )
        self.db.update(join_path("users", self.user_id), {
            f"chatMessages/{session_id}/{message.id}": message.to_dict(),
            f"chatSessions/{session_id}/lastMessageAt": now,
        })
        return message

    def mark_messages_as_read(self, session_id: str) -> int:
        """Stamp read receipts on messages from others.

        Returns:
            Number of messages newly marked as read
        """
        messages = self.db.get(self._messages_path(session_id)) or {}
        now = self.clock()
        updates = {}
        for key, data in messages.items():
            message = ChatMessage.from_dict(key, data)
            if message.user_id != self.user_id and not message.is_read_by(self.user_id):
                updates[f"{key}/metadata/readBy/{self.user_id}"] = now
                updates[f"{key}/status"] = "read"

        if updates:
            self.db.update(self._messages_path(session_id), updates)
        return len(updates) // 2

    def close_chat_session(self, session_id: str) -> ChatSession:
        """Close a session. Closing a closed session changes nothing."""
        session = self.get_session(session_id)
        if session is None:
            raise ChatSessionNotFound(session_id)
        if session.status == "closed":
            return session
        now = self.clock()
        self.db.update(self._sessions_path(session_id), {"status": "closed", "endedAt": now})
        logger.info("Closed chat session %s", session_id)
        return self.get_session(session_id)

    def close_all_sessions(self) -> int:
        """Close every open session of the user, as on logout."""
        sessions = self.db.get(self._sessions_path()) or {}
        closed = 0
        for key, data in sessions.items():
            if data.get("status") != "closed":
                self.close_chat_session(key)
                closed += 1
        return closed

    def subscribe_to_messages(
        self,
        session_id: str,
        callback: Callable[[List[ChatMessage]], None]
    ) -> Callable[[], None]:
        """Push the last 100 messages, oldest first, on every change.

        Returns:
            Unsubscribe function; the caller must call it to release the listener
        """
        def on_change(value):
            messages = [ChatMessage.from_dict(key, data) for key, data in (value or {}).items()]
            messages.sort(key=lambda m: (m.timestamp, m.id))
            callback(messages[-MESSAGE_WINDOW:])

        return self.db.listen(self._messages_path(session_id), on_change)

    def subscribe_to_session(
        self,
        session_id: str,
        callback: Callable[[Optional[ChatSession]], None]
    ) -> Callable[[], None]:
        """Push the session on every change (None once it is removed)."""
        def on_change(value):
            callback(ChatSession.from_dict(session_id, value) if value else None)

        return self.db.listen(self._sessions_path(session_id), on_change)
