from __future__ import annotations

import logging
from typing import Callable

from ..db.kv_store import KeyValueStore, now_ms
from ..db.schema import SESSIONS_TABLE
from ..errors import SessionStoreError
from ..models.session import AppendOptions, LoadOptions, Message, Session

logger = logging.getLogger(__name__)

Summarizer = Callable[[list[Message]], str]


def summarize_messages(messages: list[Message], excerpt_chars: int = 100,
                       excerpt_count: int = 3) -> str:
    """Mechanical, deterministic summary of evicted messages.

    Keeps a count header plus leading excerpts of the first few user and
    assistant messages. No model is involved.
    """
    if not messages:
        return ""

    user_excerpts = [m.content[:excerpt_chars] for m in messages if m.role == "user"]
    assistant_excerpts = [m.content[:excerpt_chars] for m in messages if m.role == "assistant"]

    lines = [f"[Compacted {len(messages)} messages]"]
    if user_excerpts:
        more = "..." if len(user_excerpts) > excerpt_count else ""
        lines.append(f"User topics: {'; '.join(user_excerpts[:excerpt_count])}{more}")
    if assistant_excerpts:
        more = "..." if len(assistant_excerpts) > excerpt_count else ""
        lines.append(f"Assistant responses: {'; '.join(assistant_excerpts[:excerpt_count])}{more}")
    return "\n".join(lines)


def session_key(session_id: str, created_at: int) -> str:
    """Sort key of one stored version; zero-padded so versions sort by creation."""
    return f"{session_id}#{created_at:015d}"


class SessionStore:
    """Per-(user, session) conversation history with compaction and sliding expiry.

    Each stored version lives under ``session_id#created_at``; the most recent
    version is the current one. ``load`` is best-effort, every write raises
    ``SessionStoreError`` on failure.
    """

    def __init__(self, store: KeyValueStore, settings, summarizer: Summarizer | None = None):
        self.store = store
        self.retention_ms = settings.retention_ms
        self.compaction_threshold = settings.compaction_threshold
        self.retain = settings.compaction_retain
        if summarizer is None:
            excerpt_chars = settings.summary_excerpt_chars
            excerpt_count = settings.summary_excerpt_count

            def summarizer(messages: list[Message]) -> str:
                return summarize_messages(messages, excerpt_chars, excerpt_count)
        self.summarizer = summarizer

    def summarize(self, messages: list[Message]) -> str:
        return self.summarizer(messages)

    async def load(self, user_id: str, session_id: str,
                   options: LoadOptions | None = None) -> Session:
        """Return the current session, or a fresh empty one.

        Any store failure degrades to an empty session so the caller can keep
        going without history.
        """
        options = options or LoadOptions()
        logger.info("Loading session user=%s session=%s", user_id, session_id)

        try:
            item = await self._fetch_latest(user_id, session_id)
            if item is None:
                logger.debug("Session not found, starting new user=%s session=%s",
                             user_id, session_id)
                return self._new_session(user_id, session_id)
            session = _item_to_session(item)
        except Exception as e:
            logger.error("Error loading session user=%s session=%s, using empty session: %s",
                         user_id, session_id, e)
            return self._new_session(user_id, session_id)

        await self._touch(session, item["session_key"])

        if options.max_messages and len(session.messages) > options.max_messages:
            session.messages = session.messages[-options.max_messages:]
        if not options.include_summary:
            session.summary = None

        logger.debug("Session loaded user=%s session=%s messages=%d summary=%s",
                     user_id, session_id, len(session.messages), session.summary is not None)
        return session

    async def append(self, user_id: str, session_id: str, message: Message,
                     options: AppendOptions | None = None) -> None:
        options = options or AppendOptions()
        threshold = options.compaction_threshold or self.compaction_threshold
        if options.auto_compact and threshold <= self.retain:
            raise ValueError(
                f"compaction_threshold must be greater than compaction_retain "
                f"(got threshold={threshold}, retain={self.retain})"
            )
        logger.info("Appending message user=%s session=%s role=%s",
                    user_id, session_id, message.role)

        try:
            item = await self._fetch_latest(user_id, session_id)
            session = _item_to_session(item) if item else self._new_session(user_id, session_id)
            session.messages.append(message)

            if options.auto_compact and len(session.messages) > threshold:
                logger.info("Compacting session user=%s session=%s messages=%d threshold=%d",
                            user_id, session_id, len(session.messages), threshold)
                # the triggering message is never evicted
                self._compact(session, retain=max(self.retain, 1))

            await self._save(session)
        except Exception as e:
            logger.error("Error appending message user=%s session=%s: %s", user_id, session_id, e)
            raise SessionStoreError(f"Failed to add message to session {session_id}") from e

        logger.debug("Message appended user=%s session=%s total=%d",
                     user_id, session_id, len(session.messages))

    async def compact(self, user_id: str, session_id: str) -> None:
        logger.info("Compacting session user=%s session=%s", user_id, session_id)
        try:
            item = await self._fetch_latest(user_id, session_id)
            if item is None:
                logger.debug("Nothing to compact user=%s session=%s", user_id, session_id)
                return
            session = _item_to_session(item)
            if not self._compact(session):
                logger.debug("Session too short to compact user=%s session=%s messages=%d",
                             user_id, session_id, len(session.messages))
                return
            await self._save(session)
        except Exception as e:
            logger.error("Error compacting session user=%s session=%s: %s", user_id, session_id, e)
            raise SessionStoreError(f"Failed to compact session {session_id}") from e

    async def list(self, user_id: str, limit: int = 10) -> list[Session]:
        """Most recently created first."""
        logger.info("Listing sessions user=%s limit=%d", user_id, limit)
        try:
            items = await self.store.query(SESSIONS_TABLE, user_id, limit=limit, reverse=True)
        except Exception as e:
            logger.error("Error listing sessions user=%s: %s", user_id, e)
            return []

        sessions = []
        for item in items:
            try:
                sessions.append(_item_to_session(item))
            except ValueError as e:
                logger.warning("Skipping unreadable session record user=%s key=%s: %s",
                               user_id, item.get("session_key"), e)
        return sessions

    async def delete(self, user_id: str, session_id: str) -> int:
        """Remove every stored version; deleting a missing session is not an error."""
        logger.info("Deleting session user=%s session=%s", user_id, session_id)
        try:
            items = await self._fetch_versions(user_id, session_id)
            deleted = 0
            for item in items:
                deleted += await self.store.delete(SESSIONS_TABLE, user_id, item["session_key"])
        except Exception as e:
            logger.error("Error deleting session user=%s session=%s: %s", user_id, session_id, e)
            raise SessionStoreError(f"Failed to delete session {session_id}") from e

        if not deleted:
            logger.warning("Session not found for deletion user=%s session=%s", user_id, session_id)
        return deleted

    def _compact(self, session: Session, retain: int | None = None) -> bool:
        """Fold all but the newest ``retain`` messages into the summary, in place."""
        retain = self.retain if retain is None else retain
        if len(session.messages) <= retain:
            return False

        split = len(session.messages) - retain
        evicted, kept = session.messages[:split], session.messages[split:]
        fragment = self.summarize(evicted)
        session.summary = f"{session.summary}\n\n{fragment}" if session.summary else fragment
        session.messages = kept

        logger.info("Session compacted user=%s session=%s evicted=%d kept=%d",
                    session.user_id, session.session_id, len(evicted), len(kept))
        return True

    async def _fetch_versions(self, user_id: str, session_id: str) -> list[dict]:
        """Stored versions of exactly this session, newest first.

        Ids may themselves contain ``#``, so the prefix scan also returns
        versions of ``session_id#...`` sessions; only keys whose remainder is
        the bare timestamp belong to this one.
        """
        prefix = f"{session_id}#"
        items = await self.store.query(SESSIONS_TABLE, user_id, sort_key_prefix=prefix,
                                       reverse=True)
        return [item for item in items if _is_version_of(item.get("session_key", ""), prefix)]

    async def _fetch_latest(self, user_id: str, session_id: str) -> dict | None:
        items = await self._fetch_versions(user_id, session_id)
        return items[0] if items else None

    async def _touch(self, session: Session, key: str) -> None:
        now = now_ms()
        session.last_accessed = now
        session.expires_at = now + self.retention_ms
        try:
            await self.store.update(
                SESSIONS_TABLE, session.user_id, key,
                {"last_accessed": now, "expires_at": session.expires_at},
                expires_at=session.expires_at,
            )
        except Exception as e:
            logger.warning("Failed to update last accessed time user=%s session=%s: %s",
                           session.user_id, session.session_id, e)

    async def _save(self, session: Session) -> None:
        now = now_ms()
        session.last_accessed = now
        session.expires_at = now + self.retention_ms
        key = session_key(session.session_id, session.created_at)
        item = session.model_dump()
        item["session_key"] = key
        await self.store.put(SESSIONS_TABLE, session.user_id, key, item,
                             expires_at=session.expires_at)

    def _new_session(self, user_id: str, session_id: str) -> Session:
        now = now_ms()
        return Session(
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            last_accessed=now,
            expires_at=now + self.retention_ms,
        )


def _is_version_of(key: str, prefix: str) -> bool:
    return key.startswith(prefix) and key[len(prefix):].isdigit()


def _item_to_session(item: dict) -> Session:
    return Session.model_validate({k: v for k, v in item.items() if k != "session_key"})
