"""
Conversation persistence with debounced saves.

Conversations are stored as flat records: ``conv:<id>`` holds the metadata
and each message lives under ``msg:<conv_id>:<index>``. Saving replaces the
full message list of a conversation.

Rapid successive saves of the same conversation are coalesced by a
``Debouncer``; ``flush_pending_saves()`` must run before shutdown so queued
saves are not lost. Flushing twice never writes twice.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .logging_utils import log_error, log_info, log_planner
from .schemas import Conversation, ConversationSummary, SerializedMessage, generate_id, utcnow
from .storage import KeyValueStorage
from .timers import Debouncer

DEFAULT_TITLE = "New chat"
MAX_TITLE_LENGTH = 50
MAX_PREVIEW_LENGTH = 80
SAVE_DEBOUNCE_SECONDS = 2.0
ACTIVE_CONVERSATION_KEY = "active_conversation"
CONVERSATION_KEY_PREFIX = "conv:"
MESSAGE_KEY_PREFIX = "msg:"

_CODE_BLOCK = re.compile(r"```.*?```", re.DOTALL)
_MARKDOWN = re.compile(r"[#*_~`]")
_NEWLINES = re.compile(r"\n+")


def generate_title(content: str) -> str:
    """Derive a conversation title from a message (markdown and code stripped)."""

    cleaned = _CODE_BLOCK.sub("", content)
    cleaned = _MARKDOWN.sub("", cleaned)
    cleaned = _NEWLINES.sub(" ", cleaned).strip()
    if not cleaned:
        return DEFAULT_TITLE
    if len(cleaned) > MAX_TITLE_LENGTH:
        return cleaned[:MAX_TITLE_LENGTH] + "…"
    return cleaned


def _message_prefix(conversation_id: str) -> str:
    return f"{MESSAGE_KEY_PREFIX}{conversation_id}:"


def _message_key(conversation_id: str, index: int) -> str:
    # Zero-padded so prefix scans return messages in order
    return f"{_message_prefix(conversation_id)}{index:06d}"


class ChatHistoryService:
    """Create, save, load and list conversations.

    Args:
        storage: Key-value backend for conversation and message records
        debounce_seconds: Quiet period for ``save_conversation_debounced``
        debouncer: Optional pre-built debouncer (tests inject one with a fake sleep)
        clock: Returns the current time
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        debounce_seconds: float = SAVE_DEBOUNCE_SECONDS,
        debouncer: Optional[Debouncer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.debouncer = debouncer or Debouncer(debounce_seconds)
        self.clock = clock
        self.saves = 0

    async def create_conversation(self, first_message: str) -> str:
        now = self.clock()
        conversation_id = generate_id("conv")
        record = {
            "id": conversation_id,
            "title": generate_title(first_message),
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        await self.storage.put(f"{CONVERSATION_KEY_PREFIX}{conversation_id}", record)
        await self.set_active_conversation_id(conversation_id)
        log_planner(f"[ChatHistory] Created {conversation_id}: {record['title']}")
        return conversation_id

    def save_conversation_debounced(
        self, conversation_id: str, messages: Sequence[SerializedMessage]
    ) -> None:
        """Queue a save; repeated calls within the quiet period keep only the latest."""

        snapshot = list(messages)

        async def save() -> None:
            await self.save_conversation(conversation_id, snapshot)

        self.debouncer.schedule(conversation_id, save)

    async def save_conversation(
        self, conversation_id: str, messages: Sequence[SerializedMessage]
    ) -> bool:
        """Replace the stored messages of a conversation.

        Storage failures are logged and reported as ``False``; they never raise.
        """

        try:
            key = f"{CONVERSATION_KEY_PREFIX}{conversation_id}"
            now = self.clock()
            record = await self.storage.get(key)
            first_user = next((m.content for m in messages if m.role == "user"), None)
            if record is None:
                record = {
                    "id": conversation_id,
                    "title": generate_title(first_user or ""),
                    "created_at": now.isoformat(),
                }
            elif record.get("title") == DEFAULT_TITLE and first_user:
                record["title"] = generate_title(first_user)
            record["updated_at"] = now.isoformat()

            await self.storage.put(key, record)
            await self.storage.delete_prefix(_message_prefix(conversation_id))
            for index, message in enumerate(messages):
                await self.storage.put(
                    _message_key(conversation_id, index),
                    message.model_dump(mode="json"),
                )
        except Exception as exc:
            log_error(f"[ChatHistory] Save of {conversation_id} failed: {exc}")
            return False

        self.saves += 1
        return True

    async def flush_pending_saves(self) -> int:
        """Run every queued save now; returns the number of saves performed."""

        pending = len(self.debouncer.pending()) + self.debouncer.in_flight()
        if pending:
            log_info(f"[ChatHistory] Flushing {pending} pending save(s)")
        return await self.debouncer.flush()

    async def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        record = await self.storage.get(f"{CONVERSATION_KEY_PREFIX}{conversation_id}")
        if record is None:
            return None
        rows = await self.storage.scan(_message_prefix(conversation_id))
        messages = [SerializedMessage.model_validate(value) for _, value in rows]
        return Conversation(
            id=record["id"],
            title=record["title"],
            messages=messages,
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    async def list_conversations(self) -> List[ConversationSummary]:
        """Summaries of every conversation, most recently updated first."""

        summaries = []
        for _, record in await self.storage.scan(CONVERSATION_KEY_PREFIX):
            rows = await self.storage.scan(_message_prefix(record["id"]))
            first_user = next(
                (value["content"] for _, value in rows if value.get("role") == "user"),
                "",
            )
            summaries.append(
                ConversationSummary(
                    id=record["id"],
                    title=record["title"],
                    message_count=len(rows),
                    created_at=record["created_at"],
                    updated_at=record["updated_at"],
                    preview=first_user[:MAX_PREVIEW_LENGTH],
                )
            )
        summaries.sort(key=lambda summary: summary.updated_at, reverse=True)
        return summaries

    async def rename_conversation(self, conversation_id: str, new_title: str) -> bool:
        key = f"{CONVERSATION_KEY_PREFIX}{conversation_id}"
        record = await self.storage.get(key)
        if record is None:
            return False
        record["title"] = new_title.strip()[:MAX_TITLE_LENGTH] or DEFAULT_TITLE
        record["updated_at"] = self.clock().isoformat()
        await self.storage.put(key, record)
        return True

    async def delete_conversation(self, conversation_id: str) -> None:
        self.debouncer.cancel(conversation_id)
        await self.storage.delete_prefix(_message_prefix(conversation_id))
        await self.storage.delete(f"{CONVERSATION_KEY_PREFIX}{conversation_id}")
        if await self.get_active_conversation_id() == conversation_id:
            await self.clear_active_conversation_id()

    # ------------------------------------------------------------------
    # Active conversation tracking
    # ------------------------------------------------------------------

    async def get_active_conversation_id(self) -> Optional[str]:
        record = await self.storage.get(ACTIVE_CONVERSATION_KEY)
        return record.get("id") if record else None

    async def set_active_conversation_id(self, conversation_id: str) -> None:
        await self.storage.put(ACTIVE_CONVERSATION_KEY, {"id": conversation_id})

    async def clear_active_conversation_id(self) -> None:
        await self.storage.delete(ACTIVE_CONVERSATION_KEY)

    async def close(self) -> None:
        await self.flush_pending_saves()


__all__ = ["ChatHistoryService", "generate_title", "DEFAULT_TITLE"]
