"""Immutable snapshots of a conversation's current path, plus favorites and export."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import NotFound
from .models import Conversation, Role, _now, new_id
from .tree import get_current_path_messages

logger = logging.getLogger("convtree")

ROLE_HEADERS = {"system": "System", "user": "User", "assistant": "Assistant"}


class MessageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str
    role: Role
    content: str
    reasoning_content: Optional[str] = None
    timestamp: datetime
    parent_id: Optional[str] = None
    children: Tuple[str, ...] = ()
    model_id: Optional[str] = None
    is_favorited: bool = False
    has_error: bool = False


class Snapshot(BaseModel):
    """A frozen copy of a current path, detached from the live store."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    conversation_id: str
    title: str
    captured_at: datetime = Field(default_factory=_now)
    messages: Tuple[MessageSnapshot, ...] = ()


def snapshot_current_path(conversation: Conversation) -> Snapshot:
    """Copy the current path so later edits, streams and deletes cannot reach it."""
    messages = tuple(
        MessageSnapshot.model_validate(m.model_dump(exclude={"is_streaming"}))
        for m in get_current_path_messages(conversation)
    )
    return Snapshot(conversation_id=conversation.id, title=conversation.title, messages=messages)


def render_transcript(messages: Iterable) -> str:
    """
    Render messages as a Markdown transcript:
        ## M1 (User)
        text...
        ## M2 (Assistant)
        ...
    """
    parts: List[str] = []
    for number, message in enumerate(messages, start=1):
        header = f"## M{number} ({ROLE_HEADERS[message.role]})"
        parts.append(header + "\n" + message.content.strip() + "\n")
    return "\n".join(parts)


def render_markdown(snapshot: Snapshot) -> str:
    head = f"# {snapshot.title}\n\n_Captured {snapshot.captured_at.isoformat(timespec='seconds')}_\n\n"
    return head + render_transcript(snapshot.messages)


class Favorites:
    """
    Collection of saved snapshots, oldest first.

    With a ``store`` (a FavoriteRepository) the collection is loaded from
    it on creation and every add/remove is written through.
    """

    def __init__(self, store: Optional[Any] = None) -> None:
        self._items: Dict[str, Snapshot] = {}
        self._store = store
        if store is not None:
            for snapshot in store.list():
                self._items[snapshot.id] = snapshot

    def __len__(self) -> int:
        return len(self._items)

    def add(self, snapshot: Snapshot) -> Snapshot:
        if self._store is not None:
            self._store.save(snapshot)
        self._items[snapshot.id] = snapshot
        logger.info("Saved favorite %s from conversation %s", snapshot.id, snapshot.conversation_id)
        return snapshot

    def get(self, snapshot_id: str) -> Snapshot:
        try:
            return self._items[snapshot_id]
        except KeyError:
            raise NotFound(f"Favorite not found: {snapshot_id}") from None

    def remove(self, snapshot_id: str) -> None:
        self.get(snapshot_id)
        if self._store is not None:
            self._store.delete(snapshot_id)
        del self._items[snapshot_id]

    def list(self) -> List[Snapshot]:
        return list(self._items.values())
