"""Core data models for ConvTree.

This module contains the message node, the flat message store (an arena of
nodes keyed by id, linked by ``parent_id``/``children``) and the
Conversation handle that owns a store plus the current path cursor.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_TITLE, SYSTEM_PROMPT
from .errors import InvalidOperation, NotFound, OrphanNode

logger = logging.getLogger("convtree")

Role = Literal["system", "user", "assistant"]

# Fields fixed at creation; the tree links are owned by the store.
IMMUTABLE_FIELDS = frozenset({"id", "timestamp", "parent_id", "children"})


def new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now().astimezone()


class Message(BaseModel):
    """A single node of the conversation tree."""

    model_config = ConfigDict(protected_namespaces=())

    id: str = ""
    role: Role
    content: str = ""
    reasoning_content: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)
    parent_id: Optional[str] = None
    children: List[str] = Field(default_factory=list)
    model_id: Optional[str] = None
    is_streaming: bool = False
    is_favorited: bool = False
    has_error: bool = False


# ----------------------------
# Message Store
# ----------------------------
class MessageStore:
    """Flat, addressable collection of messages keyed by id."""

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}
        self.root_id: Optional[str] = None

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages.values()))

    def get(self, message_id: str) -> Message:
        try:
            return self._messages[message_id]
        except KeyError:
            raise NotFound(f"Message not found: {message_id}", message_id=message_id) from None

    def insert(self, message: Message) -> str:
        """Add a message, linking it under its parent.

        A missing id is replaced with a fresh one and ``children`` is reset;
        the new id is appended to the parent's ``children``.
        """
        if message.parent_id is not None:
            if message.parent_id not in self._messages:
                raise OrphanNode(
                    f"Parent not found: {message.parent_id}", message_id=message.parent_id
                )
        elif self.root_id is not None:
            raise InvalidOperation("Conversation already has a root", message_id=self.root_id)

        if not message.id:
            message.id = new_id()
        if message.id in self._messages:
            raise InvalidOperation(f"Duplicate message id: {message.id}", message_id=message.id)

        message.children = []
        self._messages[message.id] = message
        if message.parent_id is None:
            self.root_id = message.id
        else:
            self._messages[message.parent_id].children.append(message.id)
        logger.debug("Inserted %s message %s under %s", message.role, message.id, message.parent_id)
        return message.id

    def update(self, message_id: str, **fields: Any) -> None:
        message = self.get(message_id)
        locked = IMMUTABLE_FIELDS.intersection(fields)
        if locked:
            raise InvalidOperation(f"Cannot update fields: {sorted(locked)}", message_id=message_id)
        unknown = set(fields) - set(Message.model_fields)
        if unknown:
            raise InvalidOperation(f"Unknown fields: {sorted(unknown)}", message_id=message_id)

        # Validate the whole update before applying any of it.
        validated = Message.model_validate({**message.model_dump(), **fields})
        for name in fields:
            setattr(message, name, getattr(validated, name))

    def subtree(self, message_id: str) -> List[str]:
        """Return ``message_id`` and all of its descendants, parents first."""
        self.get(message_id)
        out: List[str] = []
        stack = [message_id]
        while stack:
            current = stack.pop()
            out.append(current)
            stack.extend(reversed(self._messages[current].children))
        return out

    def delete(self, message_id: str) -> Set[str]:
        """Delete a message and all of its descendants; return the removed ids."""
        removed = self.subtree(message_id)
        parent_id = self._messages[message_id].parent_id
        if parent_id is not None:
            self._messages[parent_id].children.remove(message_id)
        else:
            self.root_id = None
        for mid in removed:
            del self._messages[mid]
        logger.debug("Deleted %d message(s) rooted at %s", len(removed), message_id)
        return set(removed)

    @classmethod
    def from_messages(cls, messages: Iterable[Message]) -> "MessageStore":
        """Rebuild a store from saved nodes, keeping their ``children`` order."""
        store = cls()
        for message in messages:
            if message.id in store._messages:
                raise InvalidOperation(f"Duplicate message id: {message.id}", message_id=message.id)
            store._messages[message.id] = message

        roots = [m.id for m in store._messages.values() if m.parent_id is None]
        if len(roots) != 1:
            raise InvalidOperation(f"Expected exactly one root, found {len(roots)}")
        store.root_id = roots[0]

        for message in store._messages.values():
            if message.parent_id is not None and message.parent_id not in store._messages:
                raise OrphanNode(
                    f"Parent not found: {message.parent_id}", message_id=message.id
                )
        for message in store._messages.values():
            for child_id in message.children:
                child = store._messages.get(child_id)
                if child is None:
                    raise NotFound(f"Child not found: {child_id}", message_id=child_id)
                if child.parent_id != message.id:
                    raise InvalidOperation(
                        f"Child {child_id} does not point back to {message.id}", message_id=child_id
                    )
        listed = sum(len(m.children) for m in store._messages.values())
        if listed != len(store._messages) - 1:
            raise InvalidOperation("Children lists do not cover every non-root message")
        return store


# ----------------------------
# Conversation
# ----------------------------
@dataclass(frozen=True)
class ChangeEvent:
    """Fired to listeners after a successful mutation."""

    kind: str
    message_ids: List[str] = field(default_factory=list)


Listener = Callable[[ChangeEvent], None]


class Conversation:
    """A message store plus the current path from the root to a chosen leaf."""

    def __init__(
        self,
        *,
        id: Optional[str] = None,
        title: str = DEFAULT_TITLE,
        system_prompt: str = SYSTEM_PROMPT,
        store: Optional[MessageStore] = None,
        current_path: Optional[List[str]] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> None:
        self.id = id or new_id()
        self.title = title
        self.created_at = created_at or _now()

        if store is None:
            store = MessageStore()
            root_id = store.insert(Message(role="system", content=system_prompt))
            current_path = [root_id]
        self.store = store
        self.current_path: List[str] = []
        # Last child each node had on the current path, used when descending a branch.
        self._active_child: Dict[str, str] = {}
        # Stream sessions by request id, oldest first (see streaming.py); never persisted.
        self.sessions: Dict[str, Any] = {}
        self._listeners: List[Listener] = []

        self.set_current_path(current_path or [store.root_id])
        self.updated_at = updated_at or self.created_at

    @property
    def root_id(self) -> str:
        return self.store.root_id

    @property
    def leaf_id(self) -> str:
        return self.current_path[-1]

    def set_current_path(self, path: List[str]) -> None:
        if not path or path[0] != self.store.root_id:
            raise InvalidOperation("Current path must start at the root")
        for parent_id, child_id in zip(path, path[1:]):
            if self.store.get(child_id).parent_id != parent_id:
                raise InvalidOperation(
                    f"{child_id} is not a child of {parent_id}", message_id=child_id
                )
        self.current_path = list(path)
        for parent_id, child_id in zip(path, path[1:]):
            self._active_child[parent_id] = child_id
        self.updated_at = _now()

    def active_child(self, parent_id: str) -> Optional[str]:
        child_id = self._active_child.get(parent_id)
        if child_id is not None and child_id in self.store.get(parent_id).children:
            return child_id
        return None

    def forget(self, message_ids: Iterable[str]) -> None:
        gone = set(message_ids)
        for parent_id, child_id in list(self._active_child.items()):
            if parent_id in gone or child_id in gone:
                del self._active_child[parent_id]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, kind: str, message_ids: Iterable[str] = ()) -> None:
        event = ChangeEvent(kind, list(message_ids))
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Change listener failed for %s event", kind)
