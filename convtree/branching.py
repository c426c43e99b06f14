"""Branch operations: the mutating layer over a conversation tree.

Every operation validates its preconditions before touching the store, so
an operation that raises leaves the conversation unchanged. Operations that
start a model request only create the placeholder node and open the stream
session; the caller drives the transport afterwards.
"""

import logging
from typing import List, Literal, Optional, Set

from .config import DEFAULT_TITLE, TITLE_MAX_CHARS
from .errors import CannotDeleteRoot, InvalidOperation, StreamingInProgress
from .models import Conversation, Message, Role
from .streaming import StreamSession, ensure_request_free, new_request_id, start_session
from .tree import get_path, get_siblings

logger = logging.getLogger("convtree")

Direction = Literal["previous", "next"]


def _path_to(conversation: Conversation, message_id: str) -> List[str]:
    return [m.id for m in get_path(conversation, message_id)]


def _ensure_not_streaming(message: Message) -> None:
    if message.is_streaming:
        raise StreamingInProgress(f"Message is streaming: {message.id}", message_id=message.id)


def _ensure_not_root(message: Message, action: str) -> None:
    if message.parent_id is None:
        raise InvalidOperation(f"Cannot {action} the root message", message_id=message.id)


def _title_from(content: str) -> str:
    text = content.strip()
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


# ----------------------------
# Turn taking
# ----------------------------
def append(
    conversation: Conversation,
    parent_id: str,
    role: Role,
    content: str,
    *,
    model_id: Optional[str] = None,
) -> Message:
    """Append a message as the last child of ``parent_id`` and move the path to it."""
    parent = conversation.store.get(parent_id)
    if role == "system":
        raise InvalidOperation("Only the root may have the system role")
    _ensure_not_streaming(parent)

    message = Message(role=role, content=content, parent_id=parent_id, model_id=model_id)
    conversation.store.insert(message)
    conversation.set_current_path(_path_to(conversation, message.id))
    conversation.notify("append", [message.id])
    return message


def continue_reply(
    conversation: Conversation,
    user_id: str,
    *,
    model_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> StreamSession:
    """Add an assistant placeholder under a childless user message and open its stream."""
    user = conversation.store.get(user_id)
    if user.role != "user":
        raise InvalidOperation(f"Can only continue from a user message: {user_id}", message_id=user_id)
    if user.children:
        raise InvalidOperation(f"User message already has replies: {user_id}", message_id=user_id)
    request_id = request_id or new_request_id()
    ensure_request_free(conversation, request_id)

    placeholder = Message(role="assistant", parent_id=user_id, model_id=model_id)
    conversation.store.insert(placeholder)
    session = start_session(conversation, request_id, placeholder.id)
    conversation.set_current_path(_path_to(conversation, placeholder.id))
    conversation.notify("continue", [placeholder.id])
    return session


def send_message(
    conversation: Conversation,
    content: str,
    *,
    model_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> StreamSession:
    """Append a user turn under the current leaf and start the assistant reply."""
    leaf = conversation.store.get(conversation.leaf_id)
    _ensure_not_streaming(leaf)
    if not content.strip():
        raise InvalidOperation("Message content is empty")
    request_id = request_id or new_request_id()
    ensure_request_free(conversation, request_id)

    if conversation.title == DEFAULT_TITLE and not any(m.role == "user" for m in conversation.store):
        conversation.title = _title_from(content)
    user = append(conversation, leaf.id, "user", content.strip())
    return continue_reply(conversation, user.id, model_id=model_id, request_id=request_id)


# ----------------------------
# Edits and forks
# ----------------------------
def edit(conversation: Conversation, message_id: str, new_content: str) -> Message:
    """Rewrite a message's content in place."""
    message = conversation.store.get(message_id)
    _ensure_not_streaming(message)
    conversation.store.update(message_id, content=new_content)
    conversation.notify("edit", [message_id])
    return message


def edit_and_resend(conversation: Conversation, message_id: str, new_content: str) -> Message:
    """Fork a new sibling carrying ``new_content``; the original is left untouched."""
    original = conversation.store.get(message_id)
    _ensure_not_streaming(original)
    _ensure_not_root(original, "fork")

    sibling = Message(
        role=original.role,
        content=new_content,
        parent_id=original.parent_id,
        model_id=original.model_id,
    )
    conversation.store.insert(sibling)
    conversation.set_current_path(_path_to(conversation, sibling.id))
    conversation.notify("fork", [sibling.id])
    return sibling


def retry(
    conversation: Conversation,
    assistant_id: str,
    *,
    model_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> StreamSession:
    """Regenerate an assistant reply as a new streaming sibling.

    ``model_id`` switches the model for the new reply; by default the
    original's model is reused.
    """
    original = conversation.store.get(assistant_id)
    if original.role != "assistant":
        raise InvalidOperation(f"Can only retry assistant messages: {assistant_id}", message_id=assistant_id)
    _ensure_not_root(original, "retry")
    request_id = request_id or new_request_id()
    ensure_request_free(conversation, request_id)

    sibling = Message(
        role="assistant",
        parent_id=original.parent_id,
        model_id=model_id or original.model_id,
    )
    conversation.store.insert(sibling)
    session = start_session(conversation, request_id, sibling.id)
    conversation.set_current_path(_path_to(conversation, sibling.id))
    conversation.notify("retry", [sibling.id])
    return session


# ----------------------------
# Navigation
# ----------------------------
def switch_branch(conversation: Conversation, message_id: str, direction: Direction) -> List[str]:
    """
    Move the path at ``message_id``'s depth to the adjacent sibling.

    Movement is clamped at both ends. Below the new node the path follows
    the child that was last active there, else the first child, down to a
    leaf. Returns the new current path.
    """
    if direction not in ("previous", "next"):
        raise InvalidOperation(f"Unknown direction: {direction}")
    siblings = get_siblings(conversation, message_id)
    index = siblings.index(message_id)
    step = -1 if direction == "previous" else 1
    target_index = min(max(index + step, 0), len(siblings) - 1)
    if target_index == index:
        return list(conversation.current_path)

    path = _path_to(conversation, siblings[target_index])
    node = conversation.store.get(path[-1])
    while node.children:
        child_id = conversation.active_child(node.id) or node.children[0]
        path.append(child_id)
        node = conversation.store.get(child_id)

    conversation.set_current_path(path)
    conversation.notify("switch", [siblings[target_index]])
    return list(path)


# ----------------------------
# Delete and flags
# ----------------------------
def delete(conversation: Conversation, message_id: str) -> Set[str]:
    """Delete a message and its subtree; truncate the current path if it ran through it."""
    message = conversation.store.get(message_id)
    if message.parent_id is None:
        raise CannotDeleteRoot("Cannot delete the conversation root", message_id=message_id)
    for mid in conversation.store.subtree(message_id):
        _ensure_not_streaming(conversation.store.get(mid))

    removed = conversation.store.delete(message_id)
    conversation.forget(removed)
    if message_id in conversation.current_path:
        depth = conversation.current_path.index(message_id)
        conversation.set_current_path(conversation.current_path[:depth])
    logger.info("Deleted %d message(s) from conversation %s", len(removed), conversation.id)
    conversation.notify("delete", sorted(removed))
    return removed


def toggle_favorite(conversation: Conversation, message_id: str) -> bool:
    message = conversation.store.get(message_id)
    message.is_favorited = not message.is_favorited
    conversation.notify("favorite", [message_id])
    return message.is_favorited
