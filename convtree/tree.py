"""Read-only queries over a conversation's message tree.

Nothing here mutates the store or caches results between calls; rendering
code calls these after every change notification.
"""

from typing import Dict, List

from .errors import NotFound
from .models import Conversation, Message


def get_path(conversation: Conversation, leaf_id: str) -> List[Message]:
    """Return the messages from the root down to ``leaf_id``."""
    store = conversation.store
    path: List[Message] = []
    current = store.get(leaf_id)
    seen = set()
    while True:
        if current.id in seen:
            raise NotFound(f"Cycle detected at {current.id}", message_id=current.id)
        seen.add(current.id)
        path.append(current)
        if current.parent_id is None:
            break
        try:
            current = store.get(current.parent_id)
        except NotFound:
            raise NotFound(
                f"Broken ancestor link: {current.parent_id} (from {leaf_id})",
                message_id=current.parent_id,
            ) from None
    path.reverse()
    return path


def get_siblings(conversation: Conversation, message_id: str) -> List[str]:
    """Return the parent's children, or ``[message_id]`` for the root."""
    message = conversation.store.get(message_id)
    if message.parent_id is None:
        return [message.id]
    return list(conversation.store.get(message.parent_id).children)


def get_branch_index(conversation: Conversation, message_id: str) -> int:
    return get_siblings(conversation, message_id).index(message_id)


def get_children(conversation: Conversation, message_id: str) -> List[Message]:
    store = conversation.store
    return [store.get(child_id) for child_id in store.get(message_id).children]


def get_child_index(conversation: Conversation, message_id: str) -> int:
    """Index of the child of ``message_id`` that lies on the current path (0 if none)."""
    path = conversation.current_path
    children = conversation.store.get(message_id).children
    if message_id in path:
        depth = path.index(message_id)
        if depth + 1 < len(path) and path[depth + 1] in children:
            return children.index(path[depth + 1])
    return 0


def get_current_path_messages(conversation: Conversation) -> List[Message]:
    """The authoritative root-to-leaf message sequence, rebuilt on every call."""
    store = conversation.store
    return [store.get(message_id) for message_id in conversation.current_path]


def build_context(conversation: Conversation, target_id: str) -> List[Dict[str, str]]:
    """
    Build the model context for generating ``target_id``.

    Context is the path from the root to the target's parent, in chat
    completion format. Messages with empty content are skipped.
    """
    target = conversation.store.get(target_id)
    if target.parent_id is None:
        return []
    return [
        {"role": m.role, "content": m.content}
        for m in get_path(conversation, target.parent_id)
        if m.content
    ]
