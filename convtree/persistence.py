"""Conversation persistence.

Each conversation is stored as a Markdown note: YAML frontmatter holds the
tree (message list plus current path), the body is a readable transcript
of the current path. Only the frontmatter is read back. Favorite snapshots
are stored the same way in a directory of their own.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import NotFound
from .models import Conversation, Message, MessageStore
from .snapshot import Snapshot, render_markdown, render_transcript
from .tree import get_current_path_messages

logger = logging.getLogger("convtree")


# ----------------------------
# Tree <-> plain dict
# ----------------------------
def conversation_to_dict(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
        "current_path": list(conversation.current_path),
        "messages": [m.model_dump(mode="json") for m in conversation.store],
    }


def conversation_from_dict(data: Dict[str, Any]) -> Conversation:
    """Rebuild a conversation; no stream survives a reload."""
    messages = [Message.model_validate({**raw, "is_streaming": False}) for raw in data.get("messages") or []]
    store = MessageStore.from_messages(messages)
    current_path = list(data.get("current_path") or [store.root_id])
    for message_id in current_path:
        store.get(message_id)
    return Conversation(
        id=data["id"],
        title=data.get("title") or data["id"],
        store=store,
        current_path=current_path,
        created_at=_parse_time(data.get("created_at")),
        updated_at=_parse_time(data.get("updated_at")),
    )


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(str(value))
    return None


# ----------------------------
# File I/O Helpers
# ----------------------------
def _read_note(path: Path) -> Tuple[Dict[str, Any], str]:
    """Read a note and return (frontmatter, body)."""
    text = path.read_text(encoding="utf-8")
    if text.startswith("---"):
        parts = text.split("\n---\n", 1)
        if len(parts) == 2:
            meta = yaml.safe_load(parts[0][3:]) or {}
            return meta, parts[1].lstrip("\n")
    return {}, text


def _write_note(path: Path, meta: Dict[str, Any], body: str) -> None:
    """Write a note with YAML frontmatter and body."""
    front = "---\n" + yaml.safe_dump(meta, sort_keys=False, allow_unicode=True).strip() + "\n---\n\n"
    path.write_text(front + body.strip() + "\n", encoding="utf-8")


# ----------------------------
# Repository
# ----------------------------
class ConversationRepository:
    """Stores conversations as ``<root>/<conversation_id>.md``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        return self.root / f"{conversation_id}.md"

    def save(self, conversation: Conversation) -> Path:
        path = self._path(conversation.id)
        body = render_transcript(get_current_path_messages(conversation))
        _write_note(path, conversation_to_dict(conversation), body)
        logger.info("Saved conversation %s to %s", conversation.id, path)
        return path

    def load(self, conversation_id: str) -> Conversation:
        path = self._path(conversation_id)
        if not path.exists():
            raise NotFound(f"Conversation not found: {conversation_id}")
        meta, _body = _read_note(path)
        return conversation_from_dict(meta)

    def list(self) -> List[Dict[str, Any]]:
        """List saved conversations with their summary metadata."""
        out: List[Dict[str, Any]] = []
        for f in sorted(self.root.glob("*.md")):
            meta, _body = _read_note(f)
            out.append({
                "id": meta.get("id", f.stem),
                "title": meta.get("title", f.stem),
                "created_at": meta.get("created_at", ""),
                "updated_at": meta.get("updated_at", ""),
                "message_count": len(meta.get("messages") or []),
            })
        return out

    def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        if not path.exists():
            raise NotFound(f"Conversation not found: {conversation_id}")
        path.unlink()


class FavoriteRepository:
    """Stores snapshots as ``<root>/<snapshot_id>.md`` with the exported transcript as body."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, snapshot_id: str) -> Path:
        return self.root / f"{snapshot_id}.md"

    def save(self, snapshot: Snapshot) -> Path:
        path = self._path(snapshot.id)
        _write_note(path, snapshot.model_dump(mode="json"), render_markdown(snapshot))
        logger.info("Saved favorite %s to %s", snapshot.id, path)
        return path

    def load(self, snapshot_id: str) -> Snapshot:
        path = self._path(snapshot_id)
        if not path.exists():
            raise NotFound(f"Favorite not found: {snapshot_id}")
        meta, _body = _read_note(path)
        return Snapshot.model_validate(meta)

    def list(self) -> List[Snapshot]:
        """All saved snapshots, oldest first."""
        snapshots = [Snapshot.model_validate(_read_note(f)[0]) for f in self.root.glob("*.md")]
        return sorted(snapshots, key=lambda s: s.captured_at)

    def delete(self, snapshot_id: str) -> None:
        path = self._path(snapshot_id)
        if not path.exists():
            raise NotFound(f"Favorite not found: {snapshot_id}")
        path.unlink()
