"""
ConvTree: branching chat over a local vault + JSON API

- Stores each conversation as a Markdown note under <VAULT>/ConvTree/conversations/<id>.md
- Every message is a node in a tree; edit-and-resend and retry fork siblings instead of overwriting.
- Replies stream from the model into a placeholder node; a stream can be stopped at any time.
- Snapshots of the current path are kept as favorites and exported as Markdown.

Run:
  pip install -e .
  export CONVTREE_VAULT="/absolute/path/to/YourVault"
  export OPENAI_API_KEY="..."
  uvicorn app:create_app --factory --reload --port 8787
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict

from convtree import (
    CannotDeleteRoot,
    Conversation,
    ConversationRepository,
    ConvTreeError,
    FavoriteRepository,
    Favorites,
    InvalidOperation,
    NotFound,
    OrphanNode,
    SessionConflict,
    StreamingInProgress,
    TransportError,
    build_context,
    continue_reply,
    delete,
    edit,
    edit_and_resend,
    get_branch_index,
    get_current_path_messages,
    get_siblings,
    pump,
    render_markdown,
    retry,
    send_message,
    snapshot_current_path,
    stop,
    switch_branch,
    toggle_favorite,
)
from convtree.config import (
    DEFAULT_TITLE,
    LIVE_CONVERSATIONS,
    LOG_LEVEL,
    MODEL,
    SYSTEM_PROMPT,
    favorites_dir,
    vault_dir,
)
from convtree.streaming import StreamSession
from convtree.transport import ModelTransport, OpenAITransport

logger = logging.getLogger("convtree")

ERROR_STATUS = {
    NotFound: 404,
    OrphanNode: 404,
    StreamingInProgress: 409,
    SessionConflict: 409,
    CannotDeleteRoot: 400,
    InvalidOperation: 400,
    TransportError: 502,
}


# ----------------------------
# Request bodies
# ----------------------------
class CreateConversationReq(BaseModel):
    title: str = DEFAULT_TITLE
    system_prompt: str = SYSTEM_PROMPT


class SendReq(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    content: str
    model_id: Optional[str] = None


class EditReq(BaseModel):
    content: str


class ModelReq(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: Optional[str] = None


class SwitchReq(BaseModel):
    direction: Literal["previous", "next"]


# ----------------------------
# Views
# ----------------------------
def conversation_view(conversation: Conversation) -> Dict[str, Any]:
    """Current path with branch position of every message, for rendering."""
    messages: List[Dict[str, Any]] = []
    for message in get_current_path_messages(conversation):
        item = message.model_dump(mode="json")
        item["branch_index"] = get_branch_index(conversation, message.id)
        item["branch_count"] = len(get_siblings(conversation, message.id))
        messages.append(item)
    return {
        "id": conversation.id,
        "title": conversation.title,
        "current_path": list(conversation.current_path),
        "messages": messages,
        "streams": [s.request_id for s in conversation.sessions.values() if s.is_open],
    }


def session_view(session: StreamSession) -> Dict[str, str]:
    return {"request_id": session.request_id, "message_id": session.target_id}


# ----------------------------
# FastAPI
# ----------------------------
def create_app(
    repository: Optional[ConversationRepository] = None,
    transport: Optional[ModelTransport] = None,
    favorite_repository: Optional[FavoriteRepository] = None,
) -> FastAPI:
    logging.basicConfig(level=LOG_LEVEL)
    repository = repository or ConversationRepository(vault_dir())
    transport = transport or OpenAITransport()
    favorites = Favorites(favorite_repository or FavoriteRepository(favorites_dir()))
    # Conversations in memory, least recently used first.
    live: Dict[str, Conversation] = {}
    # Background streams still running, per conversation id.
    pumping: Dict[str, int] = {}

    app = FastAPI(title="ConvTree")

    @app.exception_handler(ConvTreeError)
    async def convtree_error(_request: Request, exc: ConvTreeError):
        status = ERROR_STATUS.get(type(exc), 400)
        return JSONResponse(
            status_code=status,
            content={
                "detail": str(exc),
                "error": type(exc).__name__,
                "message_id": exc.message_id,
                "request_id": exc.request_id,
            },
        )

    def _remember(conversation: Conversation) -> Conversation:
        live.pop(conversation.id, None)
        live[conversation.id] = conversation
        # Drop idle conversations past the limit; they reload from the vault.
        idle = [cid for cid in live if cid != conversation.id and not pumping.get(cid)]
        for cid in idle[: max(0, len(live) - LIVE_CONVERSATIONS)]:
            del live[cid]
            logger.debug("Evicted conversation %s from memory", cid)
        return conversation

    def _conversation(cid: str) -> Conversation:
        conversation = live.get(cid) or repository.load(cid)
        return _remember(conversation)

    def _saved(conversation: Conversation) -> Dict[str, Any]:
        repository.save(conversation)
        return conversation_view(conversation)

    async def _run_stream(conversation: Conversation, session: StreamSession) -> None:
        try:
            target = conversation.store.get(session.target_id)
            context = build_context(conversation, session.target_id)
            events = transport.open_stream(session.request_id, context, target.model_id or MODEL)
            await pump(conversation, session.request_id, events)
        except TransportError as exc:
            logger.warning("Reply %s kept partial output after error: %s", session.target_id, exc)
        finally:
            pumping[conversation.id] -= 1
            if not pumping[conversation.id]:
                del pumping[conversation.id]
            # A conversation deleted mid-stream must stay deleted.
            if live.get(conversation.id) is conversation:
                repository.save(conversation)
            else:
                logger.info("Dropped stream %s of deleted conversation %s", session.request_id, conversation.id)

    def _start(conversation: Conversation, session: StreamSession, tasks: BackgroundTasks) -> Dict[str, Any]:
        repository.save(conversation)
        pumping[conversation.id] = pumping.get(conversation.id, 0) + 1
        tasks.add_task(_run_stream, conversation, session)
        return {"stream": session_view(session), "conversation": conversation_view(conversation)}

    # Conversations
    @app.post("/api/conversations")
    async def api_create_conversation(req: CreateConversationReq):
        conversation = _remember(Conversation(title=req.title, system_prompt=req.system_prompt))
        return _saved(conversation)

    @app.get("/api/conversations")
    async def api_list_conversations():
        return repository.list()

    @app.get("/api/conversations/{cid}")
    async def api_conversation(cid: str):
        return conversation_view(_conversation(cid))

    @app.delete("/api/conversations/{cid}")
    async def api_delete_conversation(cid: str):
        conversation = _conversation(cid)
        for request_id in list(conversation.sessions):
            if stop(conversation, request_id):
                transport.cancel(request_id)
        repository.delete(cid)
        live.pop(cid, None)
        return {"ok": True}

    # Messages
    @app.post("/api/conversations/{cid}/messages")
    async def api_send(cid: str, req: SendReq, tasks: BackgroundTasks):
        conversation = _conversation(cid)
        session = send_message(conversation, req.content, model_id=req.model_id or MODEL)
        return _start(conversation, session, tasks)

    @app.post("/api/conversations/{cid}/messages/{mid}/edit")
    async def api_edit(cid: str, mid: str, req: EditReq):
        conversation = _conversation(cid)
        edit(conversation, mid, req.content)
        return _saved(conversation)

    @app.post("/api/conversations/{cid}/messages/{mid}/edit_resend")
    async def api_edit_resend(cid: str, mid: str, req: EditReq, tasks: BackgroundTasks):
        conversation = _conversation(cid)
        sibling = edit_and_resend(conversation, mid, req.content)
        if sibling.role != "user":
            return _saved(conversation)
        session = continue_reply(conversation, sibling.id, model_id=MODEL)
        return _start(conversation, session, tasks)

    @app.post("/api/conversations/{cid}/messages/{mid}/retry")
    async def api_retry(cid: str, mid: str, req: ModelReq, tasks: BackgroundTasks):
        conversation = _conversation(cid)
        session = retry(conversation, mid, model_id=req.model_id)
        return _start(conversation, session, tasks)

    @app.post("/api/conversations/{cid}/messages/{mid}/continue")
    async def api_continue(cid: str, mid: str, req: ModelReq, tasks: BackgroundTasks):
        conversation = _conversation(cid)
        session = continue_reply(conversation, mid, model_id=req.model_id or MODEL)
        return _start(conversation, session, tasks)

    @app.post("/api/conversations/{cid}/messages/{mid}/switch")
    async def api_switch(cid: str, mid: str, req: SwitchReq):
        conversation = _conversation(cid)
        switch_branch(conversation, mid, req.direction)
        return _saved(conversation)

    @app.post("/api/conversations/{cid}/messages/{mid}/favorite")
    async def api_favorite(cid: str, mid: str):
        conversation = _conversation(cid)
        favorited = toggle_favorite(conversation, mid)
        repository.save(conversation)
        return {"message_id": mid, "is_favorited": favorited}

    @app.delete("/api/conversations/{cid}/messages/{mid}")
    async def api_delete_message(cid: str, mid: str):
        conversation = _conversation(cid)
        removed = delete(conversation, mid)
        view = _saved(conversation)
        view["removed"] = sorted(removed)
        return view

    # Streams
    @app.post("/api/conversations/{cid}/streams/{rid}/stop")
    async def api_stop(cid: str, rid: str):
        conversation = _conversation(cid)
        stopped = stop(conversation, rid)
        if stopped:
            transport.cancel(rid)
        repository.save(conversation)
        return {"request_id": rid, "stopped": stopped}

    # Favorites
    @app.post("/api/conversations/{cid}/snapshot")
    async def api_snapshot(cid: str):
        snapshot = favorites.add(snapshot_current_path(_conversation(cid)))
        return snapshot.model_dump(mode="json")

    @app.get("/api/favorites")
    async def api_favorites():
        return [
            {"id": s.id, "conversation_id": s.conversation_id, "title": s.title,
             "captured_at": s.captured_at.isoformat(), "message_count": len(s.messages)}
            for s in favorites.list()
        ]

    @app.get("/api/favorites/{sid}/export", response_class=PlainTextResponse)
    async def api_export_favorite(sid: str):
        return PlainTextResponse(render_markdown(favorites.get(sid)), media_type="text/markdown")

    @app.delete("/api/favorites/{sid}")
    async def api_delete_favorite(sid: str):
        favorites.remove(sid)
        return {"ok": True}

    return app
