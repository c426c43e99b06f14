"""ConvTree: branching conversation tree with streamed model replies.

Messages live in a flat store linked by parent/child ids; a conversation
exposes exactly one current path from the root to a leaf. Branch operations
mutate the tree, the streaming reconciler fills in model replies, and
snapshots capture the current path for favorites and export.
"""

from .branching import (
    append,
    continue_reply,
    delete,
    edit,
    edit_and_resend,
    retry,
    send_message,
    switch_branch,
    toggle_favorite,
)
from .errors import (
    CannotDeleteRoot,
    ConvTreeError,
    InvalidOperation,
    NotFound,
    OrphanNode,
    SessionConflict,
    StreamingInProgress,
    TransportError,
)
from .models import ChangeEvent, Conversation, Message, MessageStore
from .persistence import (
    ConversationRepository,
    FavoriteRepository,
    conversation_from_dict,
    conversation_to_dict,
)
from .snapshot import Favorites, Snapshot, render_markdown, snapshot_current_path
from .streaming import StreamEvent, StreamSession, apply_event, open_session, prune_sessions, pump, stop
from .tree import (
    build_context,
    get_branch_index,
    get_child_index,
    get_children,
    get_current_path_messages,
    get_path,
    get_siblings,
)
