"""Environment configuration for ConvTree."""

import os
from pathlib import Path

VAULT = Path(os.environ.get("CONVTREE_VAULT", "")).expanduser()

MODEL = os.environ.get("CONVTREE_MODEL", "gpt-4o-mini")
SYSTEM_PROMPT = os.environ.get(
    "CONVTREE_SYSTEM_PROMPT",
    "You are a helpful assistant. Be concise, clear, and correct.",
)
LOG_LEVEL = os.environ.get("CONVTREE_LOG_LEVEL", "INFO").upper()

DEFAULT_TITLE = "New chat"
TITLE_MAX_CHARS = 50

# Ended stream sessions remembered per conversation, newest kept.
ENDED_SESSIONS_KEPT = 32
# Conversations held in memory by the HTTP app before idle ones are dropped.
LIVE_CONVERSATIONS = 64


def _vault_subdir(name: str) -> Path:
    if not os.environ.get("CONVTREE_VAULT") or not VAULT.exists():
        raise RuntimeError("Set CONVTREE_VAULT to an existing directory (CONVTREE_VAULT).")
    root = VAULT / "ConvTree" / name
    root.mkdir(parents=True, exist_ok=True)
    return root


def vault_dir() -> Path:
    """Return the conversation directory inside the vault, creating it if needed."""
    return _vault_subdir("conversations")


def favorites_dir() -> Path:
    return _vault_subdir("favorites")
