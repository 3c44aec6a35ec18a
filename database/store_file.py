"""
FileConversationStore: JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    chatbots.json
    conversations.json
    events.json

Features:
  - Survives process restarts (unlike InMemoryConversationStore)
  - No external dependencies (no database server)
  - Each write flushes the changed collection via write-to-temp + rename
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from database.store_memory import InMemoryConversationStore, _OPEN_STATUSES, _user_key
from models.schemas import ChatbotRecord, ConversationState, TurnEvent

logger = structlog.get_logger()

_COLLECTIONS = ["chatbots", "conversations", "events"]


class FileConversationStore(InMemoryConversationStore):
    """
    Extends InMemoryConversationStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk; a corrupt file is logged and skipped."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            self._set_collection(collection, data)
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: Any):
        """Restore a collection from loaded JSON data."""
        if collection == "chatbots":
            self._chatbots = data if isinstance(data, dict) else {}
        elif collection == "conversations":
            self._conversations = data if isinstance(data, dict) else {}
            # Rebuild the user index from open conversations
            self._user_index.clear()
            for cid, c in self._conversations.items():
                if c.get("user_identifier") and c.get("status") in _OPEN_STATUSES:
                    key = _user_key(c["chatbot_id"], c.get("channel", "web"), c["user_identifier"])
                    self._user_index[key] = cid
        elif collection == "events":
            self._events = data if isinstance(data, list) else []

    def _get_collection_data(self, collection: str) -> Any:
        mapping = {
            "chatbots": self._chatbots,
            "conversations": self._conversations,
            "events": self._events,
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._get_collection_data(collection), f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def save_chatbot(self, record: ChatbotRecord) -> ChatbotRecord:
        result = await super().save_chatbot(record)
        self._flush_collection("chatbots")
        return result

    async def save_state(self, state: ConversationState) -> None:
        await super().save_state(state)
        self._flush_collection("conversations")

    async def register_conversation(self, state: ConversationState) -> ConversationState:
        result = await super().register_conversation(state)
        self._flush_collection("conversations")
        return result

    async def append_event(self, event: TurnEvent) -> None:
        await super().append_event(event)
        self._flush_collection("events")
