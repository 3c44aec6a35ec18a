"""
Builds the process-wide conversation store from the ``database`` section
of settings.yaml (``store_backend``: memory | file, ``store_file_dir``).
The first store built is reused until reset_store() is called.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

import structlog

from database.store_base import BaseConversationStore
from database.store_file import FileConversationStore
from database.store_memory import InMemoryConversationStore

logger = structlog.get_logger()

DEFAULT_BACKEND = "memory"
DEFAULT_FILE_DIR = "./data"


def _memory_store(config: dict[str, Any]) -> BaseConversationStore:
    return InMemoryConversationStore()


def _file_store(config: dict[str, Any]) -> BaseConversationStore:
    return FileConversationStore(data_dir=config.get("store_file_dir") or DEFAULT_FILE_DIR)


BACKENDS: dict[str, Callable[[dict[str, Any]], BaseConversationStore]] = {
    "memory": _memory_store,
    "file": _file_store,
}

_current: Optional[BaseConversationStore] = None


def create_store(config: Optional[dict[str, Any]] = None) -> BaseConversationStore:
    global _current
    if _current is not None:
        return _current

    config = config or {}
    backend = str(config.get("store_backend") or DEFAULT_BACKEND).lower()
    build = BACKENDS.get(backend)
    if build is None:
        logger.warning("unknown_store_backend", backend=backend, using=DEFAULT_BACKEND)
        backend, build = DEFAULT_BACKEND, BACKENDS[DEFAULT_BACKEND]

    _current = build(config)
    logger.info("store_created", backend=backend, store=type(_current).__name__)
    return _current


def get_store() -> BaseConversationStore:
    return _current if _current is not None else create_store()


def reset_store() -> None:
    """Forget the shared store; the next create_store() builds a new one."""
    global _current
    _current = None
