"""In-process change bus: conversation change notifications and pending-message updates.

Components subscribe here instead of polling the database. Conversation
notifications are dispatched by the database after a successful commit;
pending-message updates are published by the generation service while a
stream is being consumed.
"""

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

ConversationChangedCallback = Callable[[str], Any]
PendingChangedCallback = Callable[[str, Any], Any]


class ChangeBus:
    """Observer lists keyed by topic. Callbacks run synchronously in registration order."""

    def __init__(self) -> None:
        self._conversation_handlers: list[ConversationChangedCallback] = []
        self._pending_handlers: list[PendingChangedCallback] = []

    def on_conversation_changed(self, callback: ConversationChangedCallback) -> None:
        """Register a callback invoked with the conversation id after each committed change."""
        self._conversation_handlers.append(callback)

    def off_conversation_changed(self, callback: ConversationChangedCallback) -> None:
        """Unregister a previously registered callback. Unknown callbacks are ignored."""
        if callback in self._conversation_handlers:
            self._conversation_handlers.remove(callback)

    def dispatch(self, conv_id: str) -> None:
        """Notify every conversation subscriber that conv_id changed."""
        for callback in list(self._conversation_handlers):
            try:
                callback(conv_id)
            except Exception:
                logger.exception("Conversation change handler failed for %s", conv_id)

    def on_pending_changed(self, callback: PendingChangedCallback) -> None:
        """Register a callback invoked with (conv_id, pending message or None)."""
        self._pending_handlers.append(callback)

    def off_pending_changed(self, callback: PendingChangedCallback) -> None:
        if callback in self._pending_handlers:
            self._pending_handlers.remove(callback)

    def publish_pending(self, conv_id: str, pending: Any) -> None:
        """Publish the in-flight message for conv_id. None means the slot was cleared."""
        for callback in list(self._pending_handlers):
            try:
                callback(conv_id, pending)
            except Exception:
                logger.exception("Pending message handler failed for %s", conv_id)
