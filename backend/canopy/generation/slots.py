"""Per-conversation generation slots.

At most one generation runs per conversation. A slot holds that
generation's abort handle and its in-flight pending message. ``claim`` is
a synchronous check-and-set, so two callers on the same event loop can
never both acquire a slot for one conversation.
"""

import logging
from dataclasses import dataclass, field

from canopy.models import PendingMessage
from canopy.providers.base import AbortController

logger = logging.getLogger(__name__)


@dataclass
class GenerationSlot:
    conv_id: str
    abort_controller: AbortController = field(default_factory=AbortController)
    pending: PendingMessage | None = None


class GenerationSlots:
    """Registry of active generation slots keyed by conversation id."""

    def __init__(self) -> None:
        self._slots: dict[str, GenerationSlot] = {}

    def claim(self, conv_id: str) -> GenerationSlot | None:
        """Take the slot for conv_id, or None if a generation already owns it."""
        if conv_id in self._slots:
            return None
        slot = GenerationSlot(conv_id=conv_id)
        self._slots[conv_id] = slot
        return slot

    def release(self, slot: GenerationSlot) -> None:
        """Free the slot. Releasing a slot that no longer owns the conversation is a no-op."""
        if self._slots.get(slot.conv_id) is slot:
            del self._slots[slot.conv_id]

    def is_generating(self, conv_id: str) -> bool:
        return conv_id in self._slots

    def pending(self, conv_id: str) -> PendingMessage | None:
        slot = self._slots.get(conv_id)
        return slot.pending if slot is not None else None

    def abort(self, conv_id: str) -> bool:
        """Signal the running generation to stop. Returns False if none is running."""
        slot = self._slots.get(conv_id)
        if slot is None:
            return False
        logger.debug("Aborting generation for %s", conv_id)
        slot.abort_controller.abort("Stopped by user")
        return True

    def active(self) -> list[str]:
        return list(self._slots)
