"""Change notifications: conversation commits and in-flight pending messages."""

from canopy.events.bus import ChangeBus

__all__ = ["ChangeBus"]
