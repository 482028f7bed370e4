"""Pure traversals over a conversation's message list (no database access)."""

from collections.abc import Iterable, Sequence

from canopy.models import ROOT_PARENT_ID, Message, MessageDisplay, PendingMessage


def filter_to_leaf_path(
    messages: Iterable[Message],
    leaf_id: int,
    include_root: bool,
) -> list[Message]:
    """Return the branch ending at leaf_id, in chronological order.

    If leaf_id is unknown, the branch ending at the most recent message
    (max timestamp) is returned instead. The result is sorted by timestamp,
    so insertion order in the backing store does not matter.
    """
    node_map: dict[int, Message] = {}
    latest: Message | None = None
    for msg in messages:
        node_map[msg.id] = msg
        if latest is None or msg.timestamp > latest.timestamp:
            latest = msg

    current = node_map.get(leaf_id, latest)
    path: list[Message] = []
    seen: set[int] = set()
    while current is not None and current.id not in seen:
        seen.add(current.id)
        if current.type != "root" or include_root:
            path.append(current)
        current = node_map.get(current.parent)

    path.sort(key=lambda m: m.timestamp)
    return path


def find_leaf_node(node_map: dict[int, Message], msg_id: int) -> int:
    """Follow the most recent child from msg_id down to a leaf."""
    current = node_map.get(msg_id)
    seen: set[int] = set()
    while current is not None and current.children and current.id not in seen:
        seen.add(current.id)
        nxt = node_map.get(current.children[-1])
        if nxt is None:
            break
        current = nxt
    return current.id if current is not None else ROOT_PARENT_ID


def build_message_displays(
    messages: Sequence[Message],
    leaf_id: int,
    pending: PendingMessage | None = None,
) -> list[MessageDisplay]:
    """Annotate the branch ending at leaf_id with sibling leaf ids.

    The root is never displayed. A pending message whose parent is the
    branch tip is appended as the last display entry.
    """
    node_map = {m.id: m for m in messages}
    displays: list[MessageDisplay] = []
    path = filter_to_leaf_path(messages, leaf_id, include_root=True)
    for msg in path:
        parent = node_map.get(msg.parent)
        if parent is None or msg.type == "root":
            continue
        siblings = parent.children
        displays.append(MessageDisplay(
            msg=msg,
            sibling_leaf_node_ids=[find_leaf_node(node_map, sid) for sid in siblings],
            sibling_curr_idx=siblings.index(msg.id) if msg.id in siblings else 0,
        ))

    if pending is not None and path and pending.parent == path[-1].id:
        displays.append(MessageDisplay(
            msg=pending,
            sibling_leaf_node_ids=[],
            sibling_curr_idx=0,
            is_pending=True,
        ))
    return displays
