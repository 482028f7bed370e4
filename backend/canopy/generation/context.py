"""Context assembly for generation.

ContextBuilder turns a root-to-leaf path of stored messages into the
messages array sent to a provider: system turns are dropped and the
configured system prompt is re-injected at the front, attachments on user
turns become OpenAI content parts, and thinking blocks can be stripped
from earlier assistant turns.
"""

import re
from dataclasses import dataclass
from typing import Any

from canopy.models import (
    Message,
    MessageExtraAudioFile,
    MessageExtraContext,
    MessageExtraImageFile,
    MessageExtraTextFile,
)

# Open/close markers for <think> blocks and the harmony "analysis" channel
THINK_OPEN = re.compile(r"<think>|<\|channel\|>analysis<\|message\|>")
THINK_CLOSE = re.compile(r"</think>|<\|start\|>assistant<\|channel\|>final<\|message\|>")


@dataclass
class SplitContent:
    content: str
    reasoning_content: str


def split_thought(text: str) -> SplitContent:
    """Separate thinking blocks from visible text.

    An unclosed block swallows the rest of the text, as it does while a
    model is still thinking.
    """
    visible: list[str] = []
    thought: list[str] = []
    rest = text
    while True:
        parts = THINK_OPEN.split(rest, maxsplit=1)
        visible.append(parts[0])
        if len(parts) == 1:
            break
        inner = THINK_CLOSE.split(parts[1], maxsplit=1)
        thought.append(inner[0])
        if len(inner) == 1:
            break
        rest = inner[1]
    return SplitContent(content="".join(visible), reasoning_content="".join(thought))


class ContextBuilder:
    """Assembles the messages array for a generation request."""

    def build(
        self,
        path: list[Message],
        system_prompt: str | None = None,
        *,
        exclude_thought: bool = False,
    ) -> list[dict[str, Any]]:
        """Build provider messages from a leaf path (root excluded).

        Returns a list of {"role", "content"} dicts where content is either a
        string or a list of content parts.
        """
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        for msg in path:
            if msg.role == "system" or msg.type == "root":
                continue
            content = msg.content or ""
            if msg.role == "assistant" and exclude_thought:
                content = split_thought(content).content
            if msg.role == "user" and msg.extra:
                messages.append({"role": msg.role, "content": self._content_parts(msg, content)})
            else:
                messages.append({"role": msg.role, "content": content})
        return messages

    @staticmethod
    def _content_parts(msg: Message, text: str) -> list[dict[str, Any]]:
        # Attachments first, user text last: keeps a stable prompt-cache prefix
        parts: list[dict[str, Any]] = []
        for extra in msg.extra or []:
            if isinstance(extra, MessageExtraContext):
                parts.append({"type": "text", "text": extra.content})
            elif isinstance(extra, MessageExtraTextFile):
                parts.append({
                    "type": "text",
                    "text": f"File: {extra.name}\nContent:\n\n{extra.content}",
                })
            elif isinstance(extra, MessageExtraImageFile):
                parts.append({"type": "image_url", "image_url": {"url": extra.base64_url}})
            elif isinstance(extra, MessageExtraAudioFile):
                parts.append({
                    "type": "input_audio",
                    "input_audio": {
                        "data": extra.base64_data,
                        "format": "wav" if "wav" in extra.mime_type else "mp3",
                    },
                })
        parts.append({"type": "text", "text": text})
        return parts
