"""Builds the Gemini request body and the stored history entries.

The full stored conversation is sent upstream on every turn, without
truncation or summarisation, so request size grows with history length.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from relay.core.models import InlineMediaPart, Message, Part, TextPart


NO_RESPONSE_PLACEHOLDER = "No response from Gemini."


def build_user_turn(prompt: str, media: Optional[InlineMediaPart] = None) -> Message:
    parts: List[Part] = [TextPart(text=prompt)]
    if media is not None:
        parts.append(media)
    return Message(role="user", parts=parts)


def build_model_turn(reply_text: Optional[str]) -> Message:
    return Message(role="model", parts=[TextPart(text=reply_text or NO_RESPONSE_PLACEHOLDER)])


def to_request_payload(conversation: List[Message]) -> Dict[str, Any]:
    return {"contents": [m.to_wire() for m in conversation]}


def extract_reply_text(body: Any) -> Optional[str]:
    """Return ``candidates[0].content.parts[0].text`` or None if any hop is missing."""
    if not isinstance(body, dict):
        return None
    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
        return None
    text = parts[0].get("text")
    return text if isinstance(text, str) and text else None


def tail(conversation: List[Message], limit: int) -> List[Message]:
    if limit <= 0:
        return []
    return conversation[-limit:]
