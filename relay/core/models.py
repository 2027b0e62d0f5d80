from __future__ import annotations

from typing import List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "model"]


class TextPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str


class InlineData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mime_type: str = Field(..., description="MIME type of the embedded bytes, e.g. image/jpeg")
    data: str = Field(..., description="Base64-encoded payload")


class InlineMediaPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    inline_data: InlineData


Part = Union[TextPart, InlineMediaPart]


class Message(BaseModel):
    """One turn of a conversation as stored and as sent upstream."""

    role: Role
    parts: List[Part] = Field(..., min_length=1)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


Conversation = List[Message]
