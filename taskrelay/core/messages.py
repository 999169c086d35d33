"""Wire-level message schemas exchanged over the broker."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskrelay.core.errors import MessageValidationError
from taskrelay.core.models import utcnow

RESPONSE_FLAG = "isResponse"

MessageT = TypeVar("MessageT", bound="Message")


class Message(BaseModel):
    """``{id, content, metadata?, timestamp}`` with unknown keys rejected."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @property
    def is_response(self) -> bool:
        return bool(self.metadata.get(RESPONSE_FLAG))

    def to_json(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def parse(cls: Type[MessageT], data: Any) -> MessageT:
        """Validate a mapping, JSON text or JSON bytes into a message."""
        try:
            if isinstance(data, (bytes, bytearray, str)):
                return cls.model_validate_json(data)
            return cls.model_validate(data)
        except ValidationError as exc:
            raise MessageValidationError(str(exc)) from exc


class IncomingMessage(Message):
    """Request delivered to the orchestrator."""


class OutgoingMessage(Message):
    """Reply published by the orchestrator."""


def create_incoming_message(content: str, metadata: Optional[Dict[str, Any]] = None) -> IncomingMessage:
    return IncomingMessage(
        id=str(uuid.uuid4()),
        content=content,
        metadata=dict(metadata or {}),
        timestamp=utcnow(),
    )


def create_outgoing_message(content: str, metadata: Optional[Dict[str, Any]] = None) -> OutgoingMessage:
    return OutgoingMessage(
        id=str(uuid.uuid4()),
        content=content,
        metadata=dict(metadata or {}),
        timestamp=utcnow(),
    )
