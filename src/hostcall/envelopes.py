"""Wire envelopes exchanged between callers and dispatchers.

Every message on a channel is one JSON-encoded envelope:

- ``Request``     caller -> dispatcher, ``{id, name, args}`` (untagged)
- ``Reply``       dispatcher -> caller, ``{type: "reply", id, result}``
- ``ErrorReply``  dispatcher -> caller, ``{type: "error", id, result: message}``
- ``Push``        dispatcher -> every caller, ``{type: "push", name, args}``

Requests travel untagged; the dispatcher validates them field by field so
that it can still address an error reply when only the ``id`` is usable.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from hostcall.errors import EnvelopeError


def new_correlation_id() -> str:
    return uuid4().hex


class Request(BaseModel):
    """A named call awaiting exactly one reply."""

    id: str = Field(
        default_factory=new_correlation_id,
        description="Correlation id, unique among the caller's pending requests",
    )
    name: str = Field(description="Handler name on the dispatcher")
    args: Any = Field(default_factory=dict, description="Handler argument payload")


class Reply(BaseModel):
    """Successful outcome of a request."""

    type: Literal["reply"] = "reply"
    id: str
    result: Any = None


class ErrorReply(BaseModel):
    """Failed outcome of a request; ``result`` is the error message text."""

    type: Literal["error"] = "error"
    id: str
    result: str


class Push(BaseModel):
    """Unsolicited notification fanned out to every connected caller."""

    type: Literal["push"] = "push"
    name: str
    args: Any = None


InboundEnvelope = Annotated[Reply | ErrorReply | Push, Field(discriminator="type")]

_inbound_adapter: TypeAdapter[Reply | ErrorReply | Push] = TypeAdapter(InboundEnvelope)


def encode(envelope: BaseModel) -> str:
    """Serialize an envelope to its compact JSON wire form."""
    return envelope.model_dump_json()


def parse_envelope(raw: str | bytes) -> Reply | ErrorReply | Push:
    """Decode a caller-bound payload.

    Raises:
        EnvelopeError: If the payload is not JSON or carries no known ``type``.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
        msg = f"Undecodable envelope: {exc}"
        raise EnvelopeError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Envelope must be a JSON object, got {type(data).__name__}"
        raise EnvelopeError(msg)
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as exc:
        msg = f"Unknown message type: {json.dumps(data)[:200]}"
        raise EnvelopeError(msg) from exc


__all__ = [
    "ErrorReply",
    "InboundEnvelope",
    "Push",
    "Reply",
    "Request",
    "encode",
    "new_correlation_id",
    "parse_envelope",
]
