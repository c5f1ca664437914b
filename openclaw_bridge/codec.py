"""
Envelope codec: one JSON object per WebSocket message.

Only the envelope fields are interpreted here (``type``, ``id``,
``method``, ``ok``, ``error``, ``payload``, ``event``); params and payloads
stay opaque.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from openclaw_bridge.errors import FrameDecodeError, FrameEncodeError
from openclaw_bridge.types import EventFrame, Frame, RequestFrame, ResponseFrame

_FRAME_TYPES: dict[str, type[RequestFrame] | type[ResponseFrame] | type[EventFrame]] = {
    "req": RequestFrame,
    "res": ResponseFrame,
    "event": EventFrame,
}


def encode_frame(frame: Frame) -> str:
    """Serialise a frame to its wire text.

    Params and payloads are passed through untouched, ``None`` included;
    only unset optional envelope fields of a response are omitted.

    Raises:
        FrameEncodeError: If params or payload hold values JSON cannot
            represent.
    """
    data: dict[str, Any]
    if isinstance(frame, RequestFrame):
        data = {"type": "req", "id": frame.id, "method": frame.method, "params": frame.params}
    elif isinstance(frame, ResponseFrame):
        data = {"type": "res", "id": frame.id}
        if frame.ok is not None:
            data["ok"] = frame.ok
        if frame.error is not None:
            data["error"] = frame.error
        if frame.payload is not None:
            data["payload"] = frame.payload
    else:
        data = {"type": "event", "event": frame.event, "payload": frame.payload}
        if frame.seq is not None:
            data["seq"] = frame.seq
    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise FrameEncodeError(f"Cannot encode {data['type']} frame: {e}") from e


def decode_frame(raw: str | bytes) -> Frame | None:
    """Parse wire text into a frame.

    Returns ``None`` for well-formed envelopes of a type this client does
    not consume.

    Raises:
        FrameDecodeError: If the text is not JSON, not an object, or an
            envelope of a known type is missing required fields.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameDecodeError("frame is not valid UTF-8") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise FrameDecodeError(f"frame is not valid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise FrameDecodeError("frame is not a JSON object")

    model = _FRAME_TYPES.get(data.get("type"))  # type: ignore[arg-type]
    if model is None:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise FrameDecodeError(f"invalid {data['type']} frame: {e.error_count()} error(s)") from e
