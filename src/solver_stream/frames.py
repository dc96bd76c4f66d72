"""
Decoding and dispatch of solver stream frames.

Wire format, one JSON object per text message::

    {"type": "iteration", "meta": {...}, "shape": {...}}
    {"type": "complete", "meta": {...}, "shape": {...}, "initial_shape": {...}}
    {"type": "warning", "message": "...", "iteration": 7}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Sequence, Tuple

from solver_stream.contracts import (
    CompleteFrame,
    CompleteMeta,
    Frame,
    IterationFrame,
    IterationMeta,
    ShapeSnapshot,
    WarningFrame,
)
from solver_stream.errors import ProtocolError
from solver_stream.state import StreamState

logger = logging.getLogger(__name__)

_ITERATION_META_KEYS = (
    "iteration", "total_iterations", "loss", "cl", "cd", "cl_cd",
    "lift_force", "drag_force",
)
_COMPLETE_META_KEYS = (
    "total_iterations", "final_cl", "final_cd", "final_cl_cd",
    "final_drag", "final_loss",
)
_COUNT_KEYS = frozenset({"iteration", "total_iterations"})


def _require_mapping(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if not isinstance(value, Mapping):
        raise ProtocolError(f"frame field {key!r} must be an object")
    return value


def _metric(block: Mapping[str, Any], key: str, integral: bool, where: str):
    value = block[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"{where} field {key} must be a number, got {value!r}")
    if integral:
        if isinstance(value, float) and not value.is_integer():
            raise ProtocolError(f"{where} field {key} must be an integer, got {value!r}")
        return int(value)
    return float(value)


def _pick(block: Mapping[str, Any], keys: Sequence[str], where: str) -> dict:
    missing = [k for k in keys if k not in block]
    if missing:
        raise ProtocolError(f"{where} missing {', '.join(missing)}")
    return {k: _metric(block, k, k in _COUNT_KEYS, where) for k in keys}


def _numbers(block: Mapping[str, Any], key: str, required: bool) -> Tuple[Any, ...]:
    value = block.get(key)
    if value is None:
        if required:
            raise ProtocolError(f"shape missing {key}")
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ProtocolError(f"shape field {key} must be an array")
    return tuple(value)


def _shape(block: Mapping[str, Any], sampled: bool = True) -> ShapeSnapshot:
    return ShapeSnapshot(
        cst_upper=_numbers(block, "cst_upper", required=True),
        cst_lower=_numbers(block, "cst_lower", required=True),
        airfoil_x=_numbers(block, "airfoil_x", required=False) if sampled else (),
        airfoil_y_upper=_numbers(block, "airfoil_y_upper", required=False) if sampled else (),
        airfoil_y_lower=_numbers(block, "airfoil_y_lower", required=False) if sampled else (),
    )


def parse_frame(payload: Mapping[str, Any]) -> Optional[Frame]:
    """Build a typed frame from a decoded JSON object.

    Returns None for a missing or unrecognized ``type``.

    Raises:
        ProtocolError: A known frame type with a malformed payload.
    """
    kind = payload.get("type")
    if kind == "iteration":
        meta = _pick(_require_mapping(payload, "meta"), _ITERATION_META_KEYS,
                     "iteration meta")
        return IterationFrame(
            meta=IterationMeta(**meta),
            shape=_shape(_require_mapping(payload, "shape")),
        )
    if kind == "complete":
        meta = _pick(_require_mapping(payload, "meta"), _COMPLETE_META_KEYS,
                     "complete meta")
        return CompleteFrame(
            meta=CompleteMeta(**meta),
            shape=_shape(_require_mapping(payload, "shape")),
            initial_shape=_shape(_require_mapping(payload, "initial_shape"),
                                 sampled=False),
        )
    if kind == "warning":
        return WarningFrame(
            message=str(payload.get("message", "")),
            iteration=payload.get("iteration"),
        )
    return None


def decode_payload(text) -> Mapping[str, Any]:
    """Parse one text message into its JSON object.

    Raises:
        ProtocolError: Not JSON or not an object.
    """
    if isinstance(text, (bytes, bytearray)):
        text = text.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"frame is not valid JSON: {e}") from e
    if not isinstance(payload, Mapping):
        raise ProtocolError(f"frame is not a JSON object: {type(payload).__name__}")
    return payload


def decode_frame(text) -> Optional[Frame]:
    """Parse one text message.

    Raises:
        ProtocolError: Not JSON, not an object, or a malformed known frame.
    """
    return parse_frame(decode_payload(text))


class FrameDispatcher:
    """Applies decoded frames to a StreamState.

    Bad frames are logged and dropped; nothing raises out of ``dispatch``.
    Messages without a ``type`` (simulation field frames) are kept as the
    state's ``latest_frame`` and never touch metrics or history.
    """

    def __init__(self, state: StreamState):
        self.state = state

    def dispatch(self, text) -> Optional[Frame]:
        try:
            payload = decode_payload(text)
            frame = parse_frame(payload)
        except ProtocolError as e:
            logger.error("Dropping stream message: %s", e)
            logger.debug("Raw message: %r", text)
            return None

        if isinstance(frame, IterationFrame):
            if not self.state.history:
                logger.debug("First iteration frame: %r", frame)
            self.state.record_iteration(frame)
        elif isinstance(frame, CompleteFrame):
            logger.info(
                "Run complete after %s iterations: cl=%s cd=%s L/D=%s",
                frame.meta.total_iterations, frame.meta.final_cl,
                frame.meta.final_cd, frame.meta.final_cl_cd,
            )
            self.state.mark_complete(frame)
        elif isinstance(frame, WarningFrame):
            logger.warning("Solver warning at iteration %s: %s",
                           frame.iteration, frame.message)
        elif "type" not in payload:
            self.state.record_raw_frame(payload)
        else:
            logger.debug("Ignoring frame of type %r", payload.get("type"))
        return frame
