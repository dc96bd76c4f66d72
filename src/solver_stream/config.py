"""
Configuration for the solver streaming client.

- normalize_request: partial caller config -> canonical SessionRequest
- request_fingerprint: stable serialized identity used by the config guard
- SolverEndpoints: HTTP / WebSocket base URLs (explicit or from env)
- StreamPolicy: reconnection, completion and history settings
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

from solver_stream.contracts import (
    DEFAULT_COMPLETION,
    MESH_DENSITY_FIDELITY,
    CompletionPolicy,
    Fidelity,
    Mode,
    SessionRequest,
)
from solver_stream.errors import ConfigError

logger = logging.getLogger(__name__)

BACKEND_URL_ENV = "SOLVER_BACKEND_URL"
WS_BASE_ENV = "SOLVER_WS_BASE"

RECONNECT_DELAY_S = 3.0
MANUAL_CLOSE_CODE = 1000
MANUAL_CLOSE_REASON = "Stopped by user"

DEFAULT_MESH_DENSITY = {
    Mode.SIMULATION: "medium",
    Mode.OPTIMIZATION: "coarse",
}

SIMULATION_DEFAULTS: Dict[str, Any] = {
    "sim_time": 0.2,
    "dt": 0.001,
    "inflow_velocity": 15.0,
    "stream_every": 1,
    "stream_fps": 30.0,
}

OPTIMIZATION_DEFAULTS: Dict[str, Any] = {
    "num_iterations": 30,
    "learning_rate": 0.005,
    "num_sim_steps": 80,
    "min_thickness": 0.06,
    "max_thickness": 0.25,
    "inflow_velocity": 1.0,
}

# camelCase keys sent by the browser UI
_KEY_ALIASES = {
    "upperCoefficients": "cst_upper",
    "lowerCoefficients": "cst_lower",
    "meshDensity": "mesh_density",
    "userId": "user_id",
    "chordLength": "chord_length",
    "velocity": "inflow_velocity",
    "inflowVelocity": "inflow_velocity",
    "angleOfAttack": "angle_of_attack",
    "simulationDuration": "sim_time",
    "timeStepSize": "dt",
    "streamEvery": "stream_every",
    "streamFps": "stream_fps",
    "numIterations": "num_iterations",
    "learningRate": "learning_rate",
    "numSimSteps": "num_sim_steps",
    "minThickness": "min_thickness",
    "maxThickness": "max_thickness",
    "runId": "run_id",
}

COMMON_DEFAULTS: Dict[str, Any] = {
    "chord_length": 1.0,
    "angle_of_attack": 0.0,
}

# (float fields, int fields) per mode
_SCALAR_FIELDS = {
    Mode.SIMULATION: (
        ("chord_length", "inflow_velocity", "angle_of_attack", "sim_time",
         "dt", "stream_fps"),
        ("stream_every",),
    ),
    Mode.OPTIMIZATION: (
        ("chord_length", "inflow_velocity", "angle_of_attack",
         "learning_rate", "min_thickness", "max_thickness"),
        ("num_iterations", "num_sim_steps"),
    ),
}


def _canonical_keys(partial: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in partial.items():
        out[_KEY_ALIASES.get(key, key)] = value
    return out


def _as_float(key: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ConfigError(f"{key} must be finite, got {value!r}")
    return number


def _as_int(key: str, value: Any) -> int:
    number = _as_float(key, value)
    if not number.is_integer():
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    return int(number)


def _coefficients(key: str, value: Optional[Sequence[Any]]) -> tuple:
    if value is None:
        raise ConfigError(f"{key} is required")
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"{key} must be a sequence of numbers")
    if len(value) == 0:
        raise ConfigError(f"{key} must not be empty")
    return tuple(_as_float(f"{key}[{i}]", v) for i, v in enumerate(value))


def _resolve_mode(mode: Optional[Mode], raw: Any) -> Mode:
    if mode is not None:
        return mode
    if raw is None:
        raise ConfigError("mode is required (simulation or optimization)")
    if isinstance(raw, Mode):
        return raw
    try:
        return Mode(str(raw).lower())
    except ValueError as exc:
        raise ConfigError(f"Unknown mode: {raw!r}") from exc


def _resolve_fidelity(mode: Mode, fields: Dict[str, Any]) -> Fidelity:
    explicit = fields.get("fidelity")
    if explicit is not None:
        if isinstance(explicit, Fidelity):
            return explicit
        try:
            return Fidelity(str(explicit).lower())
        except ValueError as exc:
            raise ConfigError(
                f"Unknown fidelity {explicit!r}; expected one of "
                f"{[f.value for f in Fidelity]}"
            ) from exc

    label = fields.get("mesh_density") or DEFAULT_MESH_DENSITY[mode]
    fidelity = MESH_DENSITY_FIDELITY.get(str(label).lower())
    if fidelity is None:
        raise ConfigError(
            f"Unknown mesh density {label!r}; expected one of "
            f"{sorted(MESH_DENSITY_FIDELITY)}"
        )
    return fidelity


def normalize_request(
    partial: Mapping[str, Any], mode: Optional[Mode] = None
) -> SessionRequest:
    """Build a canonical SessionRequest from a partially-defaulted config.

    Args:
        partial: Caller config. snake_case keys or the browser UI's camelCase
            aliases. ``mode`` may be given here instead of as an argument.
        mode: Overrides ``partial["mode"]`` when given.

    Raises:
        ConfigError: Coefficients missing/empty, unknown labels or
            non-numeric scalars.
    """
    fields = _canonical_keys(partial)
    mode = _resolve_mode(mode, fields.get("mode"))
    fidelity = _resolve_fidelity(mode, fields)

    merged = dict(COMMON_DEFAULTS)
    merged.update(SIMULATION_DEFAULTS if mode is Mode.SIMULATION else OPTIMIZATION_DEFAULTS)
    for key, value in fields.items():
        if value is not None:
            merged[key] = value

    values: Dict[str, Any] = {
        "cst_upper": _coefficients("cst_upper", fields.get("cst_upper")),
        "cst_lower": _coefficients("cst_lower", fields.get("cst_lower")),
    }
    # Keys of the other mode are not carried over.
    float_keys, int_keys = _SCALAR_FIELDS[mode]
    for key in float_keys:
        values[key] = _as_float(key, merged[key])
    for key in int_keys:
        values[key] = _as_int(key, merged[key])

    if mode is Mode.OPTIMIZATION:
        if values["num_iterations"] < 1:
            raise ConfigError("num_iterations must be at least 1")
        if values["min_thickness"] > values["max_thickness"]:
            raise ConfigError(
                f"min_thickness ({values['min_thickness']}) exceeds "
                f"max_thickness ({values['max_thickness']})"
            )
    else:
        if values["dt"] <= 0:
            raise ConfigError("dt must be positive")

    run_id = fields.get("run_id")
    return SessionRequest(
        mode=mode,
        fidelity=fidelity,
        user_id=str(fields.get("user_id") or "anonymous"),
        run_id=None if run_id is None else str(run_id),
        **values,
    )


def request_fingerprint(request: SessionRequest) -> str:
    """Stable serialized form of a request; equal requests give equal strings."""
    return json.dumps(
        asdict(request),
        sort_keys=True,
        separators=(",", ":"),
        default=lambda obj: obj.value,
    )


def _ws_from_http(http_base: str) -> str:
    if http_base.startswith("https://"):
        return "wss://" + http_base[len("https://"):]
    if http_base.startswith("http://"):
        return "ws://" + http_base[len("http://"):]
    return http_base


@dataclass(frozen=True)
class SolverEndpoints:
    """Base URLs of the remote solver."""

    http_base: str
    ws_base: str = ""

    def __post_init__(self):
        if not self.http_base:
            raise ConfigError("Solver HTTP base URL is not set")
        object.__setattr__(self, "http_base", self.http_base.rstrip("/"))
        ws_base = self.ws_base or _ws_from_http(self.http_base)
        object.__setattr__(self, "ws_base", ws_base.rstrip("/"))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SolverEndpoints":
        """Read SOLVER_BACKEND_URL / SOLVER_WS_BASE."""
        env = os.environ if environ is None else environ
        http_base = env.get(BACKEND_URL_ENV, "")
        if not http_base:
            raise ConfigError(
                f"{BACKEND_URL_ENV} is not defined. Set it to the solver's HTTP base URL."
            )
        return cls(http_base=http_base, ws_base=env.get(WS_BASE_ENV, ""))

    def session_url(self, mode: Mode) -> str:
        return self.http_base + mode.session_path

    def socket_url(self, mode: Mode, session_id: str) -> str:
        return self.ws_base + mode.socket_path(session_id)

    def experiment_url(self, session_id: str) -> str:
        return f"{self.http_base}/save_experiment/{session_id}"


@dataclass(frozen=True)
class StreamPolicy:
    """Reconnection, completion and retention settings for one manager."""

    reconnect_delay_s: float = RECONNECT_DELAY_S
    max_reconnects: Optional[int] = None  # None: retry every unclean close
    history_limit: Optional[int] = None   # None: keep every iteration
    completion: Optional[CompletionPolicy] = None  # None: per-mode default
    http_timeout_s: float = 30.0

    def completion_for(self, mode: Mode) -> CompletionPolicy:
        return self.completion or DEFAULT_COMPLETION[mode]
