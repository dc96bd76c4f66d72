"""Contracts shared by the session negotiator, frame decoder and stream manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

Coefficients = Tuple[float, ...]


class Mode(Enum):
    """Solver run kind; selects the HTTP and WebSocket paths."""
    SIMULATION = "simulation"
    OPTIMIZATION = "optimization"

    @property
    def session_path(self) -> str:
        if self is Mode.OPTIMIZATION:
            return "/optimize/sessions"
        return "/sessions"

    def socket_path(self, session_id: str) -> str:
        if self is Mode.OPTIMIZATION:
            return f"/optimize/ws/{session_id}"
        return f"/ws/{session_id}"


class Fidelity(Enum):
    """Solver grid-resolution tier."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"


# User-facing mesh density label -> solver fidelity tier.
MESH_DENSITY_FIDELITY: Dict[str, Fidelity] = {
    "coarse": Fidelity.LOW,
    "medium": Fidelity.MEDIUM,
    "fine": Fidelity.HIGH,
    "ultra": Fidelity.ULTRA,
}


class CompletionPolicy(Enum):
    """How the stream decides that a run has finished.

    EXPLICIT_FRAME: only a ``complete`` frame marks the run complete.
    CLEAN_CLOSE: any clean socket close also counts as completion.
    """
    EXPLICIT_FRAME = "explicit_frame"
    CLEAN_CLOSE = "clean_close"


DEFAULT_COMPLETION: Dict[Mode, CompletionPolicy] = {
    Mode.SIMULATION: CompletionPolicy.CLEAN_CLOSE,
    Mode.OPTIMIZATION: CompletionPolicy.EXPLICIT_FRAME,
}


@dataclass(frozen=True)
class SessionRequest:
    """Canonical solver request produced by ``normalize_request``."""

    mode: Mode
    fidelity: Fidelity
    cst_upper: Coefficients
    cst_lower: Coefficients
    user_id: str = "anonymous"
    chord_length: float = 1.0
    inflow_velocity: float = 1.0
    angle_of_attack: float = 0.0

    # Simulation
    sim_time: Optional[float] = None
    dt: Optional[float] = None
    stream_every: Optional[int] = None
    stream_fps: Optional[float] = None

    # Optimization
    num_iterations: Optional[int] = None
    learning_rate: Optional[float] = None
    num_sim_steps: Optional[int] = None
    min_thickness: Optional[float] = None
    max_thickness: Optional[float] = None

    # Fingerprint-only; never sent to the solver.
    run_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Return the JSON request body for the mode's session endpoint."""
        payload: Dict[str, Any] = {
            "user_id": self.user_id,
            "fidelity": self.fidelity.value,
            "chord_length": self.chord_length,
            "cst_upper": list(self.cst_upper),
            "cst_lower": list(self.cst_lower),
            "inflow_velocity": self.inflow_velocity,
            "angle_of_attack": self.angle_of_attack,
        }
        if self.mode is Mode.SIMULATION:
            payload.update({
                "sim_time": self.sim_time,
                "dt": self.dt,
                "stream_every": self.stream_every,
                "stream_fps": self.stream_fps,
            })
        else:
            payload.update({
                "num_iterations": self.num_iterations,
                "learning_rate": self.learning_rate,
                "num_sim_steps": self.num_sim_steps,
                "min_thickness": self.min_thickness,
                "max_thickness": self.max_thickness,
            })
        return payload


@dataclass(frozen=True)
class SessionHandle:
    """Identifier of a negotiated solver session plus the echoed config."""

    session_id: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IterationMeta:
    """Per-iteration scalar metrics, exactly as the solver sent them."""

    iteration: int
    total_iterations: int
    loss: float
    cl: float
    cd: float
    cl_cd: float
    lift_force: float
    drag_force: float


@dataclass(frozen=True)
class ShapeSnapshot:
    """Geometry at one iteration: coefficients plus sampled surface points."""

    cst_upper: Coefficients
    cst_lower: Coefficients
    airfoil_x: Tuple[float, ...] = ()
    airfoil_y_upper: Tuple[float, ...] = ()
    airfoil_y_lower: Tuple[float, ...] = ()


@dataclass(frozen=True)
class CompleteMeta:
    """Terminal metrics of a finished run."""

    total_iterations: int
    final_cl: float
    final_cd: float
    final_cl_cd: float
    final_drag: float
    final_loss: float


@dataclass(frozen=True)
class IterationFrame:
    meta: IterationMeta
    shape: ShapeSnapshot
    type: str = "iteration"


@dataclass(frozen=True)
class CompleteFrame:
    meta: CompleteMeta
    shape: ShapeSnapshot
    initial_shape: ShapeSnapshot
    type: str = "complete"


@dataclass(frozen=True)
class WarningFrame:
    message: str
    iteration: Optional[int] = None
    type: str = "warning"


Frame = Union[IterationFrame, CompleteFrame, WarningFrame]
