"""Run-folder artifacts for finished solver streams.

Layout of one run::

    runs/<stamp>_<slug>/
        manifest.json   request, session id, final connection state
        metrics.json    history summary + terminal metrics
        history.csv     one row per iteration frame
        history.json
        airfoil.dat     final sampled geometry, Selig format
        summary.md
    runs/latest -> <stamp>_<slug>      (or runs/LATEST holding the folder name)
"""

from __future__ import annotations

import csv
import json
import logging
import os
import re
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from solver_stream.contracts import IterationMeta, SessionRequest, ShapeSnapshot
from solver_stream.state import StreamSnapshot

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = (
    "iteration", "total_iterations", "loss", "cl", "cd", "cl_cd",
    "lift_force", "drag_force",
)


@dataclass
class RunPaths:
    run_id: str
    run_dir: Path
    manifest_path: Path
    metrics_path: Path
    history_csv_path: Path
    history_json_path: Path
    airfoil_path: Path
    summary_path: Path


def slugify(value: str, max_length: int = 48) -> str:
    """Lowercase ``value`` and collapse every non-alphanumeric run into '-'."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return slug[:max_length].rstrip("-") or "run"


def create_run_id(name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{slugify(name)}"


def prepare_run_dir(runs_root: str, name: str,
                    now: Optional[datetime] = None) -> RunPaths:
    """Create a fresh run folder; same-second runs of one name get a suffix."""
    runs_path = Path(runs_root)
    runs_path.mkdir(parents=True, exist_ok=True)

    base_id = create_run_id(name, now)
    run_id = base_id
    suffix = 1
    while (runs_path / run_id).exists():
        suffix += 1
        run_id = f"{base_id}_{suffix}"
    run_dir = runs_path / run_id
    run_dir.mkdir()

    return RunPaths(
        run_id=run_id,
        run_dir=run_dir,
        manifest_path=run_dir / "manifest.json",
        metrics_path=run_dir / "metrics.json",
        history_csv_path=run_dir / "history.csv",
        history_json_path=run_dir / "history.json",
        airfoil_path=run_dir / "airfoil.dat",
        summary_path=run_dir / "summary.md",
    )


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def write_json(path: Path, payload: Any) -> None:
    write_text(path, json.dumps(payload, indent=2, default=str) + "\n")


def update_latest_pointer(runs_root: str, run_dir: Path) -> Path:
    """Point ``<runs_root>/latest`` at ``run_dir``.

    Where symlinks are unavailable, writes the run folder name to
    ``<runs_root>/LATEST`` instead. Returns the pointer that was written.
    """
    runs_path = Path(runs_root)
    latest = runs_path / "latest"
    if latest.is_symlink() or latest.is_file():
        latest.unlink()
    elif latest.is_dir():
        shutil.rmtree(latest)

    try:
        latest.symlink_to(os.path.relpath(run_dir, runs_path), target_is_directory=True)
        return latest
    except OSError as e:
        logger.debug("Symlinks unavailable (%s); writing LATEST marker", e)
        marker = runs_path / "LATEST"
        write_text(marker, run_dir.name + "\n")
        return marker


# ── History ────────────────────────────────────────────────────────────────

def history_array(history: Sequence[IterationMeta]) -> np.ndarray:
    """History as an (n, len(HISTORY_COLUMNS)) float array."""
    if not history:
        return np.zeros((0, len(HISTORY_COLUMNS)), dtype=float)
    return np.array(
        [[float(getattr(meta, col)) for col in HISTORY_COLUMNS] for meta in history],
        dtype=float,
    )


def summarize_history(history: Sequence[IterationMeta]) -> Dict[str, Any]:
    """Best and final values over a session's iteration history."""
    arr = history_array(history)
    if arr.shape[0] == 0:
        return {"iterations": 0}

    col = {name: i for i, name in enumerate(HISTORY_COLUMNS)}
    cl_cd = arr[:, col["cl_cd"]]
    loss = arr[:, col["loss"]]
    best = int(np.nanargmax(cl_cd)) if np.isfinite(cl_cd).any() else len(cl_cd) - 1
    return {
        "iterations": int(arr.shape[0]),
        "best_cl_cd": float(cl_cd[best]),
        "best_iteration": int(arr[best, col["iteration"]]),
        "final_cl": float(arr[-1, col["cl"]]),
        "final_cd": float(arr[-1, col["cd"]]),
        "final_cl_cd": float(cl_cd[-1]),
        "final_loss": float(loss[-1]),
        "loss_reduction": float(loss[0] - loss[-1]),
    }


def history_records(history: Sequence[IterationMeta]) -> List[Dict[str, Any]]:
    return [asdict(meta) for meta in history]


def write_history_csv(path: Path, history: Sequence[IterationMeta]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(HISTORY_COLUMNS))
        writer.writeheader()
        for record in history_records(history):
            writer.writerow(record)


# ── Geometry ───────────────────────────────────────────────────────────────

def selig_coordinates(shape: ShapeSnapshot) -> np.ndarray:
    """Sampled surface as Selig point order: upper TE->LE, then lower LE->TE."""
    x = np.asarray(shape.airfoil_x, dtype=float)
    y_upper = np.asarray(shape.airfoil_y_upper, dtype=float)
    y_lower = np.asarray(shape.airfoil_y_lower, dtype=float)
    if x.size == 0:
        raise ValueError("shape has no sampled coordinates")
    if y_upper.shape != x.shape or y_lower.shape != x.shape:
        raise ValueError(
            f"sampled coordinate lengths differ: x={x.size}, "
            f"upper={y_upper.size}, lower={y_lower.size}"
        )
    upper = np.column_stack([x[::-1], y_upper[::-1]])
    lower = np.column_stack([x, y_lower])
    return np.vstack([upper, lower])


def write_selig_dat(path: Path, shape: ShapeSnapshot, name: str = "Custom Airfoil") -> None:
    coords = selig_coordinates(shape)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(f"{name}\n")
        np.savetxt(f, coords, fmt="  %.6f  %.6f")


# ── Whole run ──────────────────────────────────────────────────────────────

def _final_shape(snapshot: StreamSnapshot) -> Optional[ShapeSnapshot]:
    if snapshot.completed is not None and snapshot.completed.shape.airfoil_x:
        return snapshot.completed.shape
    if snapshot.current_shape is not None and snapshot.current_shape.airfoil_x:
        return snapshot.current_shape
    return None


def build_summary(run_id: str, snapshot: StreamSnapshot, metrics: Dict[str, Any]) -> str:
    lines = [
        f"# Run {run_id}",
        "",
        f"- Session: {snapshot.session_id or 'n/a'}",
        f"- Status: **{snapshot.connection.value.upper()}**",
        f"- Iterations received: {metrics['history'].get('iterations', 0)}",
    ]
    if snapshot.error:
        lines.append(f"- Error: {snapshot.error}")
    if "best_cl_cd" in metrics["history"]:
        lines.append(
            f"- Best L/D: {metrics['history']['best_cl_cd']:.3f} "
            f"(iteration {metrics['history']['best_iteration']})"
        )
    final = metrics.get("final")
    if final:
        lines.append(
            f"- Final: cl={final['final_cl']:.4f} cd={final['final_cd']:.5f} "
            f"L/D={final['final_cl_cd']:.3f}"
        )
    lines.append("")
    return "\n".join(lines)


def write_run_artifacts(runs_root: str, name: str, snapshot: StreamSnapshot,
                        request: Optional[SessionRequest] = None) -> RunPaths:
    """Write every artifact of one finished stream and update ``latest``."""
    paths = prepare_run_dir(runs_root, name)

    metrics: Dict[str, Any] = {
        "run_id": paths.run_id,
        "session_id": snapshot.session_id,
        "status": snapshot.connection.value,
        "is_complete": snapshot.is_complete,
        "error": snapshot.error,
        "history": summarize_history(snapshot.history),
        "final": asdict(snapshot.completed.meta) if snapshot.completed else None,
    }
    write_json(paths.metrics_path, metrics)
    write_history_csv(paths.history_csv_path, snapshot.history)
    write_json(paths.history_json_path, history_records(snapshot.history))

    artifacts = {
        "metrics": str(paths.metrics_path),
        "history_csv": str(paths.history_csv_path),
        "history_json": str(paths.history_json_path),
        "summary": str(paths.summary_path),
        "airfoil": None,
    }
    shape = _final_shape(snapshot)
    if shape is not None:
        write_selig_dat(paths.airfoil_path, shape, name=name)
        artifacts["airfoil"] = str(paths.airfoil_path)

    write_text(paths.summary_path, build_summary(paths.run_id, snapshot, metrics))

    manifest = {
        "run_id": paths.run_id,
        "name": name,
        "created_utc": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "session_id": snapshot.session_id,
        "status": snapshot.connection.value,
        "request": None,
        "artifacts": artifacts,
    }
    if request is not None:
        manifest["request"] = dict(request.to_payload(), mode=request.mode.value,
                                   run_id=request.run_id)
    write_json(paths.manifest_path, manifest)
    update_latest_pointer(runs_root, paths.run_dir)
    return paths
