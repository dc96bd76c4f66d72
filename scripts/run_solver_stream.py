#!/usr/bin/env python3
"""Run one solver simulation/optimization session and stream its results."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from solver_stream import (
    ConfigChangeGuard,
    ConfigError,
    ConnectionState,
    Mode,
    SessionNegotiator,
    SolverEndpoints,
    SolverStreamError,
    StreamingConnectionManager,
    StreamPolicy,
    StreamSnapshot,
)
from solver_stream.config import RECONNECT_DELAY_S
from solver_stream.experiments import save_experiment
from solver_stream.exports import write_run_artifacts

logger = logging.getLogger("run_solver_stream")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_TIMEOUT = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Negotiate a solver session and stream its iterations"
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=Mode.OPTIMIZATION.value,
        help="Solver run kind",
    )
    parser.add_argument(
        "--config", default=None, help="JSON file with the session config"
    )
    parser.add_argument(
        "--cst-upper", type=float, nargs="+", default=None,
        help="Upper surface CST coefficients",
    )
    parser.add_argument(
        "--cst-lower", type=float, nargs="+", default=None,
        help="Lower surface CST coefficients",
    )
    parser.add_argument(
        "--mesh-density",
        choices=["coarse", "medium", "fine", "ultra"],
        default=None,
        help="Mesh density label (mapped to solver fidelity)",
    )
    parser.add_argument(
        "--fidelity",
        choices=["low", "medium", "high", "ultra"],
        default=None,
        help="Solver fidelity; overrides --mesh-density",
    )
    parser.add_argument("--iterations", type=int, default=None,
                        help="Optimization iterations")
    parser.add_argument("--learning-rate", type=float, default=None)
    parser.add_argument("--velocity", type=float, default=None,
                        help="Inflow velocity")
    parser.add_argument("--aoa", type=float, default=None,
                        help="Angle of attack in degrees")
    parser.add_argument("--chord", type=float, default=None, help="Chord length")
    parser.add_argument("--sim-time", type=float, default=None,
                        help="Simulated duration (simulation mode)")
    parser.add_argument("--dt", type=float, default=None,
                        help="Time step (simulation mode)")
    parser.add_argument("--user-id", default=None)
    parser.add_argument(
        "--backend-url", default=None,
        help="Solver HTTP base URL (default: $SOLVER_BACKEND_URL)",
    )
    parser.add_argument(
        "--ws-base", default=None,
        help="Solver WebSocket base URL (default: $SOLVER_WS_BASE or derived)",
    )
    parser.add_argument(
        "--reconnect-delay", type=float, default=RECONNECT_DELAY_S,
        help="Seconds to wait before reconnecting after a dropped connection",
    )
    parser.add_argument(
        "--max-reconnects", type=int, default=None,
        help="Give up after this many reconnects (default: never)",
    )
    parser.add_argument(
        "--max-wait", type=float, default=None,
        help="Cancel the session if it has not settled after this many seconds",
    )
    parser.add_argument("--name", default="solver_stream", help="Run name")
    parser.add_argument("--runs-dir", default="runs", help="Runs output root")
    parser.add_argument(
        "--save-experiment", default=None, metavar="NAME",
        help="Save the finished session on the backend under NAME",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logs"
    )
    return parser


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if args.config:
        with open(args.config, "r", encoding="utf-8") as f:
            config.update(json.load(f))

    overrides = {
        "cst_upper": args.cst_upper,
        "cst_lower": args.cst_lower,
        "mesh_density": args.mesh_density,
        "fidelity": args.fidelity,
        "num_iterations": args.iterations,
        "learning_rate": args.learning_rate,
        "inflow_velocity": args.velocity,
        "angle_of_attack": args.aoa,
        "chord_length": args.chord,
        "sim_time": args.sim_time,
        "dt": args.dt,
        "user_id": args.user_id,
    }
    for key, value in overrides.items():
        if value is not None:
            config[key] = value
    config["run_id"] = str(int(time.time() * 1000))
    return config


def build_endpoints(args: argparse.Namespace) -> SolverEndpoints:
    if args.backend_url:
        return SolverEndpoints(http_base=args.backend_url, ws_base=args.ws_base or "")
    return SolverEndpoints.from_env()


def _log_progress(snapshot: StreamSnapshot) -> None:
    meta = snapshot.current_meta
    if meta is None or snapshot.connection is not ConnectionState.OPEN:
        return
    logger.info(
        "Iter %s/%s  loss=%.5g  cl=%.4f  cd=%.5f  L/D=%.2f",
        meta.iteration, meta.total_iterations, meta.loss, meta.cl, meta.cd,
        meta.cl_cd,
    )


async def run_stream(args: argparse.Namespace, endpoints: SolverEndpoints,
                     config: Dict[str, Any]):
    policy = StreamPolicy(
        reconnect_delay_s=max(0.0, float(args.reconnect_delay)),
        max_reconnects=args.max_reconnects,
    )
    mode = Mode(args.mode)
    negotiator = SessionNegotiator(endpoints, timeout_seconds=policy.http_timeout_s)

    async with StreamingConnectionManager(negotiator, endpoints, mode, policy) as manager:
        guard = ConfigChangeGuard(manager)
        manager.state.subscribe(_log_progress)
        await guard.submit(config)
        timed_out = False
        try:
            snapshot = await manager.wait_until_settled(args.max_wait)
        except asyncio.TimeoutError:
            logger.warning("No result after %.0fs; cancelling", args.max_wait)
            timed_out = True
            await guard.cancel("Client wait limit reached")
            snapshot = manager.snapshot()
        return snapshot, guard.request, timed_out


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        endpoints = build_endpoints(args)
        config = build_config(args)
        started = time.perf_counter()
        snapshot, request, timed_out = asyncio.run(run_stream(args, endpoints, config))
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    elapsed = time.perf_counter() - started

    paths = write_run_artifacts(args.runs_dir, args.name, snapshot, request)

    if args.save_experiment and snapshot.session_id:
        try:
            save_experiment(
                endpoints,
                snapshot.session_id,
                args.save_experiment,
                user_id=request.user_id if request else "anonymous",
                is_optimized=args.mode == Mode.OPTIMIZATION.value,
            )
            print(f"Experiment saved: {args.save_experiment}")
        except SolverStreamError as e:
            print(f"Failed to save experiment: {e}", file=sys.stderr)

    print(f"Run ID: {paths.run_id}")
    print(f"Run dir: {paths.run_dir}")
    print(f"Session: {snapshot.session_id or 'n/a'}")
    print(f"Status: {snapshot.connection.value.upper()}")
    print(f"Iterations: {len(snapshot.history)}")
    print(f"Duration: {elapsed:.1f}s")
    if snapshot.error:
        print(f"Error: {snapshot.error}")

    if timed_out:
        return EXIT_TIMEOUT
    if snapshot.is_complete:
        return EXIT_OK
    return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
