"""Batch driver for stimulus clamp simulations and fits.

The input is a JSON document::

    {
      "model": {"states": [...], "transitions": [...], "parameters": [...]},
      "protocols": [{"name": "act", "duration": "0.05", "stimuli": [...]}],
      "options": {"method": "spectral"}
    }

Reference data entries inside a protocol may point at a whitespace delimited
``file`` (relative to the JSON document) whose first line holds column titles.

Typical usage::

    python -m scripts.stimclamp_cli simulate run.json --output-dir artifacts/sim
    python -m scripts.stimclamp_cli fit run.json --max-iter 200 --report fit.json

Exit codes: 0 on success, 1 on failure, 2 when the pass was aborted.
"""
from __future__ import annotations

import argparse
import json
import logging
import signal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence

import pandas as pd

from src.stimclamp import (
    CancellationToken,
    ExpressionKineticModel,
    SimulationOptions,
    StimClampError,
    StimulusClampProtocol,
    StimulusClampSimulator,
    optimize,
    write_dwell_times,
)
from src.stimclamp.simulator import ABORTED, SUCCESS

LOGGER = logging.getLogger("stimclamp_cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s:%(name)s:%(message)s",
    )


def _parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate or fit stimulus clamp protocols")
    sub = parser.add_subparsers(dest="command", required=True)

    def _common(command: argparse.ArgumentParser) -> None:
        command.add_argument("document", type=Path, help="JSON document with model, protocols and options")
        command.add_argument(
            "--output-dir",
            type=Path,
            default=None,
            help="Directory receiving one CSV per condition cell and variable set",
        )
        command.add_argument("--seed", type=int, default=None, help="Override the options seed")
        command.add_argument(
            "--dwt-prefix",
            type=str,
            default=None,
            help="Export Monte Carlo event chains as <prefix> (vs,row,col).dwt files",
        )
        command.add_argument("--verbose", action="store_true", help="Emit debug logging")

    simulate = sub.add_parser("simulate", help="Run one simulation pass")
    _common(simulate)

    fit = sub.add_parser("fit", help="Optimise free model parameters against reference data")
    _common(fit)
    fit.add_argument("--max-iter", type=int, default=500, help="Maximum simplex iterations (default: 500)")
    fit.add_argument("--tolerance", type=float, default=1e-4, help="Simplex size tolerance (default: 1e-4)")
    fit.add_argument("--report", type=Path, default=None, help="Optional JSON report of the fitted parameters")
    return parser.parse_args(argv)


def _load_document(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise FileNotFoundError(f"Document {path} does not exist")
    payload = json.loads(path.read_text(encoding="utf8"))
    if "model" not in payload or "protocols" not in payload:
        raise ValueError("Document must define 'model' and 'protocols'")
    return payload


def build_simulator(payload: Mapping[str, Any], base_dir: Path, seed: int | None = None) -> StimulusClampSimulator:
    model = ExpressionKineticModel.from_mapping(payload["model"])
    protocols = [StimulusClampProtocol.from_mapping(item, base_dir) for item in payload["protocols"]]
    options_payload = dict(payload.get("options", {}))
    if seed is not None:
        options_payload["seed"] = seed
    options = SimulationOptions.from_mapping(options_payload)
    return StimulusClampSimulator(model, protocols, options)


def _write_cells(simulator: StimulusClampSimulator, output_dir: Path) -> List[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    state_names = list(simulator.model.state_names)
    written: List[Path] = []
    for index, protocol in enumerate(simulator.protocols):
        label = protocol.name or f"protocol{index}"
        for cell in protocol.iter_cells():
            for variable_set in range(simulator.model.num_variable_sets):
                frame = cell.to_frame(variable_set, state_names)
                path = output_dir / f"{label}_vs{variable_set}_r{cell.row}_c{cell.col}.csv"
                frame.to_csv(path, index=False)
                written.append(path)
        for name, state in protocol.summary_states.items():
            rows: List[Dict[str, Any]] = []
            for variable_set, data_y in enumerate(state.data_y):
                data_x = state.data_x[variable_set]
                for row in range(data_y.shape[0]):
                    for col in range(data_y.shape[1]):
                        rows.append(
                            {"variable_set": variable_set, "row": row, "col": col,
                             "x": data_x[row, col], "y": data_y[row, col]}
                        )
            path = output_dir / f"{label}_summary_{name}.csv"
            pd.DataFrame(rows).to_csv(path, index=False)
            written.append(path)
    LOGGER.info("wrote %d CSV files to %s", len(written), output_dir)
    return written


def _exit_code(status: str) -> int:
    if status == SUCCESS:
        return EXIT_OK
    if status == ABORTED:
        return EXIT_ABORTED
    return EXIT_FAILED


def _install_interrupt(token: CancellationToken) -> None:
    def _handler(signum, frame):  # pragma: no cover - interactive
        token.cancel("interrupted")

    try:
        signal.signal(signal.SIGINT, _handler)
    except ValueError:  # pragma: no cover - not the main thread
        pass


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    try:
        payload = _load_document(args.document)
        simulator = build_simulator(payload, args.document.resolve().parent, args.seed)
    except (OSError, ValueError, KeyError, TypeError, StimClampError) as exc:
        LOGGER.error("invalid document: %s", exc)
        return EXIT_FAILED

    token = CancellationToken()
    _install_interrupt(token)

    if args.command == "simulate":
        result = simulator.simulate(token)
        status, message = result.status, result.message
        if result.ok:
            LOGGER.info("simulation cost=%.6g", result.cost)
    else:
        try:
            fitted = optimize(simulator, max_iterations=args.max_iter, tolerance=args.tolerance, token=token)
        except StimClampError as exc:
            LOGGER.error("fit failed: %s", exc)
            return EXIT_FAILED
        status, message = fitted.status, fitted.message
        if args.report is not None:
            args.report.parent.mkdir(parents=True, exist_ok=True)
            report = {
                "status": fitted.status,
                "cost": fitted.cost,
                "iterations": fitted.iterations,
                "converged": fitted.converged,
                "message": fitted.message,
                "x": [float(value) for value in fitted.x],
                "parameters": dict(simulator.model.parameters(0)),
                "options": simulator.options.as_dict(),
            }
            args.report.write_text(json.dumps(report, indent=2, sort_keys=True), encoding="utf8")

    if status == SUCCESS:
        if args.output_dir is not None:
            _write_cells(simulator, args.output_dir)
        if args.dwt_prefix:
            for protocol in simulator.protocols:
                write_dwell_times(f"{args.dwt_prefix}{protocol.name}", protocol)
    else:
        LOGGER.error("%s: %s", status, message)
    return _exit_code(status)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
