"""Solver configuration for simulation passes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .errors import ConfigError

SPECTRAL = "spectral"
MONTE_CARLO = "monte_carlo"
METHODS = (SPECTRAL, MONTE_CARLO)

_LEGACY_KEYS = {
    "Method": "method",
    "# Monte Carlo runs": "num_runs",
    "Accumulate Monte Carlo runs": "accumulate_runs",
    "Sample probability from Monte Carlo event chains": "sample_runs",
}


def _map_method(label: str) -> str:
    lower = str(label).strip().lower().replace("-", " ").replace("_", " ")
    if lower in {"eigen solver", "eigen", "spectral"}:
        return SPECTRAL
    if lower in {"monte carlo", "montecarlo", "stochastic"}:
        return MONTE_CARLO
    raise ConfigError(f"Unknown simulation method '{label}'")


@dataclass(frozen=True)
class SimulationOptions:
    """Configuration driving one simulation pass."""

    method: str = SPECTRAL
    num_runs: int = 0
    accumulate_runs: bool = False
    sample_runs: bool = True
    max_workers: Optional[int] = None
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.method not in METHODS:
            raise ConfigError(f"Unknown simulation method '{self.method}'")
        if self.num_runs < 0:
            raise ConfigError("num_runs must be non-negative")
        if self.method == MONTE_CARLO and self.num_runs == 0 and not self.accumulate_runs:
            raise ConfigError("Monte Carlo simulation requires num_runs > 0")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> "SimulationOptions":
        values: Dict[str, object] = {}
        for key, value in payload.items():
            values[_LEGACY_KEYS.get(key, key)] = value
        unknown = set(values) - {"method", "num_runs", "accumulate_runs", "sample_runs", "max_workers", "seed"}
        if unknown:
            raise ConfigError(f"Unknown simulation options: {sorted(unknown)!r}")
        if "method" in values:
            values["method"] = _map_method(str(values["method"]))
        for key in ("num_runs", "max_workers", "seed"):
            if values.get(key) is not None:
                values[key] = int(values[key])  # type: ignore[arg-type]
        for key in ("accumulate_runs", "sample_runs"):
            if key in values:
                values[key] = bool(values[key])
        return cls(**values)  # type: ignore[arg-type]

    def as_dict(self) -> Dict[str, object]:
        return {
            "method": self.method,
            "num_runs": self.num_runs,
            "accumulate_runs": self.accumulate_runs,
            "sample_runs": self.sample_runs,
            "max_workers": self.max_workers,
            "seed": self.seed,
        }


__all__ = ["METHODS", "MONTE_CARLO", "SPECTRAL", "SimulationOptions"]
