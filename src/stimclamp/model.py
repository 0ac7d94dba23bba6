"""Kinetic model interface queried by the simulator.

The simulator only needs per-epoch rate matrices, starting probabilities,
state attributes and transition charges, plus access to the free parameter
vector during optimisation. :class:`ExpressionKineticModel` is a compact
implementation whose rates are expressions over model parameters and
stimulus names.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np

from .errors import ExpressionError, ModelError
from .expressions import ExpressionEngine


@dataclass(frozen=True)
class EpochKinetics:
    transition_rates: np.ndarray
    state_probabilities: np.ndarray
    state_attributes: Mapping[str, np.ndarray] = field(default_factory=dict)
    transition_charges: Optional[np.ndarray] = None


class KineticModel(Protocol):
    """Query surface the simulator consumes."""

    @property
    def state_names(self) -> Sequence[str]:
        ...

    @property
    def num_variable_sets(self) -> int:
        ...

    @property
    def state_groups(self) -> Mapping[str, Sequence[int]]:
        ...

    def epoch_kinetics(self, stimuli: Mapping[str, float], variable_set: int) -> EpochKinetics:
        ...

    def parameters(self, variable_set: int) -> Mapping[str, float]:
        ...

    def free_parameters(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ...

    def set_free_parameters(self, values: Sequence[float]) -> None:
        ...


@dataclass(frozen=True)
class Transition:
    source: str
    target: str
    rate: str
    charge: float = 0.0


@dataclass
class ModelParameter:
    name: str
    value: float
    lower: float = -math.inf
    upper: float = math.inf
    free: bool = False


class ExpressionKineticModel:
    """Markov model with rate expressions over parameters and stimuli."""

    def __init__(
        self,
        states: Sequence[str],
        transitions: Sequence[Transition],
        parameters: Sequence[ModelParameter] = (),
        *,
        variable_sets: Sequence[Mapping[str, float]] = (),
        starting_probability: Optional[Sequence[float]] = None,
        state_attributes: Optional[Mapping[str, Sequence[float]]] = None,
        state_groups: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self._states = [str(name) for name in states]
        if len(set(self._states)) != len(self._states):
            raise ModelError(f"Duplicate state names in {self._states!r}")
        self._index = {name: idx for idx, name in enumerate(self._states)}
        for transition in transitions:
            for name in (transition.source, transition.target):
                if name not in self._index:
                    raise ModelError(f"Transition refers to unknown state '{name}'")
            if transition.source == transition.target:
                raise ModelError(f"Self transition on state '{transition.source}'")
        self._transitions = list(transitions)
        self._parameters: Dict[str, ModelParameter] = {param.name: param for param in parameters}
        self._variable_sets = [dict(overrides) for overrides in variable_sets]
        num_states = len(self._states)
        if starting_probability is None:
            start = np.zeros(num_states, dtype=float)
            if num_states:
                start[0] = 1.0
        else:
            start = np.asarray(starting_probability, dtype=float)
            if start.shape != (num_states,):
                raise ModelError(f"Starting probability must have {num_states} entries")
        self._starting_probability = start
        self._attributes: Dict[str, np.ndarray] = {}
        for name, values in (state_attributes or {}).items():
            vector = np.asarray(values, dtype=float)
            if vector.shape != (num_states,):
                raise ModelError(f"State attribute '{name}' must have {num_states} entries")
            self._attributes[name] = vector
        self._groups: Dict[str, List[int]] = {}
        for name, members in (state_groups or {}).items():
            try:
                self._groups[name] = [self._index[member] for member in members]
            except KeyError as exc:
                raise ModelError(f"State group '{name}' refers to unknown state {exc}") from exc

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> "ExpressionKineticModel":
        transitions = [
            Transition(
                source=str(item["source"]),
                target=str(item["target"]),
                rate=str(item["rate"]),
                charge=float(item.get("charge", 0.0)),
            )
            for item in payload.get("transitions", [])  # type: ignore[union-attr]
        ]
        raw_params = payload.get("parameters", [])
        parameters: List[ModelParameter] = []
        if isinstance(raw_params, Mapping):
            parameters = [ModelParameter(name=str(k), value=float(v)) for k, v in raw_params.items()]
        else:
            for item in raw_params:  # type: ignore[union-attr]
                parameters.append(
                    ModelParameter(
                        name=str(item["name"]),
                        value=float(item["value"]),
                        lower=float(item.get("lower", -math.inf)),
                        upper=float(item.get("upper", math.inf)),
                        free=bool(item.get("free", False)),
                    )
                )
        return cls(
            states=list(payload["states"]),  # type: ignore[arg-type]
            transitions=transitions,
            parameters=parameters,
            variable_sets=list(payload.get("variable_sets", [])),  # type: ignore[arg-type]
            starting_probability=payload.get("starting_probability"),  # type: ignore[arg-type]
            state_attributes=payload.get("state_attributes"),  # type: ignore[arg-type]
            state_groups=payload.get("state_groups"),  # type: ignore[arg-type]
        )

    @property
    def state_names(self) -> Sequence[str]:
        return tuple(self._states)

    @property
    def num_variable_sets(self) -> int:
        return max(1, len(self._variable_sets))

    @property
    def state_groups(self) -> Mapping[str, Sequence[int]]:
        return dict(self._groups)

    def parameters(self, variable_set: int = 0) -> Mapping[str, float]:
        values = {name: float(param.value) for name, param in self._parameters.items()}
        if variable_set < len(self._variable_sets):
            values.update({name: float(value) for name, value in self._variable_sets[variable_set].items()})
        return values

    def epoch_kinetics(self, stimuli: Mapping[str, float], variable_set: int = 0) -> EpochKinetics:
        num_states = len(self._states)
        engine = ExpressionEngine(self.parameters(variable_set))
        engine.bind_many(stimuli)
        rates = np.zeros((num_states, num_states), dtype=float)
        charges = np.zeros((num_states, num_states), dtype=float)
        for transition in self._transitions:
            try:
                value = engine.evaluate_scalar(transition.rate)
            except ExpressionError as exc:
                raise ModelError(f"Rate {transition.source}->{transition.target}: {exc}") from exc
            if not math.isfinite(value) or value < 0.0:
                raise ModelError(
                    f"Rate {transition.source}->{transition.target} evaluated to invalid value {value!r}"
                )
            i = self._index[transition.source]
            j = self._index[transition.target]
            rates[i, j] += value
            charges[i, j] = transition.charge
        rates[np.diag_indices(num_states)] = -rates.sum(axis=1)
        return EpochKinetics(
            transition_rates=rates,
            state_probabilities=self._starting_probability.copy(),
            state_attributes={name: vector.copy() for name, vector in self._attributes.items()},
            transition_charges=charges,
        )

    def _free(self) -> List[ModelParameter]:
        return [param for param in self._parameters.values() if param.free]

    def free_parameters(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        free = self._free()
        return (
            np.array([param.value for param in free], dtype=float),
            np.array([param.lower for param in free], dtype=float),
            np.array([param.upper for param in free], dtype=float),
        )

    def set_free_parameters(self, values: Sequence[float]) -> None:
        free = self._free()
        if len(values) != len(free):
            raise ModelError(f"Expected {len(free)} free parameter values, got {len(values)}")
        for param, value in zip(free, values):
            param.value = float(value)


__all__ = [
    "EpochKinetics",
    "ExpressionKineticModel",
    "KineticModel",
    "ModelParameter",
    "Transition",
]
