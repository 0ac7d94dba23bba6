"""Named-variable arithmetic over time series.

Stimulus shapes, derived waveforms, summaries and model rate expressions all
share this small language: names are bound to scalars or 1-D series and an
expression string is evaluated element-wise with numpy semantics. Parsing is
delegated to sympy and compiled with ``lambdify``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Callable, Dict, Mapping, Tuple, Union

import numpy as np
import sympy as sp
from sympy.parsing.sympy_parser import convert_xor, parse_expr, standard_transformations

from .errors import ExpressionError

Value = Union[float, np.ndarray]

_TRANSFORMATIONS = standard_transformations + (convert_xor,)


def _first(values):
    return np.asarray(values).ravel()[0]


def _last(values):
    return np.asarray(values).ravel()[-1]


_FUNCTIONS: Dict[str, Callable] = {
    # reductions
    "mean": np.mean,
    "sum": np.sum,
    "max": np.max,
    "min": np.min,
    "std": np.std,
    "first": _first,
    "last": _last,
    "argmax": np.argmax,
    "argmin": np.argmin,
    # element-wise
    "abs": np.abs,
    "exp": np.exp,
    "log": np.log,
    "log10": np.log10,
    "sqrt": np.sqrt,
    "sin": np.sin,
    "cos": np.cos,
    "tanh": np.tanh,
}

_SYMPY_CONSTANTS = (
    sp.NumberSymbol,
    sp.core.numbers.ImaginaryUnit,
    sp.core.numbers.Infinity,
    sp.core.numbers.NegativeInfinity,
    sp.core.numbers.ComplexInfinity,
    sp.core.numbers.NaN,
)


@lru_cache(maxsize=512)
def _compile(expression: str, names: Tuple[str, ...]) -> Tuple[Callable, Tuple[str, ...]]:
    local_dict: Dict[str, object] = {name: sp.Function(name) for name in _FUNCTIONS}
    local_dict.update({name: sp.Symbol(name) for name in names})
    try:
        parsed = parse_expr(expression, local_dict=local_dict, transformations=_TRANSFORMATIONS, evaluate=False)
    except Exception as exc:
        raise ExpressionError(f"Failed to parse expression '{expression}': {exc}") from exc
    if not isinstance(parsed, sp.Basic):
        raise ExpressionError(f"Expression '{expression}' is not arithmetic")
    free = sorted(parsed.free_symbols, key=lambda s: s.name)
    unknown = [sym.name for sym in free if sym.name not in names]
    # sympy resolves unbound names such as E, pi or I to its own constants
    unknown.extend(sorted(str(atom) for atom in parsed.atoms(*_SYMPY_CONSTANTS)))
    unknown.extend(
        sorted({atom.func.__name__ for atom in parsed.atoms(sp.Function) if atom.func.__name__ not in _FUNCTIONS})
    )
    if unknown:
        raise ExpressionError(f"Unknown name(s) {unknown!r} in expression '{expression}'")
    func = sp.lambdify(free, parsed, modules=[_FUNCTIONS, "numpy"])
    return func, tuple(sym.name for sym in free)


class ExpressionEngine:
    """Binds named scalars/series and evaluates expressions over them."""

    def __init__(self, values: Mapping[str, Value] | None = None):
        self._values: Dict[str, Value] = {}
        if values:
            self.bind_many(values)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._values)

    def bind(self, name: str, value: Value) -> None:
        if np.ndim(value) == 0:
            self._values[name] = float(value)
        else:
            self._values[name] = np.asarray(value, dtype=float)

    def bind_many(self, values: Mapping[str, Value]) -> None:
        for name, value in values.items():
            self.bind(name, value)

    def clear(self) -> None:
        self._values.clear()

    def evaluate(self, expression: str) -> np.ndarray:
        """Evaluate *expression*; scalar results come back as 0-d arrays."""

        text = (expression or "").strip()
        if not text:
            raise ExpressionError("Empty expression")
        func, args = _compile(text, tuple(sorted(self._values)))
        try:
            with np.errstate(all="ignore"):
                result = func(*[self._values[name] for name in args])
            return np.asarray(result, dtype=float)
        except Exception as exc:
            raise ExpressionError(f"Failed to evaluate expression '{text}': {exc}") from exc

    def evaluate_scalar(self, expression: str) -> float:
        result = self.evaluate(expression)
        if result.size != 1:
            raise ExpressionError(f"Expression '{expression}' does not reduce to a single value")
        return float(result.ravel()[0])


__all__ = ["ExpressionEngine"]
