"""Protocol grid: condition matrices, protocol sub-objects and cells.

A protocol describes a 2-D grid of experimental conditions. Every protocol
parameter is a condition-matrix string (``"0, 1; 2, 3"``) and all matrices
are padded to a common ``rows x cols`` shape, one :class:`ConditionCell`
per entry.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .alignment import NORMALIZATIONS, align_reference
from .entities import AlignedReference, Epoch, EventChain
from .epochs import UniqueEpochRegistry, find_epochs
from .errors import ConfigError
from .waveforms import find_indexes_in_range, stimulus_waveform

logger = logging.getLogger(__name__)

Matrix = List[List[Any]]
SeedLike = Union[None, int, np.random.SeedSequence]

_ROW_SEPARATOR = re.compile(r"[;\n]")
_NUMERIC_FIELD_SEPARATOR = re.compile(r"[,\s]+")
_RANGE_TOL = 1e-9

SUMMARY_NORMALIZATIONS = ("none", "per_row", "all_rows")


def _convert(text: Any, kind: Callable) -> Any:
    if kind is int:
        return int(round(float(text)))
    return kind(text)


def _expand_field(text: str, kind: Callable) -> List[Any]:
    if ":" not in text:
        return [_convert(text, kind)]
    parts = [float(part) for part in text.split(":")]
    if len(parts) == 2:
        start, step, stop = parts[0], 1.0, parts[1]
    elif len(parts) == 3:
        start, step, stop = parts
    else:
        raise ConfigError(f"Invalid range '{text}'")
    if step == 0.0:
        raise ConfigError(f"Range '{text}' has zero step")
    count = int(math.floor((stop - start) / step + _RANGE_TOL)) + 1
    return [_convert(start + idx * step, kind) for idx in range(max(count, 0))]


def parse_matrix(text: Any, kind: Callable = float) -> Matrix:
    """Parse a condition-matrix string into a list of rows.

    Rows are separated by ``;`` or newlines. Numeric fields are separated by
    commas or whitespace and may be ranges ``start:stop`` or
    ``start:step:stop``. String matrices only split on commas.
    """

    if text is None:
        return []
    if isinstance(text, bool):
        text = int(text)
    rows: Matrix = []
    for line in _ROW_SEPARATOR.split(str(text)):
        if not line.strip():
            continue
        if kind is str:
            rows.append([part.strip() for part in line.split(",")])
            continue
        values: List[Any] = []
        for part in _NUMERIC_FIELD_SEPARATOR.split(line.strip()):
            if not part:
                continue
            try:
                values.extend(_expand_field(part, kind))
            except ValueError as exc:
                raise ConfigError(f"Invalid condition value '{part}' in '{text}'") from exc
        if values:
            rows.append(values)
    return rows


def matrix_limits(*matrices: Matrix) -> Tuple[int, int]:
    """Largest row and column counts over *matrices*, at least ``(1, 1)``."""

    rows, cols = 1, 1
    for matrix in matrices:
        rows = max(rows, len(matrix))
        for values in matrix:
            cols = max(cols, len(values))
    return rows, cols


def pad_matrix(matrix: Matrix, rows: int, cols: int, fill: Any) -> Matrix:
    """Pad *matrix* to ``rows x cols`` by repeating last values."""

    if not matrix:
        return [[fill] * cols for _ in range(rows)]
    padded: Matrix = []
    for r in range(rows):
        source = matrix[min(r, len(matrix) - 1)] or [fill]
        padded.append([source[min(c, len(source) - 1)] for c in range(cols)])
    return padded


@dataclass
class Stimulus:
    name: str
    start: str = "0"
    duration: str = "0"
    amplitude: str = "0"
    onset_expr: str = ""
    offset_expr: str = ""
    repetitions: str = "1"
    period: str = "0"
    active: bool = True
    _matrices: Dict[str, Matrix] = field(default_factory=dict, init=False, repr=False)

    _FIELDS = (
        ("start", float, 0.0),
        ("duration", float, 0.0),
        ("amplitude", float, 0.0),
        ("onset_expr", str, ""),
        ("offset_expr", str, ""),
        ("repetitions", int, 1),
        ("period", float, 0.0),
    )

    def parse(self) -> List[Matrix]:
        self._matrices = {key: parse_matrix(getattr(self, key), kind) for key, kind, _ in self._FIELDS}
        return list(self._matrices.values())

    def pad(self, rows: int, cols: int) -> None:
        for key, _, fill in self._FIELDS:
            self._matrices[key] = pad_matrix(self._matrices.get(key, []), rows, cols, fill)

    def waveform(self, time: np.ndarray, row: int, col: int) -> np.ndarray:
        values = {key: matrix[row][col] for key, matrix in self._matrices.items()}
        return stimulus_waveform(
            time,
            start=values["start"],
            duration=values["duration"],
            amplitude=values["amplitude"],
            repeats=values["repetitions"],
            period=values["period"],
            onset_expr=values["onset_expr"],
            offset_expr=values["offset_expr"],
        )


@dataclass
class Waveform:
    name: str
    expr: str
    active: bool = True


@dataclass
class Summary:
    name: str
    expr_x: str = ""
    expr_y: str = ""
    start_x: str = "0"
    duration_x: str = "0"
    start_y: str = "0"
    duration_y: str = "0"
    normalization: str = "none"
    active: bool = True
    _matrices: Dict[str, Matrix] = field(default_factory=dict, init=False, repr=False)

    _FIELDS = (
        ("expr_x", str, ""),
        ("expr_y", str, ""),
        ("start_x", float, 0.0),
        ("duration_x", float, 0.0),
        ("start_y", float, 0.0),
        ("duration_y", float, 0.0),
    )

    def __post_init__(self) -> None:
        if self.normalization not in SUMMARY_NORMALIZATIONS:
            raise ConfigError(f"Unknown summary normalization '{self.normalization}'")

    def parse(self) -> None:
        self._matrices = {key: parse_matrix(getattr(self, key), kind) for key, kind, _ in self._FIELDS}

    def pad(self, rows: int, cols: int) -> None:
        for key, _, fill in self._FIELDS:
            self._matrices[key] = pad_matrix(self._matrices.get(key, []), rows, cols, fill)

    def value(self, key: str, row: int, col: int) -> Any:
        return self._matrices[key][row][col]


@dataclass
class ReferenceData:
    """Tabulated reference traces paired into ``y(x)`` column pairs."""

    name: str
    columns: List[np.ndarray]
    titles: List[str] = field(default_factory=list)
    variable_set_index: int = 0
    row: int = 0
    column: int = 0
    x0: float = 0.0
    normalization: str = "none"
    scale: float = 1.0
    weight: float = 1.0

    def __post_init__(self) -> None:
        if self.normalization not in NORMALIZATIONS:
            raise ConfigError(f"Unknown reference normalization '{self.normalization}'")
        self.columns = [np.asarray(column, dtype=float) for column in self.columns]

    @classmethod
    def from_frame(cls, name: str, frame: pd.DataFrame, **kwargs: Any) -> "ReferenceData":
        # Positional access: XYXY tables repeat their X title.
        columns = [frame.iloc[:, idx].dropna().to_numpy(dtype=float) for idx in range(frame.shape[1])]
        return cls(name=name, columns=columns, titles=[str(title) for title in frame.columns], **kwargs)

    @classmethod
    def from_file(cls, name: str, path: Union[str, Path], **kwargs: Any) -> "ReferenceData":
        """Read a whitespace delimited table whose first line holds titles."""

        with open(path, "r", encoding="utf8") as handle:
            header = handle.readline().rstrip("\r\n")
        titles = header.split("\t") if "\t" in header else header.split()
        frame = pd.read_csv(path, sep=r"\s+", header=None, skiprows=1, engine="python")
        frame = frame.apply(pd.to_numeric, errors="coerce").dropna(how="all")
        if len(titles) != frame.shape[1]:
            raise ConfigError(f"Reference file '{path}' has {len(titles)} titles for {frame.shape[1]} columns")
        frame.columns = [title.strip() for title in titles]
        return cls.from_frame(name, frame, **kwargs)

    def column_pairs_xy(self) -> List[Tuple[int, int]]:
        num_columns = len(self.columns)
        if num_columns == 0:
            return []
        if num_columns % 2 == 0 and len(self.titles) > 2 and self.titles[0] == self.titles[2]:
            return [(i, i + 1) for i in range(0, num_columns - 1, 2)]
        return [(0, i) for i in range(1, num_columns)]


@dataclass
class ConditionCell:
    """Simulation of one ``(row, col)`` condition and its per-variable-set results."""

    row: int
    col: int
    time: np.ndarray
    end_time: float
    weight: np.ndarray
    mask: np.ndarray
    stimuli: Dict[str, np.ndarray]
    epochs: List[Epoch]
    rng: np.random.Generator
    probability: List[np.ndarray] = field(default_factory=list)
    events: List[List[EventChain]] = field(default_factory=list)
    waveforms: List[Dict[str, np.ndarray]] = field(default_factory=list)
    references: List[Dict[str, AlignedReference]] = field(default_factory=list)

    @property
    def num_pts(self) -> int:
        return int(self.time.size)

    def probability_buffer(self, variable_set: int, num_states: int) -> np.ndarray:
        while len(self.probability) <= variable_set:
            self.probability.append(np.zeros((0, 0), dtype=float))
        self.probability[variable_set] = np.zeros((self.num_pts, num_states), dtype=float)
        return self.probability[variable_set]

    def state_probability(self, variable_set: int, num_states: int) -> Optional[np.ndarray]:
        if variable_set >= len(self.probability):
            return None
        P = self.probability[variable_set]
        if P.shape != (self.num_pts, num_states):
            return None
        return P

    def event_chains(self, variable_set: int) -> List[EventChain]:
        while len(self.events) <= variable_set:
            self.events.append([])
        return self.events[variable_set]

    def waveform_map(self, variable_set: int) -> Dict[str, np.ndarray]:
        while len(self.waveforms) <= variable_set:
            self.waveforms.append({})
        return self.waveforms[variable_set]

    def reference_map(self, variable_set: int) -> Dict[str, AlignedReference]:
        while len(self.references) <= variable_set:
            self.references.append({})
        return self.references[variable_set]

    def to_frame(self, variable_set: int = 0, state_names: Sequence[str] = ()) -> pd.DataFrame:
        data: Dict[str, np.ndarray] = {
            "t": self.time,
            "weight": self.weight,
            "mask": self.mask,
        }
        data.update(self.stimuli)
        P = self.state_probability(variable_set, len(state_names)) if state_names else None
        if P is not None:
            for idx, name in enumerate(state_names):
                data[name] = P[:, idx]
        if variable_set < len(self.waveforms):
            data.update(self.waveforms[variable_set])
        return pd.DataFrame(data)


@dataclass
class SummaryState:
    """Per-protocol results of one summary."""

    first_x: np.ndarray
    num_x: np.ndarray
    first_y: np.ndarray
    num_y: np.ndarray
    data_x: List[np.ndarray] = field(default_factory=list)
    data_y: List[np.ndarray] = field(default_factory=list)
    references: List[List[Optional[AlignedReference]]] = field(default_factory=list)

    def reset(self, variable_set: int, rows: int, cols: int) -> None:
        while len(self.data_x) <= variable_set:
            self.data_x.append(np.zeros((rows, cols), dtype=float))
        while len(self.data_y) <= variable_set:
            self.data_y.append(np.zeros((rows, cols), dtype=float))
        self.data_x[variable_set] = np.zeros((rows, cols), dtype=float)
        self.data_y[variable_set] = np.zeros((rows, cols), dtype=float)
        while len(self.references) <= variable_set:
            self.references.append([])
        self.references[variable_set] = [None] * rows


class StimulusClampProtocol:
    """Grid of stimulus conditions simulated against one kinetic model."""

    def __init__(
        self,
        name: str = "",
        start: str = "0",
        duration: str = "1",
        sample_interval: str = "0.001",
        weight: str = "1",
        start_equilibrated: bool = False,
        stimuli: Sequence[Stimulus] = (),
        waveforms: Sequence[Waveform] = (),
        summaries: Sequence[Summary] = (),
        reference_data: Sequence[ReferenceData] = (),
    ):
        self.name = name
        self.start = start
        self.duration = duration
        self.sample_interval = sample_interval
        self.weight = weight
        self.start_equilibrated = bool(start_equilibrated)
        self.stimuli: List[Stimulus] = list(stimuli)
        self.waveforms: List[Waveform] = list(waveforms)
        self.summaries: List[Summary] = list(summaries)
        self.reference_data: List[ReferenceData] = list(reference_data)
        self.cells: List[List[ConditionCell]] = []
        self.summary_states: Dict[str, SummaryState] = {}
        self.state_names: List[str] = []

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], base_dir: Union[str, Path, None] = None) -> "StimulusClampProtocol":
        root = Path(base_dir) if base_dir is not None else Path(".")
        references: List[ReferenceData] = []
        for item in payload.get("reference_data", []):
            options = {
                "variable_set_index": int(item.get("variable_set", 0)),
                "row": int(item.get("row", 0)),
                "column": int(item.get("column", 0)),
                "x0": float(item.get("x0", 0.0)),
                "normalization": str(item.get("normalization", "none")),
                "scale": float(item.get("scale", 1.0)),
                "weight": float(item.get("weight", 1.0)),
            }
            if "file" in item:
                path = Path(item["file"])
                if not path.is_absolute():
                    path = root / path
                references.append(ReferenceData.from_file(str(item["name"]), path, **options))
            else:
                references.append(
                    ReferenceData(
                        name=str(item["name"]),
                        columns=[np.asarray(column, dtype=float) for column in item.get("columns", [])],
                        titles=[str(title) for title in item.get("titles", [])],
                        **options,
                    )
                )
        return cls(
            name=str(payload.get("name", "")),
            start=str(payload.get("start", "0")),
            duration=str(payload.get("duration", "1")),
            sample_interval=str(payload.get("sample_interval", "0.001")),
            weight=str(payload.get("weight", "1")),
            start_equilibrated=bool(payload.get("start_equilibrated", False)),
            stimuli=[Stimulus(**{k: (v if k in ("name", "active") else str(v)) for k, v in item.items()})
                     for item in payload.get("stimuli", [])],
            waveforms=[Waveform(**item) for item in payload.get("waveforms", [])],
            summaries=[Summary(**item) for item in payload.get("summaries", [])],
            reference_data=references,
        )

    # Lookup helpers

    def stimulus(self, name: str) -> Optional[Stimulus]:
        return next((item for item in self.stimuli if item.name == name), None)

    def waveform(self, name: str) -> Optional[Waveform]:
        return next((item for item in self.waveforms if item.name == name), None)

    def summary(self, name: str) -> Optional[Summary]:
        return next((item for item in self.summaries if item.name == name), None)

    def references(self, name: str) -> List[ReferenceData]:
        return [item for item in self.reference_data if item.name == name]

    def active_summaries(self) -> List[Summary]:
        return [summary for summary in self.summaries if summary.active]

    @property
    def rows(self) -> int:
        return len(self.cells)

    @property
    def cols(self) -> int:
        return len(self.cells[0]) if self.cells else 0

    def iter_cells(self):
        for cells in self.cells:
            yield from cells

    # Initialisation

    def init(self, registry: UniqueEpochRegistry, state_names: Sequence[str], seed: SeedLike = None) -> None:
        """Build every condition cell and register its epochs."""

        self.state_names = list(state_names)
        starts = parse_matrix(self.start)
        durations = parse_matrix(self.duration)
        intervals = parse_matrix(self.sample_interval)
        weights = parse_matrix(self.weight)
        stimuli = [stimulus for stimulus in self.stimuli if stimulus.active]
        summaries = self.active_summaries()
        matrices = [starts, durations, intervals, weights]
        for stimulus in stimuli:
            matrices.extend(stimulus.parse())
        for summary in summaries:
            summary.parse()
        rows, cols = matrix_limits(*matrices)
        starts = pad_matrix(starts, rows, cols, 0.0)
        durations = pad_matrix(durations, rows, cols, 0.0)
        intervals = pad_matrix(intervals, rows, cols, 0.0)
        weights = pad_matrix(weights, rows, cols, 1.0)
        for stimulus in stimuli:
            stimulus.pad(rows, cols)
        self.summary_states = {}
        for summary in summaries:
            summary.pad(rows, cols)
            shape = (rows, cols)
            self.summary_states[summary.name] = SummaryState(
                first_x=np.zeros(shape, dtype=int),
                num_x=np.zeros(shape, dtype=int),
                first_y=np.zeros(shape, dtype=int),
                num_y=np.zeros(shape, dtype=int),
            )

        sequence = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
        cell_seeds = sequence.spawn(rows * cols)
        self.cells = []
        for row in range(rows):
            cells: List[ConditionCell] = []
            for col in range(cols):
                start = float(starts[row][col])
                duration = float(durations[row][col])
                dt = float(intervals[row][col])
                if dt <= 0.0:
                    raise ConfigError(f"Protocol '{self.name}' has non-positive sample interval {dt!r} at ({row},{col})")
                if duration < 0.0:
                    raise ConfigError(f"Protocol '{self.name}' has negative duration {duration!r} at ({row},{col})")
                num_steps = int(math.floor(duration / dt + _RANGE_TOL))
                time = np.linspace(start, start + num_steps * dt, num_steps + 1)
                num_pts = time.size
                weight = np.full(num_pts, float(weights[row][col]))
                mask = np.zeros(num_pts, dtype=float)
                rendered: Dict[str, np.ndarray] = {}
                for stimulus in stimuli:
                    values = stimulus.waveform(time, row, col)
                    special = stimulus.name.lower()
                    if special == "weight":
                        weight += values
                    elif special == "mask":
                        mask += values
                    elif stimulus.name in rendered:
                        rendered[stimulus.name] = rendered[stimulus.name] + values
                    else:
                        rendered[stimulus.name] = values
                epochs = find_epochs(time, start + duration, rendered)
                for epoch in epochs:
                    registry.register(epoch)
                cell = ConditionCell(
                    row=row,
                    col=col,
                    time=time,
                    end_time=start + duration,
                    weight=weight,
                    mask=mask == 0,
                    stimuli=rendered,
                    epochs=epochs,
                    rng=np.random.default_rng(cell_seeds[row * cols + col]),
                )
                for summary in summaries:
                    state = self.summary_states[summary.name]
                    start_x = float(summary.value("start_x", row, col))
                    stop_x = start_x + float(summary.value("duration_x", row, col))
                    state.first_x[row, col], state.num_x[row, col] = find_indexes_in_range(time, start_x, stop_x)
                    start_y = float(summary.value("start_y", row, col))
                    stop_y = start_y + float(summary.value("duration_y", row, col))
                    state.first_y[row, col], state.num_y[row, col] = find_indexes_in_range(time, start_y, stop_y)
                cells.append(cell)
            self.cells.append(cells)
        self._align_cell_references()
        logger.debug("protocol_init name=%s rows=%d cols=%d", self.name, rows, cols)

    def _align_cell_references(self) -> None:
        summary_names = {summary.name for summary in self.summaries}
        rows, cols = self.rows, self.cols
        for reference in self.reference_data:
            if reference.name in summary_names or reference.row >= rows:
                continue
            pairs = reference.column_pairs_xy()
            for offset, (column_x, column_y) in enumerate(pairs):
                col = reference.column + offset
                if col >= cols:
                    break
                cell = self.cells[reference.row][col]
                aligned = align_reference(
                    reference.columns[column_x],
                    reference.columns[column_y],
                    cell.time,
                    x0=reference.x0,
                    normalization=reference.normalization,
                    scale=reference.scale,
                    weight=reference.weight,
                )
                if aligned is not None:
                    cell.reference_map(reference.variable_set_index)[reference.name] = aligned

    def align_summary_references(self) -> None:
        """Align summary reference data onto each summary's X values."""

        rows = self.rows
        for reference in self.reference_data:
            summary = self.summary(reference.name)
            if summary is None or not summary.active:
                continue
            state = self.summary_states[summary.name]
            variable_set = reference.variable_set_index
            if variable_set >= len(state.data_x):
                continue
            data_x = state.data_x[variable_set]
            for offset, (column_x, column_y) in enumerate(reference.column_pairs_xy()):
                row = reference.row + offset
                if row >= rows:
                    break
                state.references[variable_set][row] = align_reference(
                    reference.columns[column_x],
                    reference.columns[column_y],
                    data_x[row],
                    x0=reference.x0,
                    normalization=reference.normalization,
                    scale=reference.scale,
                    weight=reference.weight,
                )

    # Waveform accessors

    def simulation_waveform(
        self, name: str, cell: ConditionCell, variable_set: int
    ) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """State probability, stimulus or derived waveform called *name*."""

        if name in self.state_names:
            P = cell.state_probability(variable_set, len(self.state_names))
            if P is None:
                return None
            return cell.time, P[:, self.state_names.index(name)]
        if name in cell.stimuli:
            return cell.time, cell.stimuli[name]
        if variable_set < len(cell.waveforms) and name in cell.waveforms[variable_set]:
            return cell.time, cell.waveforms[variable_set][name]
        return None

    def reference_waveform(
        self, name: str, cell: ConditionCell, variable_set: int
    ) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        if variable_set >= len(cell.references):
            return None
        aligned = cell.references[variable_set].get(name)
        if aligned is None:
            return None
        return cell.time[aligned.first : aligned.first + aligned.count], aligned.waveform

    def summary_waveform(self, name: str, variable_set: int, row: int) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        state = self.summary_states.get(name)
        if state is None or variable_set >= len(state.data_y):
            return None
        return state.data_x[variable_set][row], state.data_y[variable_set][row]

    def summary_reference_waveform(
        self, name: str, variable_set: int, row: int
    ) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        state = self.summary_states.get(name)
        if state is None or variable_set >= len(state.references) or row >= len(state.references[variable_set]):
            return None
        aligned = state.references[variable_set][row]
        if aligned is None:
            return None
        x = state.data_x[variable_set][row]
        return x[aligned.first : aligned.first + aligned.count], aligned.waveform


__all__ = [
    "ConditionCell",
    "ReferenceData",
    "Stimulus",
    "StimulusClampProtocol",
    "Summary",
    "SummaryState",
    "Waveform",
    "matrix_limits",
    "pad_matrix",
    "parse_matrix",
]
