"""Public exports for the stimulus clamp simulation runtime."""

from .conditions import ConditionCell, ReferenceData, Stimulus, StimulusClampProtocol, Summary, Waveform
from .errors import ConfigError, ExpressionError, ModelError, NumericsError, StimClampError
from .model import EpochKinetics, ExpressionKineticModel, KineticModel, ModelParameter, Transition
from .monte_carlo import write_dwell_times
from .optimizer import OptimizationResult, optimize
from .options import MONTE_CARLO, SPECTRAL, SimulationOptions
from .simulator import CancellationToken, PassResult, StimulusClampSimulator

__all__ = [
    "MONTE_CARLO",
    "SPECTRAL",
    "CancellationToken",
    "ConditionCell",
    "ConfigError",
    "EpochKinetics",
    "ExpressionError",
    "ExpressionKineticModel",
    "KineticModel",
    "ModelError",
    "ModelParameter",
    "NumericsError",
    "OptimizationResult",
    "PassResult",
    "ReferenceData",
    "SimulationOptions",
    "StimClampError",
    "Stimulus",
    "StimulusClampProtocol",
    "StimulusClampSimulator",
    "Summary",
    "Transition",
    "Waveform",
    "optimize",
    "write_dwell_times",
]
