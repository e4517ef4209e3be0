"""
spike_te: Transfer entropy between spike trains.

This package estimates the directed information flow from a source spike train
to a destination spike train in continuous time, using nearest-neighbour
counts with adaptive radii and bias correction.
"""

import logging

# Version info
__version__ = "0.1.0"

# Import main classes from submodules
from .base import (
    EstimatorConfig,
    EstimatorOption,
    EmbeddingDepthError,
    EstimatorInvariantError,
    EmpiricalNullDistribution,
    TransferEntropyCalculatorSpiking,
)
from .events import NextSpiker, EmbeddedEvent, EventLocator, EventStore, extract_events
from .spatial import KdTree, Neighbour, UnivariateNearestNeighbourSearcher
from .diagnostics import EstimatorDiagnostics, LoggingDiagnostics
from .estimator import TransferEntropyCalculatorSpikingIntegration, search_area_ratio
from .spike_generators import (
    PoissonSpikeGenerator,
    delayed_copy,
    coupled_trial_generator,
    independent_trial_generator,
)

# Import convenience functions
from .pipeline import spiking_transfer_entropy, transfer_entropy_generator

logging.getLogger(__name__).addHandler(logging.NullHandler())

# Define what gets imported with "from spike_te import *"
__all__ = [
    # Configuration and errors
    "EstimatorConfig",
    "EstimatorOption",
    "EmbeddingDepthError",
    "EstimatorInvariantError",
    "EmpiricalNullDistribution",
    # Calculators
    "TransferEntropyCalculatorSpiking",
    "TransferEntropyCalculatorSpikingIntegration",
    "search_area_ratio",
    # Events and search structures
    "NextSpiker",
    "EmbeddedEvent",
    "EventLocator",
    "EventStore",
    "extract_events",
    "KdTree",
    "Neighbour",
    "UnivariateNearestNeighbourSearcher",
    # Diagnostics
    "EstimatorDiagnostics",
    "LoggingDiagnostics",
    # Spike train generators
    "PoissonSpikeGenerator",
    "delayed_copy",
    "coupled_trial_generator",
    "independent_trial_generator",
    # Convenience functions
    "spiking_transfer_entropy",
    "transfer_entropy_generator",
]
