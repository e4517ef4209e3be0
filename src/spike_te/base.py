from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy import ndarray


class EmbeddingDepthError(ValueError):
    """Raised when a destination or source embedding depth is below one."""


class EstimatorInvariantError(RuntimeError):
    """Raised when a geometric invariant of the estimator is violated.

    These conditions cannot arise from valid input; seeing one means the
    event extraction or the neighbour search is defective, so the whole
    computation is aborted instead of returning a wrong number.
    """


class EstimatorOption(Enum):
    """Recognized estimator options."""

    K = "k"
    L = "l"
    KNNS = "knns"
    TRIM_TO_POSITIVE_TIMES = "trim_to_positive_times"
    NORM = "norm"


NORM_TYPES = ("max", "euclidean")


class EstimatorConfig:
    """
    Configuration for the spiking transfer entropy estimator.

    The configuration is validated on construction and is not modified
    afterwards; use `replace` to derive a new one.
    """

    def __init__(
        self,
        k: int = 1,  # Destination history length (number of past destination spikes)
        l: int = 1,  # Source history length (number of past source spikes)
        knns: int = 4,
        trim_to_positive_times: bool = False,
        norm: str = "max",
    ):
        """
        Initialize estimator configuration.

        Args:
            k: Destination embedding depth; the destination history holds k-1 intervals.
            l: Source embedding depth; the source history holds l intervals.
            knns: Number of nearest neighbours used to set the adaptive radii.
            trim_to_positive_times: Correct the time-to-next-spike search window
                where it extends into negative times.
            norm: Norm used inside each variable group, "max" or "euclidean".
        """
        if k < 1 or l < 1:
            raise EmbeddingDepthError(
                f"Unsupported embedding depth: k={k} and l={l} must both be at least 1"
            )
        if knns < 1:
            raise ValueError(f"Number of nearest neighbours must be positive, got {knns}")
        if norm not in NORM_TYPES:
            raise ValueError(f"Unknown norm type: {norm}")

        self.k = int(k)
        self.l = int(l)
        self.knns = int(knns)
        self.trim_to_positive_times = bool(trim_to_positive_times)
        self.norm = norm

    @classmethod
    def from_options(
        cls, options: Mapping[Union[EstimatorOption, str], Any]
    ) -> "EstimatorConfig":
        """Build a configuration from a mapping of options to values."""
        values = {}
        for key, value in options.items():
            option = key if isinstance(key, EstimatorOption) else EstimatorOption(key)
            values[option.value] = value
        return cls(**values)

    def get(self, option: EstimatorOption) -> Any:
        """Return the value of a recognized option."""
        return getattr(self, option.value)

    def replace(self, **changes) -> "EstimatorConfig":
        """Return a new validated configuration with the given fields changed."""
        values = {option.value: self.get(option) for option in EstimatorOption}
        values.update(changes)
        return EstimatorConfig(**values)

    def __eq__(self, other) -> bool:
        if not isinstance(other, EstimatorConfig):
            return NotImplemented
        return all(self.get(option) == other.get(option) for option in EstimatorOption)

    def __str__(self) -> str:
        """String representation of the estimator configuration."""
        return (
            f"EstimatorConfig(k={self.k}, l={self.l}, knns={self.knns}, "
            f"trim_to_positive_times={self.trim_to_positive_times}, norm={self.norm})"
        )


@dataclass
class EmpiricalNullDistribution:
    """
    Distribution of a statistic under permutation of the source trials.

    Attributes:
        distribution: Values of the statistic for each permutation.
        actual_value: Value of the statistic for the unpermuted data.
    """

    distribution: ndarray
    actual_value: float

    def __post_init__(self):
        self.distribution = np.asarray(self.distribution, dtype=np.float64)

    @property
    def p_value(self) -> float:
        """Fraction of permutations at least as large as the actual value."""
        if len(self.distribution) == 0:
            return float("nan")
        return float(np.mean(self.distribution >= self.actual_value))


class TransferEntropyCalculatorSpiking:
    """Base class for transfer entropy calculators operating on spike trains."""

    def __init__(self, config: Optional[EstimatorConfig] = None, **options):
        """
        Initialize the calculator.

        Args:
            config: Estimator configuration. If provided, keyword options are ignored.
            **options: Keyword values used to build an EstimatorConfig.
        """
        if config is not None:
            self.config = config
        else:
            self.config = EstimatorConfig(**options)

    def initialise(self, k: Optional[int] = None, l: Optional[int] = None) -> None:
        raise NotImplementedError("TransferEntropyCalculatorSpiking is an abstract class.")

    def set_observations(self, source: ndarray, destination: ndarray) -> None:
        """Supply a single trial and finalise the observations."""
        self.start_add_observations()
        self.add_observations(source, destination)
        self.finalise_add_observations()

    def start_add_observations(self) -> None:
        raise NotImplementedError("TransferEntropyCalculatorSpiking is an abstract class.")

    def add_observations(self, source: ndarray, destination: ndarray) -> None:
        raise NotImplementedError("TransferEntropyCalculatorSpiking is an abstract class.")

    def add_trials(self, trials: Iterable[Tuple[ndarray, ndarray]]) -> None:
        """Add several (source, destination) trials in order."""
        for source, destination in trials:
            self.add_observations(source, destination)

    def finalise_add_observations(self) -> None:
        raise NotImplementedError("TransferEntropyCalculatorSpiking is an abstract class.")

    def compute_average_transfer_entropy(self) -> float:
        raise NotImplementedError("TransferEntropyCalculatorSpiking is an abstract class.")

    def compute_local_of_previous_observations(self) -> ndarray:
        raise NotImplementedError("TransferEntropyCalculatorSpiking is an abstract class.")

    def compute_significance(
        self, num_permutations_or_orderings: Union[int, Sequence[Sequence[int]]]
    ) -> EmpiricalNullDistribution:
        raise NotImplementedError("TransferEntropyCalculatorSpiking is an abstract class.")
