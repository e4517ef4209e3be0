import numpy as np
from numpy import ndarray
from typing import Iterator, List, Optional, Tuple, Union


def _make_rng(random_seed: Optional[Union[int, np.random.RandomState]]):
    if random_seed is None:
        return np.random
    if isinstance(random_seed, np.random.RandomState):
        return random_seed
    return np.random.RandomState(random_seed)


class PoissonSpikeGenerator:
    """Generates spike times of a homogeneous Poisson process."""

    def __init__(
        self,
        rate_hz: float = 1.0,
        duration_sec: float = 100.0,
        random_seed: Optional[Union[int, np.random.RandomState]] = None,
    ):
        """
        Initialize the Poisson spike generator.

        Args:
            rate_hz: Firing rate in Hz.
            duration_sec: Duration of each generated trial in seconds.
            random_seed: Random seed or RandomState for reproducibility.
        """
        if rate_hz <= 0:
            raise ValueError(f"Firing rate must be positive, got {rate_hz}")
        if duration_sec <= 0:
            raise ValueError(f"Duration must be positive, got {duration_sec}")

        self.rate_hz = rate_hz
        self.duration_sec = duration_sec
        self.rng = _make_rng(random_seed)

    def generate(self, start_time_sec: float = 0.0) -> ndarray:
        """
        Generate the spike times of one trial.

        Args:
            start_time_sec: Time of the start of the trial.

        Returns:
            Sorted spike times in seconds within [start, start + duration).
        """
        # Draw enough intervals to cover the duration with high probability
        expected = self.rate_hz * self.duration_sec
        num_intervals = int(expected + 5 * np.sqrt(expected) + 10)
        intervals = self.rng.exponential(1.0 / self.rate_hz, size=num_intervals)
        spike_times = np.cumsum(intervals)
        while spike_times[-1] < self.duration_sec:
            more = self.rng.exponential(1.0 / self.rate_hz, size=num_intervals)
            spike_times = np.concatenate([spike_times, spike_times[-1] + np.cumsum(more)])
        return start_time_sec + spike_times[spike_times < self.duration_sec]

    def generate_trials(self, num_trials: int) -> List[ndarray]:
        """Generate independent trials, each starting at time zero."""
        return [self.generate() for _ in range(num_trials)]


def delayed_copy(
    spike_times: ndarray,
    delay_sec: float,
    jitter_sec: float = 0.0,
    random_seed: Optional[Union[int, np.random.RandomState]] = None,
) -> ndarray:
    """
    Build a spike train driven by another one.

    Args:
        spike_times: Driving spike times.
        delay_sec: Fixed delay added to every spike.
        jitter_sec: Standard deviation of Gaussian jitter added to every spike.
        random_seed: Random seed or RandomState for the jitter.

    Returns:
        Sorted spike times of the driven train.
    """
    spike_times = np.asarray(spike_times, dtype=np.float64)
    shifted = spike_times + delay_sec
    if jitter_sec > 0:
        rng = _make_rng(random_seed)
        shifted = shifted + rng.normal(0.0, jitter_sec, size=len(shifted))
    return np.sort(shifted)


def coupled_trial_generator(
    num_trials: int,
    rate_hz: float = 1.0,
    duration_sec: float = 100.0,
    delay_sec: float = 0.1,
    jitter_sec: float = 0.0,
    random_seed: Optional[int] = None,
) -> Iterator[Tuple[ndarray, ndarray]]:
    """
    Generate (source, destination) trials where the destination follows the source.

    Args:
        num_trials: Number of trials.
        rate_hz: Source firing rate in Hz.
        duration_sec: Duration of each trial in seconds.
        delay_sec: Delay from each source spike to its destination spike.
        jitter_sec: Standard deviation of the destination spike jitter.
        random_seed: Random seed for reproducibility.

    Yields:
        Tuple of (source spike times, destination spike times).
    """
    rng = np.random.RandomState(random_seed)
    generator = PoissonSpikeGenerator(
        rate_hz=rate_hz, duration_sec=duration_sec, random_seed=rng
    )
    for _ in range(num_trials):
        source = generator.generate()
        yield source, delayed_copy(source, delay_sec, jitter_sec, random_seed=rng)


def independent_trial_generator(
    num_trials: int,
    source_rate_hz: float = 1.0,
    dest_rate_hz: float = 1.0,
    duration_sec: float = 100.0,
    random_seed: Optional[int] = None,
) -> Iterator[Tuple[ndarray, ndarray]]:
    """
    Generate (source, destination) trials of two independent Poisson processes.

    Args:
        num_trials: Number of trials.
        source_rate_hz: Source firing rate in Hz.
        dest_rate_hz: Destination firing rate in Hz.
        duration_sec: Duration of each trial in seconds.
        random_seed: Random seed for reproducibility.

    Yields:
        Tuple of (source spike times, destination spike times).
    """
    rng = np.random.RandomState(random_seed)
    source_generator = PoissonSpikeGenerator(source_rate_hz, duration_sec, random_seed=rng)
    dest_generator = PoissonSpikeGenerator(dest_rate_hz, duration_sec, random_seed=rng)
    for _ in range(num_trials):
        yield source_generator.generate(), dest_generator.generate()
