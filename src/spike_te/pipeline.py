from numpy import ndarray
from typing import Iterable, Iterator, List, Optional, Tuple

from spike_te.base import EstimatorConfig
from spike_te.diagnostics import EstimatorDiagnostics
from spike_te.estimator import TransferEntropyCalculatorSpikingIntegration

Trial = Tuple[ndarray, ndarray]


def spiking_transfer_entropy(
    trials: Iterable[Trial],
    config: Optional[EstimatorConfig] = None,
    diagnostics: Optional[EstimatorDiagnostics] = None,
    **options,
) -> float:
    """
    Estimate the transfer entropy from source to destination spike trains.

    Args:
        trials: Iterable of (source, destination) spike time pairs, one per trial.
        config: Estimator configuration. If provided, options are ignored.
        diagnostics: Hook called at each decision point of the computation.
        **options: Keyword values used to build an EstimatorConfig
            (k, l, knns, trim_to_positive_times, norm).

    Returns:
        Transfer entropy in nats per unit time.
    """
    if config is None:
        config = EstimatorConfig(**options)
    calculator = TransferEntropyCalculatorSpikingIntegration(
        config=config, diagnostics=diagnostics
    )
    calculator.start_add_observations()
    calculator.add_trials(trials)
    calculator.finalise_add_observations()
    return calculator.compute_average_transfer_entropy()


def transfer_entropy_generator(
    trials: Iterable[Trial],
    config: Optional[EstimatorConfig] = None,
    min_trials: int = 1,
    **options,
) -> Iterator[Tuple[int, float]]:
    """
    Lazily estimate transfer entropy as trials accumulate.

    After each new trial (once at least min_trials have been seen) the
    estimate is recomputed over all trials seen so far.

    Args:
        trials: Iterable of (source, destination) spike time pairs.
        config: Estimator configuration. If provided, options are ignored.
        min_trials: Number of trials to collect before the first estimate.
        **options: Keyword values used to build an EstimatorConfig.

    Yields:
        Tuple of (number of trials used, transfer entropy estimate).
    """
    if config is None:
        config = EstimatorConfig(**options)

    seen: List[Trial] = []
    for source, destination in trials:
        seen.append((source, destination))
        if len(seen) < min_trials:
            continue
        yield len(seen), spiking_transfer_entropy(seen, config=config)
