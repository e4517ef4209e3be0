"""
Continuous-time transfer entropy between spike trains.

The estimator follows the integration formulation: each time the destination
fires, the bias-corrected log probability of that spike given the source and
destination histories is compared with the log probability given the
destination history only. Probabilities are estimated from nearest-neighbour
counts with adaptive radii (Kraskov-Stoegbauer-Grassberger style), and the sum
of contributions is divided by the total observed time.
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy import ndarray
from scipy.special import digamma

from spike_te.base import (
    EmpiricalNullDistribution,
    EstimatorConfig,
    EstimatorInvariantError,
    TransferEntropyCalculatorSpiking,
)
from spike_te.diagnostics import EstimatorDiagnostics
from spike_te.events import EmbeddedEvent, EventStore, NextSpiker, extract_events
from spike_te.spatial import KdTree, UnivariateNearestNeighbourSearcher

logger = logging.getLogger(__name__)


def search_area_ratio(
    time_to_next: float, source_offset: float, r_time: float, r_source: float
) -> Tuple[float, float]:
    """
    Correct the time-to-next-spike search window for times that cannot occur.

    The next spike can neither precede the previous destination spike (time 0)
    nor the previous source spike. Within the joint window of time to next
    spike and previous source spike time, only the part where the next spike
    follows the source spike can hold any points.

    Args:
        time_to_next: Time from the previous destination spike to the next spike.
        source_offset: Previous destination spike time minus previous source
            spike time (entry 0 of the source history).
        r_time: Search radius on the time to next spike.
        r_source: Search radius on the source history.

    Returns:
        Tuple of (ratio of the reachable window area to the full window area,
        lower radius on the time to next spike after trimming).
    """
    next_lower_original = max(time_to_next - r_time, 0.0)
    next_upper = time_to_next + r_time
    prev_source_upper_original = -source_offset + r_source
    prev_source_lower = -source_offset - r_source

    next_lower = max(next_lower_original, prev_source_lower)
    prev_source_upper = min(next_upper, prev_source_upper_original)
    denominator = (next_upper - next_lower_original) * (
        prev_source_upper_original - prev_source_lower
    )

    if next_upper < prev_source_lower:
        raise EstimatorInvariantError(
            "Encountered a next destination spike before the previous source spike"
        )
    if prev_source_upper < next_lower or denominator <= 0:
        # Windows do not overlap, or are too thin to need any correction
        return 1.0, r_time

    area = (next_upper - next_lower) * (prev_source_upper - prev_source_lower) - 0.5 * (
        prev_source_upper - next_lower
    ) ** 2
    if next_lower <= time_to_next - r_time:
        # Lower edge untouched; keep the radius the neighbours were measured with
        return area / denominator, r_time
    return area / denominator, time_to_next - next_lower


class TransferEntropyCalculatorSpikingIntegration(TransferEntropyCalculatorSpiking):
    """
    Transfer entropy between two spike trains via the integration formulation.

    Usage:
        calc = TransferEntropyCalculatorSpikingIntegration(k=2, l=1)
        calc.start_add_observations()
        calc.add_observations(source_times, destination_times)
        calc.finalise_add_observations()
        te = calc.compute_average_transfer_entropy()
    """

    def __init__(
        self,
        config: Optional[EstimatorConfig] = None,
        k: int = 1,
        l: int = 1,
        knns: int = 4,
        trim_to_positive_times: bool = False,
        norm: str = "max",
        diagnostics: Optional[EstimatorDiagnostics] = None,
    ):
        """
        Initialize the calculator.

        Args:
            config: Estimator configuration. If provided, the other options are ignored.
            k: Destination embedding depth.
            l: Source embedding depth.
            knns: Number of nearest neighbours in the full joint space.
            trim_to_positive_times: Apply the search window boundary correction.
            norm: Norm used within each variable group, "max" or "euclidean".
            diagnostics: Hook called at each decision point of the computation.
        """
        super().__init__(
            config=config,
            k=k,
            l=l,
            knns=knns,
            trim_to_positive_times=trim_to_positive_times,
            norm=norm,
        )
        self.diagnostics = diagnostics if diagnostics is not None else EstimatorDiagnostics()
        self._reset()

    def _reset(self) -> None:
        self.store: Optional[EventStore] = None
        self._adding = False
        self._finalised = False

        self.joint_trees = {}
        self.history_trees = {}
        self.dest_next_tree: Optional[KdTree] = None
        self.dest_history_tree: Optional[KdTree] = None
        self.dest_time_searcher: Optional[UnivariateNearestNeighbourSearcher] = None
        self._arrays = {}
        self._dest_only_times: Optional[ndarray] = None

        self._last_average: Optional[float] = None
        self.last_total_elapsed_time: Optional[float] = None

    def initialise(self, k: Optional[int] = None, l: Optional[int] = None) -> None:
        """
        Discard all observations and search structures.

        Args:
            k: New destination embedding depth, or None to keep the current one.
            l: New source embedding depth, or None to keep the current one.
        """
        changes = {}
        if k is not None:
            changes["k"] = k
        if l is not None:
            changes["l"] = l
        # Validate before discarding anything
        config = self.config.replace(**changes)
        self.config = config
        self._reset()

    def start_add_observations(self) -> None:
        """Start a new set of trials, discarding any earlier observations."""
        self._reset()
        self.store = EventStore(self.config.k, self.config.l)
        self._adding = True

    def add_observations(self, source: ndarray, destination: ndarray) -> None:
        """
        Embed one trial of source and destination spike times.

        Args:
            source: Source spike times; need not be sorted.
            destination: Destination spike times; need not be sorted.
        """
        if not self._adding:
            raise RuntimeError(
                "start_add_observations must be called before adding observations"
            )
        extract_events(
            source,
            destination,
            self.config.k,
            self.config.l,
            self.store,
            trial_index=self.store.num_trials,
            diagnostics=self.diagnostics,
        )

    def finalise_add_observations(self) -> None:
        """Build the search structures over all embedded events."""
        if not self._adding:
            raise RuntimeError(
                "Observations must be started with start_add_observations before finalising"
            )
        norm = self.config.norm

        for tag in NextSpiker:
            source_history, dest_history, time_to_next = self.store.as_arrays(tag)
            self._arrays[tag] = (source_history, dest_history, time_to_next)
            self.joint_trees[tag] = KdTree(
                [source_history, dest_history, time_to_next.reshape(-1, 1)], norm=norm
            )
            self.history_trees[tag] = KdTree([source_history, dest_history], norm=norm)

        dest_only_history, dest_only_times = self.store.dest_only_arrays()
        self._dest_only_times = dest_only_times
        self.dest_next_tree = KdTree(
            [dest_only_history, dest_only_times.reshape(-1, 1)], norm=norm
        )
        if self.config.k == 1:
            self.dest_time_searcher = UnivariateNearestNeighbourSearcher(dest_only_times)
        else:
            self.dest_history_tree = KdTree([dest_only_history], norm=norm)

        self._adding = False
        self._finalised = True
        logger.debug(
            "Built search structures over %d events (%d destination-next, %d source-next) from %d trials",
            len(self.store),
            self.store.num_events(NextSpiker.DESTINATION),
            self.store.num_events(NextSpiker.SOURCE),
            self.store.num_trials,
        )

    @property
    def added_more_than_one_observation_set(self) -> bool:
        """Whether observations came from more than one trial."""
        return self.store is not None and self.store.num_trials > 1

    @property
    def last_average(self) -> Optional[float]:
        """Estimate returned by the last call to compute_average_transfer_entropy."""
        return self._last_average

    def _check_finalised(self) -> None:
        if not self._finalised:
            raise RuntimeError(
                "Observations must be finalised before computing transfer entropy"
            )

    def compute_average_transfer_entropy(self) -> float:
        """
        Compute the average transfer entropy rate over all observations.

        Returns:
            Transfer entropy from source to destination in nats per unit time.
        """
        self._check_finalised()
        knns = self.config.knns
        num_dest_events = self.store.num_events(NextSpiker.DESTINATION)
        if num_dest_events <= knns:
            raise ValueError(
                f"Need more than knns={knns} destination spiking events, "
                f"got {num_dest_events}"
            )

        contribution_sum = 0.0
        total_elapsed_time = 0.0
        for event_index, (locator, event) in enumerate(self.store):
            total_elapsed_time += event.elapsed_time
            if locator.tag is NextSpiker.DESTINATION:
                log_p_source_dest, log_p_dest = self._log_probabilities(
                    event_index, locator.index, event
                )
                contribution_sum += log_p_source_dest - log_p_dest

        estimate = contribution_sum / total_elapsed_time
        self.diagnostics.estimate_complete(contribution_sum, total_elapsed_time, estimate)
        logger.debug(
            "Transfer entropy %.5f nats per unit time over %.5f time units",
            estimate,
            total_elapsed_time,
        )

        self.last_total_elapsed_time = total_elapsed_time
        self._last_average = estimate
        return estimate

    def _log_probabilities(
        self, event_index: int, index: int, event: EmbeddedEvent
    ) -> Tuple[float, float]:
        """
        Bias-corrected log probabilities of one destination spike.

        Args:
            event_index: Chronological index of the event.
            index: Index of the event among destination-next events.
            event: The event.

        Returns:
            Tuple of (log p given source and destination histories,
            log p given destination history).
        """
        knns = self.config.knns
        t = event.time_to_next

        neighbours = self.joint_trees[NextSpiker.DESTINATION].k_nearest(knns, index)
        r_source, r_dest, r_time = np.max([n.norms for n in neighbours], axis=0)
        self.diagnostics.neighbour_radii(event_index, (r_source, r_dest, r_time))

        # Matched source-dest history where the destination spiked later than our window
        dest_next_times = self._arrays[NextSpiker.DESTINATION][2]
        matched = self.history_trees[NextSpiker.DESTINATION].points_within_radii(
            index, [r_source, r_dest], exclude_self=True
        )
        n_dest_greater = int(np.sum(dest_next_times[matched] - t > r_time))

        # Matched history where the source spiked next, at or after the window start
        source_next_times = self._arrays[NextSpiker.SOURCE][2]
        matched = self.history_trees[NextSpiker.SOURCE].points_within_radii(
            [event.source_history, event.dest_history],
            [r_source, r_dest],
            exclude_self=False,
        )
        n_source_greater = int(np.sum(t - source_next_times[matched] <= r_time))

        if self.config.trim_to_positive_times:
            ratio, r_time_lower = search_area_ratio(
                t, event.source_history[0], r_time, r_source
            )
        else:
            ratio, r_time_lower = 1.0, r_time
        self.diagnostics.boundary_correction(event_index, ratio, r_time, r_time_lower)

        if self.config.k > 1:
            matched = self.dest_history_tree.points_within_radii(
                index, [r_dest], exclude_self=True
            )
            differences = self._dest_only_times[matched] - t
            and_greater = -differences <= r_time_lower
            n_dest_and_greater = int(np.sum(and_greater))
            n_dest_matched = int(np.sum(and_greater & (differences <= r_time)))
        else:
            n_dest_matched = self.dest_time_searcher.count_points_within_radii(
                index, r_time, r_time_lower, exclude_self=True
            )
            n_dest_and_greater = self.dest_time_searcher.count_points_within_radius_or_larger(
                index, r_time_lower, exclude_self=True
            )
        self.diagnostics.neighbour_counts(
            event_index, n_source_greater, n_dest_greater, n_dest_matched, n_dest_and_greater
        )

        if n_dest_matched < knns:
            raise EstimatorInvariantError(
                f"Event {event_index}: found {n_dest_matched} matches in the destination "
                f"space but the joint space radius was set by {knns} neighbours"
            )

        n_joint = knns + n_source_greater + n_dest_greater
        if self.config.k > 1:
            log_p_source_dest = (
                digamma(knns) - 2.0 / knns - digamma(n_joint) + 1.0 / n_joint
            )
            log_p_dest = (
                digamma(n_dest_matched)
                - 1.0 / n_dest_matched
                - digamma(n_dest_and_greater)
            )
        else:
            # No destination history: only two variables, as for a mutual information
            log_p_source_dest = digamma(knns) - 1.0 / knns - digamma(n_joint)
            log_p_dest = digamma(n_dest_matched) - digamma(n_dest_and_greater)

        if self.config.trim_to_positive_times:
            log_p_source_dest -= np.log(ratio)

        self.diagnostics.contribution(event_index, log_p_source_dest, log_p_dest)
        return float(log_p_source_dest), float(log_p_dest)

    def compute_local_of_previous_observations(self) -> ndarray:
        """
        Compute local transfer entropy values for the supplied observations.

        When implemented this returns one value per destination-next event, in
        chronological order. Local values are not available for the integration
        estimator yet.

        Raises:
            NotImplementedError: Always.
        """
        raise NotImplementedError(
            "Local values are not implemented for the integration estimator"
        )

    def compute_significance(
        self, num_permutations_or_orderings: Union[int, Sequence[Sequence[int]]]
    ) -> EmpiricalNullDistribution:
        """
        Compute the null distribution of the estimate under permutation.

        When implemented this takes either a number of random permutations or
        explicit orderings of the source trials, recomputes the estimate for
        each and returns an EmpiricalNullDistribution against the actual value.

        Raises:
            NotImplementedError: Always.
        """
        raise NotImplementedError(
            "Permutation significance is not implemented for the integration estimator"
        )
