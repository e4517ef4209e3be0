"""
Embedding of pairs of spike trains into "next spike" events.

Every event is taken at a point where we know which of the two processes
fires next: it records the source and destination histories at that point and
the time from the previous destination spike to the next spike.
"""

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np
from numpy import ndarray

from spike_te.base import EstimatorInvariantError
from spike_te.diagnostics import EstimatorDiagnostics

logger = logging.getLogger(__name__)


class NextSpiker(Enum):
    """Which process produced the next spike after an event."""

    DESTINATION = 0
    SOURCE = 1


@dataclass(frozen=True, eq=False)
class EmbeddedEvent:
    """
    One embedded observation.

    Attributes:
        source_history: l source intervals; entry 0 is the time from the most
            recent source spike to the previous destination spike (negative if
            the source spike came after it).
        dest_history: k-1 destination inter-spike intervals, most recent first.
        time_to_next: Time from the previous destination spike to the next spike.
        next_spiker: Process that fires next.
    """

    source_history: ndarray
    dest_history: ndarray
    time_to_next: float
    next_spiker: NextSpiker

    @property
    def elapsed_time(self) -> float:
        """Time covered by this event that follows the previous destination spike."""
        source_offset = self.source_history[0]
        if source_offset < 0:
            # Source spiked after the previous destination spike
            return self.time_to_next + source_offset
        return self.time_to_next


class EventLocator(NamedTuple):
    """Position of a chronological event within its next-spiker partition."""

    tag: NextSpiker
    index: int


class EventStore:
    """
    Events partitioned by next spiker, plus the destination-only view.

    Events are only appended; search structures built over `as_arrays` must
    be rebuilt whenever the store changes.
    """

    def __init__(self, k: int, l: int):
        self.k = k
        self.l = l
        self.events: Dict[NextSpiker, List[EmbeddedEvent]] = {
            tag: [] for tag in NextSpiker
        }
        self.dest_past_and_next: List[Tuple[ndarray, float]] = []
        self.locators: List[EventLocator] = []
        self.num_events_per_trial: List[int] = []

    def append(self, event: EmbeddedEvent) -> EventLocator:
        """Append an event to its partition and return its locator."""
        partition = self.events[event.next_spiker]
        locator = EventLocator(event.next_spiker, len(partition))
        partition.append(event)
        self.locators.append(locator)
        if event.next_spiker is NextSpiker.DESTINATION:
            self.dest_past_and_next.append((event.dest_history, event.time_to_next))
        return locator

    def __getitem__(self, locator: EventLocator) -> EmbeddedEvent:
        return self.events[locator.tag][locator.index]

    def __len__(self) -> int:
        return len(self.locators)

    def __iter__(self):
        for locator in self.locators:
            yield locator, self[locator]

    def num_events(self, tag: NextSpiker) -> int:
        return len(self.events[tag])

    @property
    def num_trials(self) -> int:
        return len(self.num_events_per_trial)

    def as_arrays(self, tag: NextSpiker) -> Tuple[ndarray, ndarray, ndarray]:
        """
        Stack the events of one partition.

        Returns:
            Tuple of (source histories [n, l], destination histories [n, k-1],
            times to next spike [n]).
        """
        partition = self.events[tag]
        source_history = np.zeros((len(partition), self.l))
        dest_history = np.zeros((len(partition), self.k - 1))
        time_to_next = np.zeros(len(partition))
        for i, event in enumerate(partition):
            source_history[i] = event.source_history
            dest_history[i] = event.dest_history
            time_to_next[i] = event.time_to_next
        return source_history, dest_history, time_to_next

    def dest_only_arrays(self) -> Tuple[ndarray, ndarray]:
        """Stack the destination histories and times of destination-next events."""
        dest_history = np.zeros((len(self.dest_past_and_next), self.k - 1))
        time_to_next = np.zeros(len(self.dest_past_and_next))
        for i, (history, next_time) in enumerate(self.dest_past_and_next):
            dest_history[i] = history
            time_to_next[i] = next_time
        return dest_history, time_to_next

    def total_elapsed_time(self) -> float:
        """Sum of the elapsed time of every event."""
        return float(sum(event.elapsed_time for _, event in self))


def _prepare_spike_times(spike_times: ndarray, name: str) -> ndarray:
    spike_times = np.asarray(spike_times, dtype=np.float64)
    if spike_times.ndim != 1:
        raise ValueError(
            f"{name} spike times must be a one-dimensional array, got shape {spike_times.shape}"
        )
    finite = np.isfinite(spike_times)
    if not np.all(finite):
        warnings.warn(
            f"Dropping {np.sum(~finite)} non-finite {name.lower()} spike times"
        )
        spike_times = spike_times[finite]
    return np.sort(spike_times)


def _first_embedding_indices(
    source_times: ndarray, dest_times: ndarray, k: int, l: int
) -> Optional[Tuple[int, int]]:
    """
    Find the first (source, destination) indices with at least l source and
    k destination spikes seen, or None if the trial is too short.
    """
    if len(source_times) < l or len(dest_times) < k:
        return None

    dest_index = k - 1
    source_index = l - 1
    if source_times[source_index] > dest_times[dest_index]:
        # Move to the most recent destination spike before the l-th source spike
        while dest_index < len(dest_times):
            if dest_times[dest_index] > source_times[source_index]:
                return source_index, dest_index - 1
            dest_index += 1
        return None

    # Move to the most recent source spike before the k-th destination spike
    while source_index < len(source_times):
        if source_times[source_index] > dest_times[dest_index]:
            return source_index - 1, dest_index
        source_index += 1
    return None


def extract_events(
    source: ndarray,
    destination: ndarray,
    k: int,
    l: int,
    store: EventStore,
    trial_index: Optional[int] = None,
    diagnostics: Optional[EstimatorDiagnostics] = None,
) -> int:
    """
    Embed one trial and append its events to the store.

    Args:
        source: Source spike times, in any order.
        destination: Destination spike times, in any order.
        k: Destination embedding depth.
        l: Source embedding depth.
        store: Store receiving the events and the trial's event count.
        trial_index: Index of the trial, passed on to diagnostics.
        diagnostics: Hook notified of each event and of the trial count.

    Returns:
        Number of events extracted from this trial.
    """
    if diagnostics is None:
        diagnostics = EstimatorDiagnostics()

    source_times = _prepare_spike_times(source, "Source")
    dest_times = _prepare_spike_times(destination, "Destination")

    start = _first_embedding_indices(source_times, dest_times, k, l)
    if start is None:
        logger.debug(
            "Trial %s has too few spikes for k=%d, l=%d; no events extracted",
            trial_index,
            k,
            l,
        )
        store.num_events_per_trial.append(0)
        diagnostics.trial_processed(trial_index, 0)
        return 0

    source_index, dest_index = start
    last_source = len(source_times) - 1
    last_dest = len(dest_times) - 1
    time_of_prev_dest_spike = dest_times[dest_index]
    num_events = 0

    while not (source_index == last_source and dest_index == last_dest):
        if source_index == last_source:
            next_spiker = NextSpiker.DESTINATION
        elif dest_index == last_dest:
            next_spiker = NextSpiker.SOURCE
        elif source_times[source_index + 1] < dest_times[dest_index + 1]:
            next_spiker = NextSpiker.SOURCE
        else:
            next_spiker = NextSpiker.DESTINATION

        if next_spiker is NextSpiker.DESTINATION:
            next_spike_time = dest_times[dest_index + 1]
        else:
            next_spike_time = source_times[source_index + 1]
        time_to_next = next_spike_time - time_of_prev_dest_spike
        if time_to_next < 0:
            raise EstimatorInvariantError(
                f"Negative time to next spike ({time_to_next}) in trial {trial_index}"
            )

        source_history = np.empty(l)
        source_history[0] = time_of_prev_dest_spike - source_times[source_index]
        source_history[1:] = (
            source_times[source_index - l + 2 : source_index + 1][::-1]
            - source_times[source_index - l + 1 : source_index][::-1]
        )
        dest_history = (
            dest_times[dest_index - k + 2 : dest_index + 1][::-1]
            - dest_times[dest_index - k + 1 : dest_index][::-1]
        )

        event = EmbeddedEvent(
            source_history=source_history,
            dest_history=dest_history,
            time_to_next=float(time_to_next),
            next_spiker=next_spiker,
        )
        locator = store.append(event)
        diagnostics.event_added(trial_index, num_events, locator, event)

        if next_spiker is NextSpiker.DESTINATION:
            dest_index += 1
        else:
            source_index += 1
        time_of_prev_dest_spike = dest_times[dest_index]
        num_events += 1

    store.num_events_per_trial.append(num_events)
    diagnostics.trial_processed(trial_index, num_events)
    return num_events
