"""
Hooks called at each decision point of the event extraction and estimation.

`EstimatorDiagnostics` does nothing and is used by default. Subclass it to
record intermediate values, or use `LoggingDiagnostics` to write them to a
logger.
"""

import logging
from typing import Optional, Sequence


class EstimatorDiagnostics:
    """No-op diagnostics hook."""

    def trial_processed(self, trial_index: Optional[int], num_events: int) -> None:
        """Called once a trial has been embedded."""

    def event_added(self, trial_index: Optional[int], event_number: int, locator, event) -> None:
        """Called for each embedded event, with its locator in the store."""

    def neighbour_radii(self, event_index: int, radii: Sequence[float]) -> None:
        """Called with the (source, destination, time) radii of a destination event."""

    def neighbour_counts(
        self,
        event_index: int,
        n_source_greater: int,
        n_dest_greater: int,
        n_dest_matched: int,
        n_dest_and_greater: int,
    ) -> None:
        """Called with the neighbour counts of a destination event."""

    def boundary_correction(
        self,
        event_index: int,
        search_area_ratio: float,
        r_time: float,
        r_time_lower: float,
    ) -> None:
        """Called with the search window correction of a destination event."""

    def contribution(
        self, event_index: int, log_p_source_dest: float, log_p_dest: float
    ) -> None:
        """Called with the log-probability terms of a destination event."""

    def estimate_complete(
        self, contribution_sum: float, total_elapsed_time: float, estimate: float
    ) -> None:
        """Called once the average has been computed."""


class LoggingDiagnostics(EstimatorDiagnostics):
    """Diagnostics hook writing every decision point to a logger."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        level: int = logging.DEBUG,
        max_events: Optional[int] = 10000,
    ):
        """
        Initialize the logging hook.

        Args:
            logger: Logger to write to. Defaults to the "spike_te.diagnostics" logger.
            level: Logging level for every message.
            max_events: Only per-event messages for event indices below this are
                written. None writes all of them.
        """
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.level = level
        self.max_events = max_events

    def _per_event(self, event_index: int) -> bool:
        return self.max_events is None or event_index < self.max_events

    def trial_processed(self, trial_index, num_events):
        self.logger.log(
            self.level,
            "Finished processing %d source-target events for trial %s",
            num_events,
            trial_index,
        )

    def event_added(self, trial_index, event_number, locator, event):
        if not self._per_event(event_number):
            return
        self.logger.log(
            self.level,
            "Adding event %d (trial %s, next=%s): time_to_next=%.4f, source=%s, dest=%s",
            event_number,
            trial_index,
            locator.tag.name.lower(),
            event.time_to_next,
            list(event.source_history),
            list(event.dest_history),
        )

    def neighbour_radii(self, event_index, radii):
        if self._per_event(event_index):
            self.logger.log(
                self.level,
                "index=%d: radii source=%.5f dest=%.5f time=%.5f",
                event_index,
                *radii,
            )

    def neighbour_counts(
        self, event_index, n_source_greater, n_dest_greater, n_dest_matched, n_dest_and_greater
    ):
        if self._per_event(event_index):
            self.logger.log(
                self.level,
                "index=%d: %d + %d points with matching source-dest history, "
                "%d of %d points for dest history only",
                event_index,
                n_source_greater,
                n_dest_greater,
                n_dest_matched,
                n_dest_and_greater,
            )

    def boundary_correction(self, event_index, search_area_ratio, r_time, r_time_lower):
        if self._per_event(event_index):
            self.logger.log(
                self.level,
                "index=%d: search area ratio %.5f, r_time %.5f, r_time_lower %.5f",
                event_index,
                search_area_ratio,
                r_time,
                r_time_lower,
            )

    def contribution(self, event_index, log_p_source_dest, log_p_dest):
        if self._per_event(event_index):
            self.logger.log(
                self.level,
                "index=%d: te contribution %.5f (log p given source and dest %.5f, given dest %.5f)",
                event_index,
                log_p_source_dest - log_p_dest,
                log_p_source_dest,
                log_p_dest,
            )

    def estimate_complete(self, contribution_sum, total_elapsed_time, estimate):
        self.logger.log(
            self.level,
            "TE = %.5f / %.5f = %.5f",
            contribution_sum,
            total_elapsed_time,
            estimate,
        )
