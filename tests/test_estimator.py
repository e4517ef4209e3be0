import logging

import numpy as np
import pytest
from spike_te import (
    EmbeddingDepthError,
    EmpiricalNullDistribution,
    EstimatorConfig,
    EstimatorDiagnostics,
    EstimatorInvariantError,
    EstimatorOption,
    EventStore,
    LoggingDiagnostics,
    TransferEntropyCalculatorSpikingIntegration,
    coupled_trial_generator,
    extract_events,
    independent_trial_generator,
    search_area_ratio,
)

SOURCE = np.array([0.5, 1.7, 2.2, 4.1, 5.3])
DESTINATION = np.array([1.0, 2.0, 3.5, 4.6, 6.0, 7.2])


class RecordingDiagnostics(EstimatorDiagnostics):
    """Keeps the boundary correction and counts of every destination event."""

    def __init__(self):
        self.corrections = []
        self.counts = []
        self.radii = []

    def neighbour_radii(self, event_index, radii):
        self.radii.append(tuple(radii))

    def neighbour_counts(
        self, event_index, n_source_greater, n_dest_greater, n_dest_matched, n_dest_and_greater
    ):
        self.counts.append(
            (n_source_greater, n_dest_greater, n_dest_matched, n_dest_and_greater)
        )

    def boundary_correction(self, event_index, search_area_ratio, r_time, r_time_lower):
        self.corrections.append((search_area_ratio, r_time, r_time_lower))


def _estimate(trials, diagnostics=None, **options):
    calc = TransferEntropyCalculatorSpikingIntegration(diagnostics=diagnostics, **options)
    calc.start_add_observations()
    calc.add_trials(trials)
    calc.finalise_add_observations()
    return calc, calc.compute_average_transfer_entropy()


def test_total_elapsed_time_of_small_trial():
    """The averaging time is the time from the first to the last destination spike."""
    calc = TransferEntropyCalculatorSpikingIntegration(k=1, l=1, knns=1)
    calc.set_observations(SOURCE, DESTINATION)
    te = calc.compute_average_transfer_entropy()

    print(f"TE on the small trial: {te:.4f} nats per unit time")
    assert np.isfinite(te)
    assert calc.last_total_elapsed_time == pytest.approx(6.2)
    assert calc.last_average == te


def test_elapsed_time_sums_over_trials():
    trials = list(coupled_trial_generator(3, rate_hz=1.0, duration_sec=50.0, random_seed=3))
    calc, _ = _estimate(trials)

    expected = 0.0
    for source, destination in trials:
        store = EventStore(1, 1)
        extract_events(source, destination, 1, 1, store)
        expected += store.total_elapsed_time()
    assert calc.last_total_elapsed_time == pytest.approx(expected)
    assert calc.added_more_than_one_observation_set


def test_coupled_exceeds_independent():
    """A destination driven by the source carries much more transfer entropy."""

    # Destination spikes a fixed delay after every source spike
    coupled = list(
        coupled_trial_generator(1, rate_hz=1.0, duration_sec=500.0, delay_sec=0.1, random_seed=11)
    )
    _, te_coupled = _estimate(coupled, k=1, l=1)
    print(f"Coupled TE: {te_coupled:.4f}")

    independent_estimates = []
    for seed in [21, 22, 23]:
        independent = list(
            independent_trial_generator(1, duration_sec=500.0, random_seed=seed)
        )
        _, te = _estimate(independent, k=1, l=1)
        independent_estimates.append(te)
    te_independent = float(np.mean(independent_estimates))
    print(f"Independent TE: {independent_estimates} (mean {te_independent:.4f})")

    assert te_coupled > 1.0
    assert abs(te_independent) < 0.5
    assert te_coupled > te_independent + 1.0


def test_coupled_estimate_settles_with_more_trials():
    """Coupled estimates stay positive and vary less across seeds as trials are added."""

    single_trial = []
    many_trials = []
    for seed in range(8):
        trials = list(
            coupled_trial_generator(8, rate_hz=1.0, duration_sec=50.0, delay_sec=0.1, random_seed=seed)
        )
        single_trial.append(_estimate(trials[:1])[1])
        many_trials.append(_estimate(trials)[1])

    single_trial = np.array(single_trial)
    many_trials = np.array(many_trials)
    print(f"1 trial:  mean {single_trial.mean():.4f}, std {single_trial.std():.4f}")
    print(f"8 trials: mean {many_trials.mean():.4f}, std {many_trials.std():.4f}")

    assert np.all(single_trial > 0)
    assert np.all(many_trials > 0)
    assert many_trials.std() < single_trial.std()


def test_coupled_with_destination_history():
    trials = list(
        coupled_trial_generator(2, rate_hz=1.0, duration_sec=200.0, jitter_sec=0.01, random_seed=5)
    )
    _, te = _estimate(trials, k=2, l=1)
    print(f"Coupled TE with k=2: {te:.4f}")
    assert te > 0.5

    _, te = _estimate(trials, k=3, l=2, norm="euclidean")
    assert np.isfinite(te)


def test_boundary_correction_disabled_is_identity():
    trials = list(coupled_trial_generator(1, duration_sec=200.0, jitter_sec=0.05, random_seed=7))
    diagnostics = RecordingDiagnostics()
    _estimate(trials, diagnostics=diagnostics, k=2, l=2)

    assert len(diagnostics.corrections) > 0
    for ratio, r_time, r_time_lower in diagnostics.corrections:
        assert ratio == 1.0
        assert r_time_lower == r_time


def test_boundary_correction_enabled():
    trials = list(coupled_trial_generator(1, duration_sec=200.0, jitter_sec=0.05, random_seed=7))
    diagnostics = RecordingDiagnostics()
    _, te_trimmed = _estimate(
        trials, diagnostics=diagnostics, k=1, l=1, trim_to_positive_times=True
    )
    _, te_plain = _estimate(trials, k=1, l=1)
    print(f"TE trimmed {te_trimmed:.4f}, untrimmed {te_plain:.4f}")

    ratios = np.array([ratio for ratio, _, _ in diagnostics.corrections])
    assert np.all(ratios > 0)
    assert np.all(ratios <= 1.0)
    assert np.any(ratios < 1.0)
    for _, r_time, r_time_lower in diagnostics.corrections:
        assert 0 <= r_time_lower <= r_time
    assert np.isfinite(te_trimmed)


def test_destination_matches_cover_neighbours():
    trials = list(independent_trial_generator(2, duration_sec=100.0, random_seed=8))
    for k in [1, 2]:
        diagnostics = RecordingDiagnostics()
        _estimate(trials, diagnostics=diagnostics, k=k, l=1, knns=3)
        for n_source_greater, n_dest_greater, n_dest_matched, n_dest_and_greater in diagnostics.counts:
            assert n_dest_matched >= 3
            assert n_dest_and_greater >= n_dest_matched
            assert n_source_greater >= 0 and n_dest_greater >= 0


def test_search_area_ratio_cases():
    # Source window entirely before the next spike window: nothing to trim
    assert search_area_ratio(2.0, 0.5, 0.1, 0.1) == (1.0, 0.1)

    # Previous source spike at the previous destination spike
    ratio, r_time_lower = search_area_ratio(1.0, 0.0, 0.5, 0.5)
    assert ratio == pytest.approx(1.0)
    assert r_time_lower == 0.5

    # Windows coincide, only the half above the diagonal is reachable
    ratio, r_time_lower = search_area_ratio(1.0, -1.0, 0.5, 0.5)
    assert ratio == pytest.approx(0.5)
    assert r_time_lower == 0.5

    # Window trimmed at zero time
    ratio, r_time_lower = search_area_ratio(0.2, 0.0, 0.5, 0.1)
    assert ratio == pytest.approx(0.135 / 0.14)
    assert r_time_lower == pytest.approx(0.2)

    # Lower edge raised to the earliest previous source spike
    ratio, r_time_lower = search_area_ratio(1.0, -0.9, 0.3, 0.1)
    assert ratio == pytest.approx(0.08 / 0.12)
    assert r_time_lower == pytest.approx(0.2)


def test_search_area_ratio_rejects_impossible_window():
    # Next spike window ends before the previous source window starts
    with pytest.raises(EstimatorInvariantError):
        search_area_ratio(0.1, -1.0, 0.1, 0.2)


def test_lifecycle_errors():
    calc = TransferEntropyCalculatorSpikingIntegration()
    with pytest.raises(RuntimeError):
        calc.add_observations(SOURCE, DESTINATION)
    with pytest.raises(RuntimeError):
        calc.finalise_add_observations()
    with pytest.raises(RuntimeError):
        calc.compute_average_transfer_entropy()

    calc.start_add_observations()
    calc.add_observations(SOURCE, DESTINATION)
    with pytest.raises(RuntimeError):
        calc.compute_average_transfer_entropy()
    calc.finalise_add_observations()
    with pytest.raises(RuntimeError):
        calc.add_observations(SOURCE, DESTINATION)


def test_add_observations_rejects_two_dimensional_input():
    calc = TransferEntropyCalculatorSpikingIntegration()
    calc.start_add_observations()
    with pytest.raises(ValueError, match="Source spike times"):
        calc.add_observations(SOURCE.reshape(-1, 1), DESTINATION)
    with pytest.raises(ValueError, match="Destination spike times"):
        calc.add_observations(SOURCE, DESTINATION.reshape(1, -1))
    assert len(calc.store) == 0


def test_too_few_destination_events():
    calc = TransferEntropyCalculatorSpikingIntegration(knns=5)
    calc.set_observations(SOURCE, DESTINATION)
    with pytest.raises(ValueError):
        calc.compute_average_transfer_entropy()


def test_invalid_embedding_depth():
    with pytest.raises(EmbeddingDepthError):
        TransferEntropyCalculatorSpikingIntegration(k=0)
    with pytest.raises(EmbeddingDepthError):
        TransferEntropyCalculatorSpikingIntegration(l=0)


def test_initialise_resets_state():
    calc = TransferEntropyCalculatorSpikingIntegration(k=1, l=1, knns=1)
    calc.set_observations(SOURCE, DESTINATION)
    calc.compute_average_transfer_entropy()

    # A rejected depth leaves everything in place
    with pytest.raises(EmbeddingDepthError):
        calc.initialise(k=0)
    assert calc.config.k == 1
    assert calc.store is not None
    assert calc.last_average is not None

    calc.initialise(k=2, l=2)
    assert calc.config.k == 2
    assert calc.config.l == 2
    assert calc.config.knns == 1
    assert calc.store is None
    assert calc.last_average is None
    assert calc.joint_trees == {}
    with pytest.raises(RuntimeError):
        calc.compute_average_transfer_entropy()


def test_search_structures():
    calc = TransferEntropyCalculatorSpikingIntegration(k=1, l=1, knns=1)
    calc.set_observations(SOURCE, DESTINATION)
    assert calc.dest_next_tree.group_dims == (0, 1)
    assert calc.dest_time_searcher.num_observations == 5
    assert calc.dest_history_tree is None
    assert not calc.added_more_than_one_observation_set

    calc = TransferEntropyCalculatorSpikingIntegration(k=3, l=2, knns=1)
    calc.set_observations(SOURCE, DESTINATION)
    assert calc.dest_next_tree.group_dims == (2, 1)
    assert calc.dest_history_tree.group_dims == (2,)
    assert calc.dest_time_searcher is None
    for tree in calc.joint_trees.values():
        assert tree.group_dims == (2, 2, 1)


def test_unimplemented_operations():
    calc = TransferEntropyCalculatorSpikingIntegration(knns=1)
    calc.set_observations(SOURCE, DESTINATION)
    with pytest.raises(NotImplementedError):
        calc.compute_local_of_previous_observations()
    with pytest.raises(NotImplementedError):
        calc.compute_significance(100)
    with pytest.raises(NotImplementedError):
        calc.compute_significance([[0], [0]])


def test_estimator_config():
    config = EstimatorConfig.from_options({"k": 2, EstimatorOption.KNNS: 3})
    assert config.k == 2
    assert config.l == 1
    assert config.get(EstimatorOption.KNNS) == 3
    assert config.get(EstimatorOption.TRIM_TO_POSITIVE_TIMES) is False

    other = config.replace(trim_to_positive_times=True)
    assert other.trim_to_positive_times
    assert not config.trim_to_positive_times
    assert other != config
    assert other.replace(trim_to_positive_times=False) == config
    print(f"Configuration: {other}")

    with pytest.raises(ValueError):
        EstimatorConfig.from_options({"history": 2})
    with pytest.raises(ValueError):
        EstimatorConfig(knns=0)
    with pytest.raises(ValueError):
        EstimatorConfig(norm="manhattan")

    calc = TransferEntropyCalculatorSpikingIntegration(config=config, k=5)
    assert calc.config.k == 2


def test_empirical_null_distribution():
    null = EmpiricalNullDistribution([0.1, 0.5, 0.9, 1.2], actual_value=0.8)
    assert null.p_value == pytest.approx(0.5)
    assert np.isnan(EmpiricalNullDistribution([], actual_value=0.8).p_value)


def test_logging_diagnostics(caplog):
    caplog.set_level(logging.DEBUG, logger="spike_te")
    calc = TransferEntropyCalculatorSpikingIntegration(
        knns=1, diagnostics=LoggingDiagnostics(max_events=2)
    )
    calc.set_observations(SOURCE, DESTINATION)
    calc.compute_average_transfer_entropy()

    assert "TE =" in caplog.text
    assert "Finished processing 9 source-target events" in caplog.text
    radii_messages = [r for r in caplog.records if "radii" in r.getMessage()]
    # Destination events are at chronological indices 1, 3, 5, 7 and 8
    assert len(radii_messages) == 1


if __name__ == "__main__":
    test_total_elapsed_time_of_small_trial()
    test_coupled_exceeds_independent()
