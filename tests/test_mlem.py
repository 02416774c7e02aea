import logging

import numpy as np
import pytest

from nnsunfold import DimensionMismatch, normalize_response, run_mlem


@pytest.fixture
def response():
    """3 measurements x 3 energy bins, all positive"""
    return np.array(
        [
            [0.9, 0.4, 0.1],
            [0.3, 0.8, 0.3],
            [0.1, 0.5, 0.9],
        ]
    )


@pytest.fixture
def inconsistent_system():
    """Two readings of a single bin that no spectrum can reproduce together"""
    response = np.array([[1.0], [1.0]])
    measurements = np.array([1.0, 3.0])
    return response, measurements


def test_normalize_response_column_sums():
    """Normalization is the column sum of the response matrix"""
    normalization = normalize_response([[1, 2], [3, 4]])
    np.testing.assert_array_equal(normalization, [4.0, 6.0])


def test_normalize_response_rejects_vector():
    """A one-dimensional response is a dimension error"""
    with pytest.raises(DimensionMismatch):
        normalize_response([1.0, 2.0, 3.0])


def test_normalize_response_rejects_ragged_rows():
    """Rows of different lengths are a dimension error"""
    with pytest.raises(DimensionMismatch):
        normalize_response([[1.0, 2.0], [3.0]])


def test_run_mlem_rejects_ragged_response():
    """The iterator reports a ragged response as a dimension error"""
    with pytest.raises(DimensionMismatch):
        run_mlem(10, 0.05, [1.0, 1.0], np.ones(2), [[1.0, 2.0], [3.0]], [4.0, 2.0])


def test_single_bin_converges_to_measurement():
    """One bin and one reading reach the measurement in a single update"""
    spectrum = np.array([1.0])
    ratio = np.zeros(1)

    iterations = run_mlem(
        50, 0.01, [5.0], spectrum, [[1.0]], [1.0], ratio
    )

    assert spectrum[0] == pytest.approx(5.0)
    assert ratio[0] == pytest.approx(1.0)
    assert iterations == 1


def test_exact_ratios_stop_after_first_iteration():
    """Readings reproduced by the initial guess converge on iteration 0"""
    response = np.array([[1.0, 2.0], [3.0, 4.0]])
    spectrum = np.array([1.0, 1.0])
    measurements = response @ spectrum
    ratio = np.zeros(2)

    iterations = run_mlem(
        100, 0.05, measurements, spectrum, response, normalize_response(response), ratio
    )

    assert iterations == 0
    np.testing.assert_array_equal(ratio, [1.0, 1.0])
    np.testing.assert_array_equal(spectrum, [1.0, 1.0])


@pytest.mark.parametrize("measurement", [1.5, 0.5])
def test_ratio_on_band_edge_forces_another_iteration(measurement):
    """A ratio exactly on 1 +/- error is outside the tolerance"""
    # ratio is exactly 1 +/- 0.5 on the first pass and exactly 1 on the second
    spectrum = np.array([1.0])
    ratio = np.zeros(1)

    iterations = run_mlem(
        10, 0.5, [measurement], spectrum, [[1.0]], [1.0], ratio
    )

    assert iterations == 1
    assert spectrum[0] == measurement
    assert ratio[0] == 1.0


@pytest.mark.parametrize("cutoff", [1, 7, 25])
def test_iteration_cap_is_respected(inconsistent_system, cutoff):
    """An unreachable tolerance runs exactly cutoff iterations"""
    response, measurements = inconsistent_system
    calls = []

    iterations = run_mlem(
        cutoff,
        0.1,
        measurements,
        np.array([1.0]),
        response,
        normalize_response(response),
        callback=lambda i, phi, r: calls.append(i),
    )

    assert iterations == cutoff
    assert calls == list(range(cutoff))


def test_zero_cutoff_leaves_buffers_untouched(response):
    """No iterations means no writes to the caller's buffers"""
    spectrum = np.array([1.0, 2.0, 3.0])
    ratio = np.full(3, -1.0)

    iterations = run_mlem(
        0, 0.05, [1.0, 1.0, 1.0], spectrum, response, normalize_response(response), ratio
    )

    assert iterations == 0
    np.testing.assert_array_equal(spectrum, [1.0, 2.0, 3.0])
    np.testing.assert_array_equal(ratio, [-1.0, -1.0, -1.0])


def test_zero_bin_stays_zero(response):
    """A bin that starts at zero is zero after every iteration"""
    spectrum = np.array([0.0, 1.0, 1.0])
    measurements = response @ np.array([2.0, 1.0, 3.0])
    seen = []

    def check(iteration, phi, ratio):
        seen.append(phi[0])

    run_mlem(
        30,
        1e-6,
        measurements,
        spectrum,
        response,
        normalize_response(response),
        callback=check,
    )

    assert seen
    assert all(value == 0.0 for value in seen)
    assert spectrum[0] == 0.0
    assert np.all(spectrum[1:] > 0)


def test_buffers_follow_every_iteration(inconsistent_system):
    """The caller's buffers hold the current iterate when the callback runs"""
    response, measurements = inconsistent_system
    spectrum = np.array([1.0])
    ratio = np.zeros(2)
    snapshots = []

    def check(iteration, phi, r):
        np.testing.assert_array_equal(spectrum, phi)
        np.testing.assert_array_equal(ratio, r)
        snapshots.append(spectrum[0])

    run_mlem(
        5, 0.01, measurements, spectrum, response, normalize_response(response),
        ratio, callback=check,
    )

    assert len(snapshots) == 5
    # the first update moves 1.0 to the mean reading
    assert snapshots[0] == pytest.approx(2.0)


def test_raising_callback_keeps_the_latest_iterate():
    """An exception from the callback leaves the update it was shown in place"""
    spectrum = np.array([1.0, 1.0])

    def stop(iteration, phi, ratio):
        raise RuntimeError("stop")

    with pytest.raises(RuntimeError):
        run_mlem(
            10, 0.05, [10.0, 10.0], spectrum, np.eye(2), [1.0, 1.0], callback=stop
        )

    np.testing.assert_array_equal(spectrum, [10.0, 10.0])


def test_identity_response_recovers_measurements():
    """With an identity response the spectrum equals the readings"""
    response = [[1.0, 0.0], [0.0, 1.0]]
    measurements = [1.5, 3.0]
    spectrum = np.array([0.5, 0.5])

    iterations = run_mlem(
        25, 1e-9, measurements, spectrum, response, normalize_response(response)
    )

    assert iterations == 1
    np.testing.assert_allclose(spectrum, measurements)


def test_list_buffers_are_updated_in_place():
    """Plain lists are accepted as in/out buffers"""
    spectrum = [1.0]
    ratio = []

    run_mlem(50, 0.01, [5.0], spectrum, [[1.0]], [1.0], ratio)

    assert spectrum == pytest.approx([5.0])
    assert ratio == pytest.approx([1.0])
    assert isinstance(spectrum[0], float)


def test_integer_spectrum_array_rejected():
    """An integer array cannot hold the multiplicative update"""
    with pytest.raises(TypeError):
        run_mlem(10, 0.05, [5.0], np.array([1]), [[1.0]], [1.0])


@pytest.mark.parametrize(
    "measurements, spectrum, normalization, ratio",
    [
        ([1.0, 1.0], [1.0, 1.0, 1.0], [1.0, 1.0, 1.0], None),
        ([1.0, 1.0, 1.0], [1.0, 1.0], [1.0, 1.0, 1.0], None),
        ([1.0, 1.0, 1.0], [1.0, 1.0, 1.0], [1.0, 1.0], None),
        ([1.0, 1.0, 1.0], [1.0, 1.0, 1.0], [1.0, 1.0, 1.0], np.zeros(2)),
    ],
)
def test_dimension_mismatch(response, measurements, spectrum, normalization, ratio):
    """Every vector is checked against the response shape"""
    with pytest.raises(DimensionMismatch):
        run_mlem(
            10,
            0.05,
            measurements,
            np.array(spectrum),
            response,
            normalization,
            ratio,
        )


def test_zero_estimate_propagates_without_raising(caplog):
    """A zero estimated reading turns the spectrum NaN with one warning"""
    # The second row never sees any flux and reads zero: its ratio is 0/0,
    # the spectrum turns NaN, and a NaN ratio does not force continuation.
    response = np.array([[1.0, 1.0], [0.0, 0.0]])
    spectrum = np.array([1.0, 1.0])
    ratio = np.zeros(2)

    with caplog.at_level(logging.WARNING, logger="nnsunfold.unfolding_helpers"):
        iterations = run_mlem(
            20, 0.05, [2.0, 0.0], spectrum, response, [1.0, 1.0], ratio
        )

    assert iterations == 0
    assert np.all(np.isnan(spectrum))
    assert ratio[0] == 1.0
    assert np.isnan(ratio[1])
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "non-finite" in warnings[0].getMessage()
