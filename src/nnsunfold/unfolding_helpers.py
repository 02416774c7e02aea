"""
Core MLEM and MAP iterations for neutron spectrum unfolding.
"""
from __future__ import annotations

import logging
from typing import Callable, MutableSequence, Optional, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

Buffer = Union[np.ndarray, MutableSequence[float]]
IterationCallback = Callable[[int, np.ndarray, np.ndarray], None]


class DimensionMismatch(ValueError):
    """Vector or matrix dimensions disagree with the response matrix."""


def _as_response(response) -> np.ndarray:
    try:
        R = np.asarray(response, dtype=float)
    except ValueError as exc:
        raise DimensionMismatch(
            "Response matrix rows must all have the same length"
        ) from exc
    if R.ndim != 2:
        raise DimensionMismatch(
            f"Response matrix must be two-dimensional, got {R.ndim} dimension(s)"
        )
    return R


def _check_length(name: str, values, expected: int, axis: str) -> None:
    if len(values) != expected:
        raise DimensionMismatch(
            f"{name} length ({len(values)}) must match the number of {axis} ({expected})"
        )


def _refill(buffer: Buffer, values: np.ndarray) -> None:
    """Overwrite a caller-owned buffer so the caller sees the new values."""
    if isinstance(buffer, np.ndarray):
        buffer[...] = values
    else:
        buffer[:] = values.tolist()


def normalize_response(response) -> np.ndarray:
    """
    Build the normalization vector of a response matrix.

    Entry ``i`` is the sum over all measurements of the response to energy
    bin ``i``, i.e. the column sums of the (measurements x bins) matrix.

    Parameters
    ----------
    response : array_like
        Response matrix of shape (n_measurements, n_bins).

    Returns
    -------
    np.ndarray
        Normalization vector of length n_bins.

    Raises
    ------
    DimensionMismatch
        If the response is ragged or not two-dimensional.
    """
    return _as_response(response).sum(axis=0)


def energy_correction(spectrum, beta: float) -> np.ndarray:
    """
    MAP smoothness penalty for every energy bin.

    Edge bins see their single neighbour, interior bins both neighbours:

    - first bin: ``beta * (s[0] - s[1])**2``
    - interior: ``beta * ((s[b] - s[b-1])**2 + (s[b] - s[b+1])**2)``
    - last bin: ``beta * (s[-1] - s[-2])**2``

    A spectrum with fewer than two bins has no neighbours and gets a zero
    penalty.
    """
    if beta < 0:
        raise ValueError(f"beta must be non-negative, got {beta}")
    phi = np.asarray(spectrum, dtype=float)
    penalty = np.zeros_like(phi)
    if phi.size < 2:
        return penalty
    steps = np.diff(phi) ** 2
    penalty[:-1] += steps
    penalty[1:] += steps
    return beta * penalty


def _needs_iteration(ratio: np.ndarray, error: float) -> bool:
    # The band edges themselves count as outside the tolerance
    return bool(np.any((ratio >= 1 + error) | (ratio <= 1 - error)))


def _iterate(
    method: str,
    cutoff: int,
    error: float,
    measurements,
    spectrum: Buffer,
    response,
    normalization,
    ratio: Optional[Buffer],
    callback: Optional[IterationCallback],
    beta: Optional[float] = None,
) -> Tuple[int, Optional[np.ndarray]]:
    R = _as_response(response)
    n_measurements, n_bins = R.shape
    b = np.asarray(measurements, dtype=float)
    norm = np.asarray(normalization, dtype=float)

    _check_length("Measurement vector", b, n_measurements, "response rows")
    _check_length("Spectrum", spectrum, n_bins, "energy bins")
    _check_length("Normalization vector", norm, n_bins, "energy bins")
    if isinstance(ratio, np.ndarray):
        _check_length("Ratio buffer", ratio, n_measurements, "response rows")
    if cutoff < 0:
        raise ValueError(f"Iteration cap must be non-negative, got {cutoff}")
    if isinstance(spectrum, np.ndarray) and not np.issubdtype(
        spectrum.dtype, np.floating
    ):
        raise TypeError(
            f"Spectrum must be a floating-point array to be updated in place, "
            f"got dtype {spectrum.dtype}"
        )

    phi = np.array(spectrum, dtype=float)
    last_ratio = None
    last_penalty = None
    iterations = cutoff
    reported_nonfinite = False

    # Zero estimates are not trapped: inf/nan propagate through the update
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        for index in range(cutoff):
            estimated = R @ phi
            last_ratio = b / estimated
            correction = R.T @ last_ratio

            if beta is None:
                phi = phi * correction / norm
            else:
                last_penalty = energy_correction(phi, beta)
                phi = phi * correction / (norm + last_penalty)

            # Caller buffers hold the state of every iteration
            _refill(spectrum, phi)
            if ratio is not None:
                _refill(ratio, last_ratio)
            if not reported_nonfinite and not np.all(np.isfinite(phi)):
                logger.warning(
                    "%s spectrum became non-finite at iteration %d", method, index
                )
                reported_nonfinite = True

            if callback is not None:
                callback(index, phi, last_ratio)

            if not _needs_iteration(last_ratio, error):
                iterations = index
                break
            logger.debug(
                "%s iteration %d: max |ratio - 1| = %.3e",
                method,
                index,
                float(np.max(np.abs(last_ratio - 1))) if n_measurements else 0.0,
            )

    if iterations < cutoff:
        logger.debug("%s converged after iteration %d", method, iterations)
    else:
        logger.debug(
            "%s stopped at the iteration cap (%d) without converging", method, cutoff
        )

    return iterations, last_penalty


def run_mlem(
    cutoff: int,
    error: float,
    measurements,
    spectrum: Buffer,
    response,
    normalization,
    ratio: Optional[Buffer] = None,
    callback: Optional[IterationCallback] = None,
) -> int:
    """
    Unfold a spectrum with the MLEM algorithm.

    Each iteration forward-projects the current spectrum through the response
    matrix, takes the measured-to-estimated ratio, back-projects it and
    applies it multiplicatively to the spectrum, normalized by
    ``normalization``. Iteration stops once every ratio lies strictly inside
    ``(1 - error, 1 + error)`` or when ``cutoff`` iterations have run.

    Parameters
    ----------
    cutoff : int
        Maximum number of iterations.
    error : float
        Relative tolerance on the measured-to-estimated ratios (e.g. 0.05).
    measurements : array_like
        Measured readings, length n_measurements.
    spectrum : np.ndarray or list
        Initial spectrum guess, length n_bins. Overwritten in place after
        every iteration; entries must start strictly positive since a zero
        entry never changes.
    response : array_like
        Response matrix of shape (n_measurements, n_bins).
    normalization : array_like
        Normalization vector from :func:`normalize_response`.
    ratio : np.ndarray or list, optional
        Receives the ratios of the last iteration.
    callback : callable, optional
        Called as ``callback(iteration, spectrum, ratio)`` after every update.

    Returns
    -------
    int
        0-based index of the iteration on which convergence was reached, or
        ``cutoff`` if the cap was hit.

    Raises
    ------
    DimensionMismatch
        If any vector disagrees with the response matrix dimensions.

    Notes
    -----
    A zero estimated reading yields a non-finite ratio. It is not guarded
    against: the values propagate into the spectrum and a warning is logged.
    """
    iterations, _ = _iterate(
        "MLEM",
        cutoff,
        error,
        measurements,
        spectrum,
        response,
        normalization,
        ratio,
        callback,
    )
    return iterations


def run_map(
    beta: float,
    cutoff: int,
    error: float,
    measurements,
    spectrum: Buffer,
    response,
    normalization,
    ratio: Optional[Buffer] = None,
    energy_correction_out: Optional[Buffer] = None,
    callback: Optional[IterationCallback] = None,
) -> int:
    """
    Unfold a spectrum with MLEM regularized by an energy-smoothness prior.

    Identical to :func:`run_mlem` except that the normalization of every bin
    is augmented by :func:`energy_correction` of the pre-update spectrum,
    damping the update where the spectrum is rough. ``beta = 0`` reproduces
    MLEM exactly. The penalty does not take part in the convergence test.

    Parameters
    ----------
    beta : float
        Non-negative regularization strength.
    energy_correction_out : np.ndarray or list, optional
        Receives the energy correction of the last iteration.

    See :func:`run_mlem` for the remaining parameters and the return value.
    """
    if beta < 0:
        raise ValueError(f"beta must be non-negative, got {beta}")
    if isinstance(energy_correction_out, np.ndarray):
        _check_length(
            "Energy correction buffer",
            energy_correction_out,
            len(spectrum),
            "energy bins",
        )
    iterations, penalty = _iterate(
        "MAP",
        cutoff,
        error,
        measurements,
        spectrum,
        response,
        normalization,
        ratio,
        callback,
        beta=beta,
    )
    if energy_correction_out is not None and penalty is not None:
        _refill(energy_correction_out, penalty)
    return iterations
