"""
Aggregate statistics of unfolded spectra and Poisson sampling of readings.
"""
from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from .constants import (
    HEAD_TRANSMISSION_FACTOR,
    MU_TO_GY,
    PSV_TO_MSV,
    ROOM_SURFACE_AREA_CM2,
    S_TO_HR,
    SCATTER_FLUENCE_COEFF,
    SOURCE_DISTANCE_CM,
    THERMAL_FLUENCE_COEFF,
)
from .unfolding_helpers import DimensionMismatch


def _paired(name_a: str, a, name_b: str, b):
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise DimensionMismatch(
            f"{name_a} shape {a.shape} does not match {name_b} shape {b.shape}"
        )
    return a, b


def sample_poisson(lam: float, rng: Optional[np.random.Generator] = None) -> int:
    """
    Draw one Poisson variate with mean ``lam``.

    Parameters
    ----------
    lam : float
        Mean (and variance) of the distribution.
    rng : np.random.Generator, optional
        Generator to draw from. A fresh unseeded generator is used if None.
    """
    if rng is None:
        rng = np.random.default_rng()
    return int(rng.poisson(lam))


def poisson_replicas(
    measurements: Sequence[float],
    n_samples: int,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """
    Sample Poisson replicas of a measurement vector.

    Returns
    -------
    np.ndarray
        Array of shape (n_samples, n_measurements), each row one replica.
    """
    if rng is None:
        rng = np.random.default_rng()
    lam = np.asarray(measurements, dtype=float)
    return rng.poisson(lam, size=(n_samples, lam.size)).astype(float)


def calculate_rmsd(true_value: float, samples: Sequence[float]) -> float:
    """Root-mean-square deviation of samples from a true value."""
    samples = np.asarray(samples, dtype=float)
    return float(np.sqrt(np.mean((true_value - samples) ** 2)))


def calculate_rmsd_vector(
    true_vector: Sequence[float], sampled_vectors: Sequence[Sequence[float]]
) -> np.ndarray:
    """
    Element-wise root-mean-square deviation of sampled vectors.

    Parameters
    ----------
    true_vector : array_like
        Reference vector, length n.
    sampled_vectors : array_like
        Samples of shape (n_samples, n).
    """
    true_vector = np.asarray(true_vector, dtype=float)
    sampled = np.atleast_2d(np.asarray(sampled_vectors, dtype=float))
    if sampled.shape[1] != true_vector.size:
        raise DimensionMismatch(
            f"Sampled vectors have {sampled.shape[1]} elements, "
            f"expected {true_vector.size}"
        )
    return np.sqrt(np.mean((true_vector - sampled) ** 2, axis=0))


def calculate_dose(spectrum: Sequence[float], icrp_factors: Sequence[float]) -> float:
    """
    Ambient dose equivalent rate of a spectrum.

    Parameters
    ----------
    spectrum : array_like
        Flux per energy bin [n cm^-2 s^-1].
    icrp_factors : array_like
        Fluence-to-dose conversion factors per bin [pSv cm^2] (ICRP 74).

    Returns
    -------
    float
        Dose rate [mSv/h].
    """
    spectrum, icrp_factors = _paired("Spectrum", spectrum, "ICRP factors", icrp_factors)
    return float(np.sum(spectrum * icrp_factors) * S_TO_HR * PSV_TO_MSV)


def calculate_total_charge(measurements: Sequence[float]) -> float:
    """Total measured charge of a series of readings."""
    return float(np.sum(np.asarray(measurements, dtype=float)))


def calculate_total_flux(spectrum: Sequence[float]) -> float:
    """Total flux of a spectrum."""
    return float(np.sum(np.asarray(spectrum, dtype=float)))


def calculate_average_energy(
    spectrum: Sequence[float], energy_bins: Sequence[float]
) -> float:
    """Flux-weighted mean energy of a spectrum, in the units of ``energy_bins``."""
    spectrum, energy_bins = _paired("Spectrum", spectrum, "Energy bins", energy_bins)
    return float(np.sum(energy_bins * spectrum / np.sum(spectrum)))


def calculate_sum_uncertainty(value_uncertainties: Sequence[float]) -> float:
    """Uncertainty of a sum of independent values (quadrature sum)."""
    return float(np.sqrt(np.sum(np.asarray(value_uncertainties, dtype=float) ** 2)))


def calculate_energy_uncertainty(
    energy_bins: Sequence[float],
    spectrum: Sequence[float],
    spectrum_uncertainty: Sequence[float],
    total_flux: float,
    total_flux_uncertainty: float,
) -> float:
    """
    Uncertainty of the average energy.

    Each bin contributes ``E_i * phi_i / Phi`` with the relative uncertainties
    of ``phi_i`` and ``Phi`` added in quadrature; the contributions are then
    summed in quadrature.
    """
    energy_bins, spectrum = _paired("Energy bins", energy_bins, "Spectrum", spectrum)
    spectrum, spectrum_uncertainty = _paired(
        "Spectrum", spectrum, "Spectrum uncertainty", spectrum_uncertainty
    )
    contribution = energy_bins * spectrum / total_flux
    relative = np.sqrt(
        (spectrum_uncertainty / spectrum) ** 2
        + (total_flux_uncertainty / total_flux) ** 2
    )
    return float(np.sqrt(np.sum((contribution * relative) ** 2)))


def calculate_source_strength(
    spectrum: Sequence[float], duration: float, dose_mu: float
) -> float:
    """
    Neutron source strength of a linac head from a measured spectrum.

    The total flux is converted to a total fluence per Gy of photon dose at
    isocentre and divided by the empirical fluence relation of NCRP 151
    (Eq. 2.16), which sums direct, scattered and thermal components.

    Parameters
    ----------
    spectrum : array_like
        Flux per energy bin [n cm^-2 s^-1].
    duration : float
        Irradiation time [s].
    dose_mu : float
        Delivered photon dose [MU].

    Returns
    -------
    float
        Neutrons emitted from the head per Gy at isocentre.
    """
    fluence_total = calculate_total_flux(spectrum) * duration / dose_mu * MU_TO_GY

    direct = HEAD_TRANSMISSION_FACTOR / (4 * np.pi * SOURCE_DISTANCE_CM**2)
    scatter = SCATTER_FLUENCE_COEFF * HEAD_TRANSMISSION_FACTOR / ROOM_SURFACE_AREA_CM2
    thermal = THERMAL_FLUENCE_COEFF / ROOM_SURFACE_AREA_CM2

    return float(fluence_total / (direct + scatter + thermal))
