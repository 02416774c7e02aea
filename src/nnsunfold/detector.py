"""Detector class with MLEM and MAP unfolding."""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy.interpolate import PchipInterpolator

from .constants import (
    DEFAULT_BETA,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_N_MONTECARLO,
    DEFAULT_TOLERANCE,
)
from .statistics import (
    calculate_average_energy,
    calculate_dose,
    calculate_energy_uncertainty,
    calculate_rmsd,
    calculate_rmsd_vector,
    calculate_sum_uncertainty,
    calculate_total_flux,
    poisson_replicas,
)
from .unfolding_helpers import DimensionMismatch, normalize_response, run_map, run_mlem

logger = logging.getLogger(__name__)

SolverFn = Callable[
    [np.ndarray, np.ndarray, np.ndarray],
    Tuple[np.ndarray, np.ndarray, int, Dict[str, Any]],
]
RandomState = Optional[Union[int, np.random.Generator]]


class Detector:
    """
    Neutron spectrometer with MLEM/MAP spectrum unfolding.

    A detector is described by a table of response functions: one column per
    measurement configuration (moderator thickness, sphere diameter, ...)
    sampled on a common energy grid. Readings are given as a dictionary keyed
    by configuration name; only the configurations present in the readings
    enter the response matrix.

    Parameters
    ----------
    response_functions_df : pd.DataFrame
        DataFrame whose 'E_MeV' column (or first column) is the energy grid
        in MeV and whose remaining columns are response functions.
    dose_coefficients : Sequence[float], optional
        Fluence-to-dose conversion factors per energy bin [pSv cm^2]. When
        given, results include the dose rate in mSv/h.

    Attributes
    ----------
    Amat : np.ndarray
        Response functions, shape (n_energy_bins, n_detectors)
    E_MeV : np.ndarray
        Energy grid in MeV
    detector_names : List[str]
        Names of the measurement configurations
    sensitivities : Dict[str, np.ndarray]
        Response function of every configuration

    Examples
    --------
    >>> detector = Detector(pd.read_csv("nns_response.csv"))
    >>> result = detector.unfold_mlem({"0": 1520.0, "1": 3110.0, "2": 2875.0})
    >>> result["iterations"], result["total_flux"]
    """

    def __init__(
        self,
        response_functions_df: pd.DataFrame,
        dose_coefficients: Optional[Sequence[float]] = None,
    ):
        Amat, E_MeV, detector_names = self._convert_rf_to_matrix(response_functions_df)

        self.Amat = Amat
        self.E_MeV = np.asarray(E_MeV, dtype=float)
        self.detector_names = detector_names

        if self.E_MeV.ndim != 1:
            raise ValueError("E_MeV must be a 1D array")
        if len(self.E_MeV) < 2:
            raise ValueError("At least 2 energy bins are required")

        self.sensitivities = {
            name: np.array(Amat[:, i]) for i, name in enumerate(self.detector_names)
        }

        if dose_coefficients is None:
            self.dose_coefficients = None
        else:
            self.dose_coefficients = np.asarray(dose_coefficients, dtype=float)
            if self.dose_coefficients.shape != self.E_MeV.shape:
                raise DimensionMismatch(
                    f"Dose coefficients length ({self.dose_coefficients.size}) "
                    f"must match number of energy bins ({self.n_energy_bins})"
                )

        self.results_history: Dict[str, Dict[str, Any]] = {}
        self.current_result: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        energy_range = f"{self.E_MeV[0]:.3e} - {self.E_MeV[-1]:.3e} MeV"
        return (
            f"Detector(energy bins: {self.n_energy_bins}, "
            f"detectors: {self.n_detectors}, "
            f"range: {energy_range})"
        )

    def __repr__(self) -> str:
        return f"Detector(E_MeV={self.E_MeV.tolist()}, detectors={self.detector_names})"

    @property
    def n_detectors(self) -> int:
        """Number of measurement configurations."""
        return len(self.detector_names)

    @property
    def n_energy_bins(self) -> int:
        """Number of energy bins."""
        return len(self.E_MeV)

    def get_response_matrix(self, readings: Dict[str, float]) -> np.ndarray:
        """Return the (n_selected, n_energy_bins) response matrix for the readings."""
        selected = [name for name in self.detector_names if name in readings]
        return np.array([self.sensitivities[name] for name in selected], dtype=float)

    # --- RESULTS HISTORY ---
    def _save_result(self, result: Dict[str, Any]) -> str:
        """
        Save an unfolding result to the history.

        Returns
        -------
        str
            Key under which the result was stored (timestamp + method)
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        key = f"{timestamp}_{result.get('method', 'unknown')}"

        result["timestamp"] = timestamp
        result["saved_key"] = key

        self.results_history[key] = result.copy()
        self.current_result = result

        logger.info("Result saved with key: %s", key)
        return key

    def get_result(self, key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return a stored result, or the most recent one if ``key`` is None."""
        if key is None:
            return self.current_result
        return self.results_history.get(key)

    def list_results(self) -> List[str]:
        """Keys of all stored results, oldest first."""
        return sorted(self.results_history.keys())

    def clear_results(self) -> None:
        self.results_history.clear()
        self.current_result = None
        logger.info("All results cleared.")

    # --- INPUT PREPARATION ---
    def _convert_rf_to_matrix(
        self, rf_df: pd.DataFrame
    ) -> Tuple[np.ndarray, np.ndarray, List[str]]:
        """
        Split a response-function table into energies and a response matrix.

        Returns
        -------
        tuple: (matrix, energies, names)
            matrix : np.ndarray
                Response functions, shape (n_energies, n_detectors)
            energies : np.ndarray
                Energy grid in MeV
            names : list
                Configuration names, in column order
        """
        if "E_MeV" in rf_df.columns:
            energies = rf_df["E_MeV"].to_numpy(dtype=float)
            rf_data = rf_df.drop("E_MeV", axis=1)
        else:
            energies = rf_df.iloc[:, 0].to_numpy(dtype=float)
            rf_data = rf_df.iloc[:, 1:]

        names = [str(name) for name in rf_data.columns]
        return rf_data.to_numpy(dtype=float), energies, names

    def _validate_readings(self, readings: Dict[str, float]) -> Dict[str, float]:
        """
        Keep the readings of known configurations.

        Raises
        ------
        ValueError
            If a reading is negative or no known configuration is present
        """
        valid = {}
        for det in self.detector_names:
            if det in readings:
                val = float(readings[det])
                if val < 0:
                    raise ValueError(f"Reading '{det}' is negative: {val}")
                valid[det] = val
        if not valid:
            raise ValueError("No detector readings provided")
        return valid

    def _build_system(
        self, readings: Dict[str, float]
    ) -> Tuple[np.ndarray, np.ndarray, List[str]]:
        """Response matrix A, measurement vector b and the selected names."""
        selected = [name for name in self.detector_names if name in readings]
        b = np.array([readings[name] for name in selected], dtype=float)
        A = np.array([self.sensitivities[name] for name in selected], dtype=float)
        return A, b, selected

    def _validate_initial_spectrum(
        self,
        initial_spectrum: Optional[Sequence[float]],
        default_value: float = 1.0,
    ) -> np.ndarray:
        """Validate an initial spectrum guess, defaulting to a flat spectrum."""
        if initial_spectrum is None:
            return np.full(self.n_energy_bins, default_value, dtype=float)
        x0 = np.asarray(initial_spectrum, dtype=float)
        if x0.shape != (self.n_energy_bins,):
            raise DimensionMismatch(
                f"Initial spectrum length ({x0.size}) "
                f"must match number of energy bins ({self.n_energy_bins})"
            )
        if np.any(x0 < 0):
            raise ValueError("Initial spectrum must be non-negative")
        n_zero = int(np.sum(x0 == 0))
        if n_zero:
            logger.warning(
                "Initial spectrum has %d zero bin(s); they will stay zero", n_zero
            )
        return x0.copy()

    # --- OUTPUT ---
    def _standardize_output(
        self,
        spectrum: np.ndarray,
        A: np.ndarray,
        b: np.ndarray,
        ratio: np.ndarray,
        selected: List[str],
        method: str,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Create the result dictionary shared by all unfolding methods.

        Parameters
        ----------
        spectrum : np.ndarray
            Unfolded spectrum
        A : np.ndarray
            Response matrix
        b : np.ndarray
            Measurement vector
        ratio : np.ndarray
            Measured-to-estimated ratios of the last iteration
        selected : List[str]
            Configurations that entered the unfolding
        method : str
            Unfolding method name
        **kwargs : dict
            Additional entries for the output
        """
        computed_readings = A @ spectrum
        residual = b - computed_readings

        output = {
            "energy": self.E_MeV.copy(),
            "spectrum": spectrum.copy(),
            "effective_readings": {
                name: float(val) for name, val in zip(selected, computed_readings)
            },
            "ratio": np.asarray(ratio, dtype=float).copy(),
            "residual": residual,
            "residual_norm": float(np.linalg.norm(residual)),
            "method": method,
            "total_flux": calculate_total_flux(spectrum),
            "average_energy": calculate_average_energy(spectrum, self.E_MeV),
            "dose": self._calculate_dose(spectrum),
        }
        output.update(kwargs)
        return output

    def _calculate_dose(self, spectrum: np.ndarray) -> Optional[float]:
        """Dose rate in mSv/h, or None without dose coefficients."""
        if self.dose_coefficients is None:
            return None
        return calculate_dose(spectrum, self.dose_coefficients)

    # --- UNCERTAINTY ---
    @staticmethod
    def _uncertainty_stats(samples: np.ndarray) -> Dict[str, Any]:
        """Summary statistics of Monte-Carlo spectra."""
        return {
            "spectrum_uncert_mean": np.mean(samples, axis=0),
            "spectrum_uncert_std": np.std(samples, axis=0),
            "spectrum_uncert_min": np.min(samples, axis=0),
            "spectrum_uncert_max": np.max(samples, axis=0),
            "spectrum_uncert_median": np.median(samples, axis=0),
            "spectrum_uncert_percentile_5": np.percentile(samples, 5, axis=0),
            "spectrum_uncert_percentile_95": np.percentile(samples, 95, axis=0),
            "spectrum_uncert_all": samples,
        }

    def _poisson_uncertainty(
        self,
        readings: Dict[str, float],
        solver_fn: SolverFn,
        x0: np.ndarray,
        nominal: Dict[str, Any],
        n_montecarlo: int,
        rng: np.random.Generator,
    ) -> Dict[str, Any]:
        """
        Propagate counting statistics into the unfolded spectrum.

        The readings are treated as Poisson means; every replica is unfolded
        from the same initial guess and the spread of the replicas around the
        nominal spectrum gives the per-bin uncertainty, which is then
        propagated to total flux, average energy and dose.
        """
        A, b, _ = self._build_system(readings)
        replicas = poisson_replicas(b, n_montecarlo, rng)

        samples = np.zeros((n_montecarlo, self.n_energy_bins))
        for i, b_mc in enumerate(replicas):
            samples[i] = solver_fn(A, b_mc, x0)[0]

        spectrum = nominal["spectrum"]
        spectrum_uncertainty = calculate_rmsd_vector(spectrum, samples)
        total_flux_uncertainty = calculate_sum_uncertainty(spectrum_uncertainty)

        stats = self._uncertainty_stats(samples)
        stats["spectrum_uncertainty"] = spectrum_uncertainty
        stats["total_flux_uncertainty"] = total_flux_uncertainty
        with np.errstate(divide="ignore", invalid="ignore"):
            stats["average_energy_uncertainty"] = calculate_energy_uncertainty(
                self.E_MeV,
                spectrum,
                spectrum_uncertainty,
                nominal["total_flux"],
                total_flux_uncertainty,
            )
        if nominal["dose"] is None:
            stats["dose_uncertainty"] = None
        else:
            stats["dose_uncertainty"] = calculate_rmsd(
                nominal["dose"], [self._calculate_dose(s) for s in samples]
            )
        stats["montecarlo_samples"] = n_montecarlo
        return stats

    # --- UNFOLDING ---
    def _unfold_iterative(
        self,
        readings: Dict[str, float],
        solver_fn: SolverFn,
        method: str,
        initial_spectrum: Optional[Sequence[float]],
        max_iterations: int,
        tolerance: float,
        calculate_errors: bool,
        n_montecarlo: int,
        rng: RandomState,
        **kwargs,
    ) -> Dict[str, Any]:
        readings = self._validate_readings(readings)
        A, b, selected = self._build_system(readings)
        x0 = self._validate_initial_spectrum(initial_spectrum)

        spectrum, ratio, iterations, extras = solver_fn(A, b, x0)
        logger.info(
            "%s unfolding finished at iteration %d of %d (converged: %s)",
            method,
            iterations,
            max_iterations,
            iterations < max_iterations,
        )

        output = self._standardize_output(
            spectrum=spectrum,
            A=A,
            b=b,
            ratio=ratio,
            selected=selected,
            method=method,
            iterations=iterations,
            converged=iterations < max_iterations,
            max_iterations=max_iterations,
            tolerance=tolerance,
            **extras,
            **kwargs,
        )

        if calculate_errors:
            logger.info(
                "Calculating uncertainty with %d Poisson replicas...", n_montecarlo
            )
            output.update(
                self._poisson_uncertainty(
                    readings,
                    solver_fn,
                    x0,
                    output,
                    n_montecarlo,
                    np.random.default_rng(rng),
                )
            )
            logger.info("Uncertainty calculation completed.")

        self._save_result(output)
        return output

    def unfold_mlem(
        self,
        readings: Dict[str, float],
        initial_spectrum: Optional[Sequence[float]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tolerance: float = DEFAULT_TOLERANCE,
        calculate_errors: bool = False,
        n_montecarlo: int = DEFAULT_N_MONTECARLO,
        rng: RandomState = None,
    ) -> Dict[str, Any]:
        """
        Unfold the neutron spectrum with Maximum-Likelihood
        Expectation-Maximization.

        Parameters
        ----------
        readings : Dict[str, float]
            Detector readings keyed by configuration name.
        initial_spectrum : Optional[Sequence[float]], optional
            Initial spectrum guess. A flat spectrum of ones is used if None.
        max_iterations : int, optional
            Iteration cap, default: 1000.
        tolerance : float, optional
            Relative tolerance on every measured-to-estimated ratio,
            default: 0.05.
        calculate_errors : bool, optional
            Estimate uncertainties from Poisson replicas of the readings.
        n_montecarlo : int, optional
            Number of Poisson replicas, default: 100.
        rng : int or np.random.Generator, optional
            Seed or generator for the replicas.

        Returns
        -------
        Dict[str, Any]
            Dictionary containing:
            - 'energy': Energy grid [MeV]
            - 'spectrum': Unfolded spectrum
            - 'effective_readings': Readings folded from the unfolded spectrum
            - 'ratio': Measured-to-estimated ratios of the last iteration
            - 'residual', 'residual_norm': Measured minus folded readings
            - 'iterations': Index of the converging iteration, or the cap
            - 'converged': Whether the tolerance was met before the cap
            - 'total_flux', 'average_energy', 'dose': Aggregate quantities
            - 'spectrum_uncertainty' and 'spectrum_uncert_*': Poisson
              uncertainty estimates (if calculate_errors=True)

        Raises
        ------
        ValueError
            If readings are invalid
        DimensionMismatch
            If the initial spectrum does not match the energy grid
        """

        def _solve(A: np.ndarray, b: np.ndarray, x0: np.ndarray):
            spectrum = x0.copy()
            ratio = np.zeros(len(b))
            iterations = run_mlem(
                max_iterations, tolerance, b, spectrum, A, normalize_response(A), ratio
            )
            return spectrum, ratio, iterations, {}

        return self._unfold_iterative(
            readings,
            _solve,
            "MLEM",
            initial_spectrum,
            max_iterations,
            tolerance,
            calculate_errors,
            n_montecarlo,
            rng,
        )

    def unfold_map(
        self,
        readings: Dict[str, float],
        beta: float = DEFAULT_BETA,
        initial_spectrum: Optional[Sequence[float]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tolerance: float = DEFAULT_TOLERANCE,
        calculate_errors: bool = False,
        n_montecarlo: int = DEFAULT_N_MONTECARLO,
        rng: RandomState = None,
    ) -> Dict[str, Any]:
        """
        Unfold the neutron spectrum with MLEM regularized by an
        energy-smoothness prior (MAP).

        Parameters
        ----------
        beta : float, optional
            Regularization strength; 0 reproduces MLEM. Default: 0.0

        Other parameters and the returned dictionary are those of
        :meth:`unfold_mlem`; the result also holds 'beta' and the
        'energy_correction' of the last iteration.
        """
        if beta < 0:
            raise ValueError(f"beta must be non-negative, got {beta}")

        def _solve(A: np.ndarray, b: np.ndarray, x0: np.ndarray):
            spectrum = x0.copy()
            ratio = np.zeros(len(b))
            correction = np.zeros(len(x0))
            iterations = run_map(
                beta,
                max_iterations,
                tolerance,
                b,
                spectrum,
                A,
                normalize_response(A),
                ratio,
                correction,
            )
            return spectrum, ratio, iterations, {"energy_correction": correction}

        return self._unfold_iterative(
            readings,
            _solve,
            "MAP",
            initial_spectrum,
            max_iterations,
            tolerance,
            calculate_errors,
            n_montecarlo,
            rng,
            beta=beta,
        )

    # --- UTILS ---
    def discretize_spectra(self, spectra: Union[Dict[str, Any], pd.DataFrame]) -> pd.DataFrame:
        """
        Interpolate reference spectra onto the detector energy grid.

        PCHIP interpolation in log-energy. Grid points outside the input
        range and negative interpolated values are set to zero.

        Parameters
        ----------
        spectra : pd.DataFrame or dict
            'E_MeV' (or first column) holds energies, the remaining columns
            hold one or more spectra.

        Returns
        -------
        pd.DataFrame
            'E_MeV' plus 'Phi' for a single spectrum, or the original column
            names for several.
        """
        spectra_df = self._spectra_frame(spectra)
        energies, spectra_data, names = self._split_spectra(spectra_df)

        Emin = np.min(self.E_MeV)
        if self.E_MeV.min() < energies.min():
            logger.warning("Target energy grid extends below the input grid; zero-filled.")
        if self.E_MeV.max() > energies.max():
            logger.warning("Target energy grid extends above the input grid; zero-filled.")

        u = np.log10(energies / Emin)
        u_new = np.log10(self.E_MeV / Emin)
        outside = (u_new < u.min()) | (u_new > u.max())

        new_spectra = pd.DataFrame({"E_MeV": self.E_MeV})
        single = spectra_data.shape[1] == 1
        for i, name in enumerate(names):
            values = PchipInterpolator(u, spectra_data[:, i])(u_new)
            values[outside] = 0.0
            values[values < 0] = 0.0
            new_spectra["Phi" if single else name] = values
        return new_spectra

    def get_effective_readings_for_spectra(
        self, spectra: Union[Dict[str, Any], pd.DataFrame]
    ) -> Dict[str, float]:
        """
        Fold a spectrum through every response function.

        The spectrum is interpolated onto the detector grid first unless it
        is already sampled on it.

        Returns
        -------
        dict
            {configuration name: expected reading}
        """
        spectra_df = self._spectra_frame(spectra)
        energies, spectra_data, _ = self._split_spectra(spectra_df)

        on_grid = energies.shape == self.E_MeV.shape and np.allclose(
            energies, self.E_MeV, rtol=1e-12, atol=0.0
        )
        if on_grid:
            spectrum_values = spectra_data[:, 0]
        else:
            interpolated = self.discretize_spectra(spectra_df)
            spectrum_values = interpolated.iloc[:, 1].to_numpy()

        readings = np.maximum(self.Amat.T @ spectrum_values, 0.0)
        return {name: float(val) for name, val in zip(self.detector_names, readings)}

    @staticmethod
    def _spectra_frame(spectra: Union[Dict[str, Any], pd.DataFrame]) -> pd.DataFrame:
        if isinstance(spectra, dict):
            return pd.DataFrame(spectra)
        if isinstance(spectra, pd.DataFrame):
            return spectra.copy()
        raise TypeError(
            "Input spectra must be either a pandas DataFrame or a dictionary. "
            f"Got type: {type(spectra)}"
        )

    @staticmethod
    def _split_spectra(spectra_df: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray, List[str]]:
        if "E_MeV" in spectra_df.columns:
            energies = spectra_df["E_MeV"].to_numpy(dtype=float)
            data = spectra_df.drop("E_MeV", axis=1)
        else:
            energies = spectra_df.iloc[:, 0].to_numpy(dtype=float)
            data = spectra_df.iloc[:, 1:]
        if data.shape[1] == 0 or len(energies) < 2:
            raise ValueError(
                "Spectra need an energy column, at least one spectrum column "
                "and at least two energy points"
            )
        return energies, data.to_numpy(dtype=float), [str(c) for c in data.columns]

    def plot_response_functions(self, show: bool = True):
        """Plot all response functions."""
        fig, ax = plt.subplots(1, 1, figsize=(10, 6))
        for key, rf in self.sensitivities.items():
            ax.plot(self.E_MeV, rf, label=key)
        ax.set_xscale("log")
        ax.set_xlabel("Energy, MeV")
        ax.set_ylabel("Response")
        ax.legend()
        ax.grid(True, alpha=0.3)
        ax.set_title("Response functions of the detector")
        if show:
            plt.show()
        return fig

    def plot_spectrum(
        self,
        result: Optional[Dict[str, Any]] = None,
        ax=None,
        show: bool = True,
    ):
        """
        Plot an unfolded spectrum, with its Poisson uncertainty band if present.

        Uses the most recent result when ``result`` is None.
        """
        if result is None:
            result = self.current_result
        if result is None:
            raise ValueError("No unfolding result to plot")

        if ax is None:
            fig, ax = plt.subplots(1, 1, figsize=(10, 6))
        else:
            fig = ax.figure

        energy = result["energy"]
        spectrum = result["spectrum"]
        ax.step(energy, spectrum, where="mid", label=result.get("method", "spectrum"))
        if result.get("spectrum_uncertainty") is not None:
            sigma = result["spectrum_uncertainty"]
            ax.fill_between(
                energy,
                np.maximum(spectrum - sigma, 0.0),
                spectrum + sigma,
                step="mid",
                alpha=0.3,
            )
        ax.set_xscale("log")
        ax.set_xlabel("Energy, MeV")
        ax.set_ylabel("Fluence rate per bin")
        ax.legend()
        ax.grid(True, alpha=0.3)
        if show:
            plt.show()
        return fig
