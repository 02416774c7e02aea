import logging

import numpy as np
import pandas as pd
import pytest

from nnsunfold import Detector

from _synthetic import CONFIGURATIONS, E_MEV, TRUE_SPECTRUM, response_frame, true_readings


@pytest.fixture
def flat_spectrum():
    """Flat spectrum sampled on a grid wider than the detector grid"""
    return {"E_MeV": np.logspace(-9, 2, 23), "Phi": np.ones(23)}


class TestDetectorSetup:
    def test_dimensions(self, detector):
        """Detector and energy-bin counts come from the response table"""
        assert detector.n_detectors == len(CONFIGURATIONS)
        assert detector.n_energy_bins == len(E_MEV)
        assert detector.detector_names == list(CONFIGURATIONS)

    def test_energy_column_may_be_unnamed(self):
        """The first column is the energy grid when E_MeV is absent"""
        frame = response_frame().rename(columns={"E_MeV": "energy"})
        detector = Detector(frame)
        np.testing.assert_allclose(detector.E_MeV, E_MEV)
        assert "energy" not in detector.detector_names

    def test_single_energy_bin_rejected(self):
        """A response table needs at least two energy bins"""
        with pytest.raises(ValueError):
            Detector(response_frame().iloc[:1])

    def test_response_matrix_follows_detector_order(self, detector):
        """Rows follow detector order and unknown readings are ignored"""
        A = detector.get_response_matrix({"3": 1.0, "1": 2.0, "unknown": 5.0})
        assert A.shape == (2, len(E_MEV))
        np.testing.assert_array_equal(A[0], detector.sensitivities["1"])
        np.testing.assert_array_equal(A[1], detector.sensitivities["3"])

    def test_str(self, detector):
        """The string form reports the grid size"""
        assert "energy bins: 12" in str(detector)


class TestEffectiveReadings:
    def test_on_grid_spectrum(self, detector):
        """Folding a spectrum on the grid reproduces the readings"""
        eff = detector.get_effective_readings_for_spectra(
            {"E_MeV": E_MEV, "Phi": TRUE_SPECTRUM}
        )
        expected = true_readings()
        assert set(eff) == set(expected)
        for name, value in expected.items():
            assert eff[name] == pytest.approx(value, rel=1e-12)

    def test_dataframe_input(self, detector):
        """A DataFrame spectrum is accepted"""
        eff = detector.get_effective_readings_for_spectra(
            pd.DataFrame({"E_MeV": E_MEV, "Phi": TRUE_SPECTRUM})
        )
        assert eff["2"] == pytest.approx(true_readings()["2"], rel=1e-12)

    def test_off_grid_spectrum_is_interpolated(self, detector, flat_spectrum):
        """An off-grid spectrum is interpolated before folding"""
        eff = detector.get_effective_readings_for_spectra(flat_spectrum)
        for name in CONFIGURATIONS:
            assert eff[name] == pytest.approx(detector.sensitivities[name].sum(), rel=1e-9)

    def test_all_zeros(self, detector):
        """A zero spectrum gives zero readings"""
        eff = detector.get_effective_readings_for_spectra(
            {"E_MeV": [1e-9, 1e-4, 1.0, 100.0], "Phi": [0.0, 0.0, 0.0, 0.0]}
        )
        assert all(value == 0.0 for value in eff.values())

    def test_mismatched_lengths(self, detector):
        """Energy and flux columns must have the same length"""
        with pytest.raises(ValueError):
            detector.get_effective_readings_for_spectra(
                {"E_MeV": [1.0, 2.0, 3.0], "Phi": [0.1, 0.2]}
            )

    def test_unsupported_type(self, detector):
        """Only dicts and DataFrames are accepted"""
        with pytest.raises(TypeError):
            detector.get_effective_readings_for_spectra([0.1, 0.2])


class TestDiscretize:
    def test_flat_spectrum_stays_flat(self, detector, flat_spectrum):
        """Interpolating a constant spectrum gives a constant"""
        result = detector.discretize_spectra(flat_spectrum)
        assert list(result.columns) == ["E_MeV", "Phi"]
        np.testing.assert_allclose(result["Phi"], 1.0)

    def test_outside_input_range_is_zero(self, detector, caplog):
        """Bins outside the input range are zero and trigger warnings"""
        partial = {"E_MeV": [1e-5, 1e-3, 1e-1], "Phi": [1.0, 2.0, 1.0]}
        with caplog.at_level(logging.WARNING, logger="nnsunfold.detector"):
            result = detector.discretize_spectra(partial)

        inside = (E_MEV >= 1e-5) & (E_MEV <= 1e-1)
        assert np.all(result["Phi"].to_numpy()[~inside] == 0.0)
        assert np.all(result["Phi"].to_numpy()[inside] > 0.0)
        assert len(caplog.records) == 2

    def test_several_spectra_keep_their_names(self, detector, flat_spectrum):
        """Each spectrum keeps its column name"""
        frame = pd.DataFrame(flat_spectrum).rename(columns={"Phi": "bare"})
        frame["shielded"] = 2.0
        result = detector.discretize_spectra(frame)
        assert list(result.columns) == ["E_MeV", "bare", "shielded"]
        np.testing.assert_allclose(result["shielded"], 2.0)
