"""
units.py 測試套件
測試雷諾數到鬆弛時間與時間步長的換算
"""

import pytest

from lbm27.core.units import UnitConverter
from lbm27.error_handling import ConfigError, InvalidRelaxationTime


class TestUnitConverter:
    """格子單位轉換測試"""

    def test_lattice_parameters(self):
        """測試 ν = UL/Re, τ = 3ν + 0.5, Δt = dx²/(2ν(τ-0.5))"""
        tau, dt = UnitConverter.to_lattice_parameters(100.0, 10.0, 0.1, 1.0)
        assert tau == pytest.approx(0.53)
        assert dt == pytest.approx(1.0 / (0.01 * 0.03 * 2.0))

    def test_grid_spacing_scales_dt(self):
        _, dt_fine = UnitConverter.to_lattice_parameters(10.0, 1.0, 0.05, 0.5)
        _, dt_coarse = UnitConverter.to_lattice_parameters(10.0, 1.0, 0.05, 1.0)
        assert dt_coarse == pytest.approx(4.0 * dt_fine)

    def test_viscosity_roundtrip(self):
        for viscosity in (0.001, 0.01, 0.1, 1.0 / 6.0):
            tau = UnitConverter.tau_from_viscosity(viscosity)
            assert UnitConverter.viscosity_from_tau(tau) == pytest.approx(viscosity)
        assert UnitConverter.tau_from_viscosity(1.0 / 6.0) == pytest.approx(1.0)

    def test_zero_reynolds(self):
        with pytest.raises(ConfigError):
            UnitConverter.to_lattice_parameters(0.0, 1.0, 0.05, 1.0)

    def test_nan_reynolds(self):
        with pytest.raises(ConfigError):
            UnitConverter.to_lattice_parameters(float('nan'), 1.0, 0.05, 1.0)

    def test_zero_velocity_gives_unstable_tau(self):
        """測試 ν = 0 時 τ = 0.5 被拒絕 (在計算Δt之前)"""
        with pytest.raises(InvalidRelaxationTime) as exc_info:
            UnitConverter.to_lattice_parameters(100.0, 1.0, 0.0, 1.0)
        assert exc_info.value.context['tau'] == pytest.approx(0.5)

    def test_negative_viscosity(self):
        with pytest.raises(InvalidRelaxationTime):
            UnitConverter.to_lattice_parameters(100.0, 1.0, -0.05, 1.0)
