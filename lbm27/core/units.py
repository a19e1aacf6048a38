"""
units.py - 物理量與格子單位轉換

由雷諾數、特徵長度、特徵速度與格點間距推得鬆弛時間 τ 與時間步長 Δt。
"""

import logging
from typing import Tuple

from lbm27.config.core import CS2, MIN_TAU_STABLE
from lbm27.error_handling import ConfigError, InvalidRelaxationTime

logger = logging.getLogger(__name__)


class UnitConverter:
    """格子單位轉換器"""

    @staticmethod
    def tau_from_viscosity(viscosity: float) -> float:
        """τ = ν/c_s² + 0.5"""
        return viscosity / CS2 + 0.5

    @staticmethod
    def viscosity_from_tau(tau: float) -> float:
        """ν = c_s²(τ - 0.5)"""
        return CS2 * (tau - 0.5)

    @classmethod
    def to_lattice_parameters(cls, reynolds: float, char_length: float,
                              char_velocity: float, grid_spacing: float) -> Tuple[float, float]:
        """
        計算格子參數 (τ, Δt)

        ν = U·L/Re
        τ = 3ν + 0.5
        Δt = dx² / (2ν(τ - 0.5))

        Raises:
            ConfigError: 雷諾數為零或 NaN
            InvalidRelaxationTime: τ ≤ 0.5 (在計算Δt之前檢查)
        """
        if reynolds == 0 or reynolds != reynolds:
            raise ConfigError(f"雷諾數無效: Re = {reynolds}",
                              {'reynolds': reynolds})

        viscosity = char_velocity * char_length / reynolds
        tau = cls.tau_from_viscosity(viscosity)

        if not tau > MIN_TAU_STABLE:
            raise InvalidRelaxationTime(
                f"鬆弛時間 τ = {tau:.6f} ≤ {MIN_TAU_STABLE}，BGK碰撞不穩定",
                {'tau': tau, 'viscosity': viscosity, 'reynolds': reynolds,
                 'char_length': char_length, 'char_velocity': char_velocity})

        dt = grid_spacing ** 2 / (viscosity * (tau - 0.5) * 2.0)
        logger.debug(f"單位轉換: Re={reynolds}, ν={viscosity:.6e}, τ={tau:.6f}, Δt={dt:.6e}")
        return tau, dt
