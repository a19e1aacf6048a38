"""
D3Q27 格子模型

提供離散速度、權重、反向方向與平衡分布函數。
同一平衡態公式同時實作於主機端 (Python, 用於初始化與驗證) 與裝置端 (@ti.func)，
兩者的保護條件完全一致:

- ρ ≤ 0、ρ 為 NaN、|u|² > 1 或 |u|² 為 NaN → 返回 w_q
- 計算結果為負或 NaN → 返回 w_q·ρ/27
"""

import math
from typing import Sequence, Tuple

import numpy as np
import taichi as ti

from lbm27.config.core import (
    Q_3D, VELOCITIES_3D, WEIGHTS_3D, OPPOSITE_3D, FALLBACK_DIVISOR,
)


def _check_direction(direction: int) -> int:
    if not 0 <= direction < Q_3D:
        raise IndexError(f"方向索引超出範圍: {direction} (0..{Q_3D - 1})")
    return int(direction)


def weight(direction: int) -> float:
    return float(WEIGHTS_3D[_check_direction(direction)])


def opposite(direction: int) -> int:
    return int(OPPOSITE_3D[_check_direction(direction)])


def velocity_vector(direction: int) -> Tuple[int, int, int]:
    c = VELOCITIES_3D[_check_direction(direction)]
    return (int(c[0]), int(c[1]), int(c[2]))


def equilibrium(direction: int, density: float, velocity: Sequence[float]) -> float:
    """
    平衡分布函數 f_eq_q = w_q·ρ·(1 + 3(c·u) + 4.5(c·u)² − 1.5|u|²)

    Args:
        direction: 方向索引 0..26
        density: 密度 ρ
        velocity: 速度 (ux, uy, uz)
    """
    w_q = weight(direction)
    ux, uy, uz = (float(v) for v in velocity)
    u_sq = ux * ux + uy * uy + uz * uz

    if not (density > 0.0 and u_sq <= 1.0):
        return w_q

    cx, cy, cz = velocity_vector(direction)
    eu = cx * ux + cy * uy + cz * uz
    f_eq = w_q * density * (1.0 + 3.0 * eu + 4.5 * eu * eu - 1.5 * u_sq)

    if f_eq < 0.0 or math.isnan(f_eq):
        return w_q * density / FALLBACK_DIVISOR
    return f_eq


def equilibrium_distribution(density: float, velocity: Sequence[float]) -> np.ndarray:
    """全部27個方向的平衡分布 (主機端)"""
    return np.array([equilibrium(q, density, velocity) for q in range(Q_3D)], dtype=np.float64)


@ti.data_oriented
class LatticeModel:
    """
    D3Q27 格子模型

    主機端常數表為模組層級唯讀陣列；每個實例在建立時上傳一次到Taichi場，
    供各計算階段的核心函數使用。
    """

    Q = Q_3D

    def __init__(self):
        self.w = ti.field(dtype=ti.f32, shape=Q_3D)
        self.e = ti.Vector.field(3, dtype=ti.i32, shape=Q_3D)
        self.opposite_dir = ti.field(dtype=ti.i32, shape=Q_3D)

        self.w.from_numpy(WEIGHTS_3D.astype(np.float32))
        self.e.from_numpy(np.ascontiguousarray(VELOCITIES_3D, dtype=np.int32))
        self.opposite_dir.from_numpy(np.ascontiguousarray(OPPOSITE_3D, dtype=np.int32))

    # 主機端介面
    weight = staticmethod(weight)
    opposite = staticmethod(opposite)
    velocity_vector = staticmethod(velocity_vector)
    equilibrium = staticmethod(equilibrium)
    equilibrium_distribution = staticmethod(equilibrium_distribution)

    @ti.func
    def equilibrium_d3q27_safe(self, q, rho, u):
        """裝置端平衡分布函數，保護條件與主機端 equilibrium 相同"""
        w_q = self.w[q]
        u_sq = u.dot(u)
        result = w_q

        if rho > 0.0 and u_sq <= 1.0:
            e_q = ti.cast(self.e[q], ti.f32)
            eu = e_q.dot(u)
            f_eq = w_q * rho * (1.0 + 3.0 * eu + 4.5 * eu * eu - 1.5 * u_sq)
            if f_eq < 0.0 or f_eq != f_eq:
                result = w_q * rho / FALLBACK_DIVISOR
            else:
                result = f_eq

        return result

    @ti.kernel
    def _fill_equilibrium(self, out: ti.types.ndarray(), rho: ti.f32, ux: ti.f32, uy: ti.f32, uz: ti.f32):
        u = ti.Vector([ux, uy, uz])
        for q in range(Q_3D):
            out[q] = self.equilibrium_d3q27_safe(q, rho, u)

    def device_equilibrium(self, density: float, velocity: Sequence[float]) -> np.ndarray:
        """在裝置端計算27個方向的平衡分布 (用於驗證主機 / 裝置一致性)"""
        out = np.zeros(Q_3D, dtype=np.float32)
        ux, uy, uz = (float(v) for v in velocity)
        self._fill_equilibrium(out, float(density), ux, uy, uz)
        return out
