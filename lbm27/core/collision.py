"""
碰撞階段 - BGK單鬆弛時間碰撞

讀取 current 網格，寫入 next 網格:

- Fluid: 計算巨觀量 → 密度保護 → 馬赫數截斷 → f' = f + ω(f_eq - f)
- Inlet: 以入口狀態的平衡分布覆寫 (ρ = ρ_ref, u = u_in)
- Solid / Outlet: 原樣複製

密度無效 (ρ ≤ 0、NaN 或 inf) 的流體節點以 ρ = 1、u = 0 的靜止平衡態取代，
並計入本次調度的回退節點數。
"""

import logging
from typing import Sequence

import taichi as ti

from lbm27.config.core import Q_3D, BLOCK_DIM, MAX_VELOCITY_LU
from lbm27.core.grid import FLUID, INLET
from lbm27.error_handling import InvalidRelaxationTime

logger = logging.getLogger(__name__)

# float32 可表示的有限上界
F32_FINITE_LIMIT = 3.0e38


@ti.data_oriented
class CollisionStage:
    """BGK碰撞階段"""

    def __init__(self, lattice, tau: float, rho_ref: float, inlet_velocity: Sequence[float]):
        if not tau > 0.5:
            raise InvalidRelaxationTime(f"鬆弛時間 τ = {tau} ≤ 0.5", {'tau': tau})

        self.lattice = lattice
        self.tau = float(tau)
        self.omega = 1.0 / self.tau
        self.rho_ref = float(rho_ref)
        self.inlet_velocity = tuple(float(v) for v in inlet_velocity)

        # 本次調度中觸發密度回退的節點數
        self.fallback_count = ti.field(dtype=ti.i32, shape=())

    def apply(self, src, dst) -> int:
        """
        執行一次碰撞 (src → dst)

        Returns:
            觸發密度回退的節點數
        """
        self.fallback_count[None] = 0
        ux, uy, uz = self.inlet_velocity
        self._collide(src, dst, self.omega, self.rho_ref, ux, uy, uz)
        return int(self.fallback_count[None])

    @ti.func
    def _limit_mach(self, u):
        """|u| > 0.3c_s 時等比例縮放"""
        speed = u.norm()
        result = u
        if speed > MAX_VELOCITY_LU:
            result = u * (MAX_VELOCITY_LU / speed)
        return result

    @ti.func
    def _collide_fluid(self, src: ti.template(), dst: ti.template(), i, j, k, omega):
        rho = 0.0
        momentum = ti.Vector([0.0, 0.0, 0.0])
        for q in range(Q_3D):
            f_q = src.f[q, i, j, k]
            rho += f_q
            momentum += f_q * ti.cast(self.lattice.e[q], ti.f32)

        # NaN 比較恆為假，inf 超出有限上界
        valid = 0
        u = ti.Vector([0.0, 0.0, 0.0])
        if rho > 0.0 and rho <= F32_FINITE_LIMIT:
            u = momentum / rho
            if u.dot(u) <= F32_FINITE_LIMIT:
                valid = 1

        if valid == 1:
            u = self._limit_mach(u)
            for q in range(Q_3D):
                f_q = src.f[q, i, j, k]
                f_eq = self.lattice.equilibrium_d3q27_safe(q, rho, u)
                dst.f[q, i, j, k] = f_q + omega * (f_eq - f_q)
            dst.rho[i, j, k] = rho
            dst.u[i, j, k] = u
        else:
            # 靜止平衡態 (ρ = 1, u = 0)
            for q in range(Q_3D):
                dst.f[q, i, j, k] = self.lattice.w[q]
            dst.rho[i, j, k] = 1.0
            dst.u[i, j, k] = ti.Vector([0.0, 0.0, 0.0])
            ti.atomic_add(self.fallback_count[None], 1)

    @ti.kernel
    def _collide(self, src: ti.template(), dst: ti.template(), omega: ti.f32,
                 rho_ref: ti.f32, ux: ti.f32, uy: ti.f32, uz: ti.f32):
        u_in = ti.Vector([ux, uy, uz])
        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(src.shape[0], src.shape[1], src.shape[2]):
            node = src.node_type[i, j, k]
            dst.node_type[i, j, k] = node

            if node == FLUID:
                self._collide_fluid(src, dst, i, j, k, omega)
            elif node == INLET:
                for q in range(Q_3D):
                    dst.f[q, i, j, k] = self.lattice.equilibrium_d3q27_safe(q, rho_ref, u_in)
                dst.rho[i, j, k] = rho_ref
                dst.u[i, j, k] = u_in
            else:
                for q in range(Q_3D):
                    dst.f[q, i, j, k] = src.f[q, i, j, k]
                dst.rho[i, j, k] = src.rho[i, j, k]
                dst.u[i, j, k] = src.u[i, j, k]
