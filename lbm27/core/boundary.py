# boundary.py
"""
模組化邊界條件系統

基於策略設計模式，每種節點類型的邊界處理獨立封裝，由 BoundaryStage 統一調度。
所有策略在遷移之後、直接於 current 網格上原地執行，且只寫入自身類型的節點；
流體節點不被任何策略修改，因此各策略的執行順序不影響結果。

邊界條件類型:
    - BounceBackBoundary: 固體節點完全反彈 (f_q ← f_opp(q), u = 0, ρ = ρ_ref)
    - InletBoundary: 入口節點固定為入口狀態的平衡分布
    - OutletBoundary: 出口節點零梯度外推 (複製上游流體鄰點)
"""

import logging
from abc import ABC, abstractmethod
from typing import Sequence, Tuple

import taichi as ti

from lbm27.config.core import (
    Q_3D, BLOCK_DIM, OUTLET_FALLBACK_DENSITY, OUTLET_FALLBACK_SPEED,
)
from lbm27.core.grid import FLUID, SOLID, INLET, OUTLET

logger = logging.getLogger(__name__)


def resolve_flow_axis(inlet_velocity: Sequence[float]) -> Tuple[int, int]:
    """
    由入口速度決定主流方向

    Returns:
        (axis, sign): 入口速度絕對值最大的分量所在軸與其正負號；
        入口速度為零時預設 +x
    """
    magnitudes = [abs(float(v)) for v in inlet_velocity]
    axis = max(range(3), key=lambda a: magnitudes[a])
    if magnitudes[axis] == 0.0:
        return 0, 1
    return axis, (1 if float(inlet_velocity[axis]) > 0.0 else -1)


@ti.data_oriented
class BoundaryConditionBase(ABC):
    """
    邊界條件基類

    所有子類實現 apply(grid)，在傳入網格上原地更新對應類型的節點。
    """

    @abstractmethod
    def apply(self, grid):
        pass


@ti.data_oriented
class BounceBackBoundary(BoundaryConditionBase):
    """
    反彈邊界條件 - 固體節點

    Algorithm:
        f_q(x_b) ← f_opp(q)(x_b)，對所有方向同時成立 (成對交換)
        u = 0, ρ = ρ_ref
    """

    def __init__(self, lattice, rho_ref: float):
        self.lattice = lattice
        self.rho_ref = float(rho_ref)

    def apply(self, grid):
        self._apply_bounce_back_kernel(grid, self.rho_ref)

    @ti.kernel
    def _apply_bounce_back_kernel(self, grid: ti.template(), rho_ref: ti.f32):
        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(grid.shape[0], grid.shape[1], grid.shape[2]):
            if grid.node_type[i, j, k] == SOLID:
                for q in range(1, Q_3D):
                    opp_q = self.lattice.opposite_dir[q]
                    # 每對方向只交換一次
                    if q < opp_q:
                        temp = grid.f[q, i, j, k]
                        grid.f[q, i, j, k] = grid.f[opp_q, i, j, k]
                        grid.f[opp_q, i, j, k] = temp
                grid.u[i, j, k] = ti.Vector([0.0, 0.0, 0.0])
                grid.rho[i, j, k] = rho_ref


@ti.data_oriented
class InletBoundary(BoundaryConditionBase):
    """入口邊界條件 - 以 equilibrium(q, ρ_ref, u_in) 覆寫，與碰撞階段的入口處理同式"""

    def __init__(self, lattice, rho_ref: float, inlet_velocity: Sequence[float]):
        self.lattice = lattice
        self.rho_ref = float(rho_ref)
        self.inlet_velocity = tuple(float(v) for v in inlet_velocity)

    def apply(self, grid):
        ux, uy, uz = self.inlet_velocity
        self._apply_inlet_kernel(grid, self.rho_ref, ux, uy, uz)

    @ti.kernel
    def _apply_inlet_kernel(self, grid: ti.template(), rho_ref: ti.f32,
                            ux: ti.f32, uy: ti.f32, uz: ti.f32):
        u_in = ti.Vector([ux, uy, uz])
        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(grid.shape[0], grid.shape[1], grid.shape[2]):
            if grid.node_type[i, j, k] == INLET:
                for q in range(Q_3D):
                    grid.f[q, i, j, k] = self.lattice.equilibrium_d3q27_safe(q, rho_ref, u_in)
                grid.rho[i, j, k] = rho_ref
                grid.u[i, j, k] = u_in


@ti.data_oriented
class OutletBoundary(BoundaryConditionBase):
    """
    流出邊界條件 - 零梯度外推

    出口節點複製主流方向上游一格的 f、ρ、u (僅當該鄰點為流體)；
    否則使用合成流出狀態 ρ = 1.0、u = 0.01 (沿主流方向) 的平衡分布。
    """

    def __init__(self, lattice, inlet_velocity: Sequence[float]):
        self.lattice = lattice
        self.flow_axis, self.flow_sign = resolve_flow_axis(inlet_velocity)

    def apply(self, grid):
        offset = [0, 0, 0]
        offset[self.flow_axis] = -self.flow_sign
        fallback_u = [0.0, 0.0, 0.0]
        fallback_u[self.flow_axis] = OUTLET_FALLBACK_SPEED * self.flow_sign
        self._apply_outlet_kernel(grid, offset[0], offset[1], offset[2],
                                  fallback_u[0], fallback_u[1], fallback_u[2])

    @ti.kernel
    def _apply_outlet_kernel(self, grid: ti.template(), di: ti.i32, dj: ti.i32, dk: ti.i32,
                             fx: ti.f32, fy: ti.f32, fz: ti.f32):
        nx, ny, nz = grid.shape[0], grid.shape[1], grid.shape[2]
        u_fallback = ti.Vector([fx, fy, fz])
        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(nx, ny, nz):
            if grid.node_type[i, j, k] == OUTLET:
                ni, nj, nk = i + di, j + dj, k + dk
                upstream_fluid = 0
                if 0 <= ni < nx and 0 <= nj < ny and 0 <= nk < nz:
                    if grid.node_type[ni, nj, nk] == FLUID:
                        upstream_fluid = 1

                if upstream_fluid == 1:
                    for q in range(Q_3D):
                        grid.f[q, i, j, k] = grid.f[q, ni, nj, nk]
                    grid.rho[i, j, k] = grid.rho[ni, nj, nk]
                    grid.u[i, j, k] = grid.u[ni, nj, nk]
                else:
                    for q in range(Q_3D):
                        grid.f[q, i, j, k] = self.lattice.equilibrium_d3q27_safe(
                            q, OUTLET_FALLBACK_DENSITY, u_fallback)
                    grid.rho[i, j, k] = OUTLET_FALLBACK_DENSITY
                    grid.u[i, j, k] = u_fallback


class BoundaryStage:
    """
    邊界條件管理器 - 策略模式實現

    遷移之後在 current 網格上原地執行 Solid → Inlet → Outlet 三種策略；
    Fluid 節點不受影響。
    """

    def __init__(self, lattice, rho_ref: float, inlet_velocity: Sequence[float]):
        self.bounce_back = BounceBackBoundary(lattice, rho_ref)
        self.inlet = InletBoundary(lattice, rho_ref, inlet_velocity)
        self.outlet = OutletBoundary(lattice, inlet_velocity)

        axis_name = "xyz"[self.outlet.flow_axis]
        sign = "+" if self.outlet.flow_sign > 0 else "-"
        logger.debug(f"邊界條件管理器初始化完成 (主流方向 {sign}{axis_name})")

    def apply(self, grid) -> None:
        try:
            self.bounce_back.apply(grid)
            self.inlet.apply(grid)
            self.outlet.apply(grid)
        except Exception as e:
            logger.error(f"❌ 邊界條件應用失敗: {e}")
            raise

