# numerical_stability.py
"""
數值穩定性監控

- 流體節點巨觀量統計 (最大速度、密度範圍、NaN / inf 計數)
- 收斂殘差: 相鄰檢查點之間流體節點速度大小的最大變化量 / 當前最大速度
- 密度回退節點比例門檻檢查
"""

import math
import logging
from typing import Dict, Sequence

import taichi as ti

from lbm27.config.core import CS, BLOCK_DIM, MAX_VELOCITY_LU, DEFAULT_INSTABILITY_FRACTION
from lbm27.core.grid import FLUID

logger = logging.getLogger(__name__)


@ti.data_oriented
class NumericalStabilityMonitor:
    """數值穩定性監控器"""

    def __init__(self, shape: Sequence[int], instability_fraction: float = DEFAULT_INSTABILITY_FRACTION):
        self.shape = tuple(int(n) for n in shape)
        self.instability_fraction = float(instability_fraction)

        # 監控統計場
        self.max_velocity = ti.field(dtype=ti.f32)
        self.min_density = ti.field(dtype=ti.f32)
        self.max_density = ti.field(dtype=ti.f32)
        self.nan_count = ti.field(dtype=ti.i32)
        self.max_speed_change = ti.field(dtype=ti.f32)
        self.prev_speed = ti.field(dtype=ti.f32)

        builder = ti.FieldsBuilder()
        builder.place(self.max_velocity, self.min_density, self.max_density,
                      self.nan_count, self.max_speed_change)
        builder.dense(ti.ijk, self.shape).place(self.prev_speed)
        self._snode_tree = builder.finalize()
        self._destroyed = False

        self._has_baseline = False
        self.fallback_history = []

    def destroy(self) -> None:
        if not self._destroyed:
            self._snode_tree.destroy()
            self._destroyed = True

    @ti.kernel
    def check_field_stability(self, grid: ti.template()) -> ti.i32:
        """
        檢查流體節點的數值穩定性
        返回值: 0=正常, 1=警告 (超過馬赫數限制), 2=嚴重錯誤 (NaN / inf)
        """
        self.max_velocity[None] = 0.0
        self.min_density[None] = 3.0e38
        self.max_density[None] = 0.0
        self.nan_count[None] = 0

        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(grid.shape[0], grid.shape[1], grid.shape[2]):
            if grid.node_type[i, j, k] == FLUID:
                rho = grid.rho[i, j, k]
                u_mag = grid.u[i, j, k].norm()
                if ti.math.isnan(rho) or ti.math.isinf(rho) or ti.math.isnan(u_mag) or ti.math.isinf(u_mag):
                    ti.atomic_add(self.nan_count[None], 1)
                else:
                    ti.atomic_min(self.min_density[None], rho)
                    ti.atomic_max(self.max_density[None], rho)
                    ti.atomic_max(self.max_velocity[None], u_mag)

        status = 0
        if self.nan_count[None] > 0:
            status = 2
        elif self.max_velocity[None] > MAX_VELOCITY_LU * 1.0001:
            status = 1
        return status

    def diagnose_stability(self, grid, iteration: int) -> Dict:
        """執行穩定性診斷並返回報告字典"""
        status = self.check_field_stability(grid)
        max_velocity = float(self.max_velocity[None])
        return {
            'iteration': iteration,
            'status': status,
            'max_velocity': max_velocity,
            'min_density': float(self.min_density[None]),
            'max_density': float(self.max_density[None]),
            'nan_count': int(self.nan_count[None]),
            'mach_number': max_velocity / CS,
            'is_stable': status == 0,
        }

    @ti.kernel
    def _update_speed_change(self, grid: ti.template()):
        self.max_speed_change[None] = 0.0
        self.max_velocity[None] = 0.0
        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(grid.shape[0], grid.shape[1], grid.shape[2]):
            if grid.node_type[i, j, k] == FLUID:
                speed = grid.u[i, j, k].norm()
                ti.atomic_max(self.max_speed_change[None], ti.abs(speed - self.prev_speed[i, j, k]))
                ti.atomic_max(self.max_velocity[None], speed)
                self.prev_speed[i, j, k] = speed

    def convergence_residual(self, grid) -> float:
        """
        計算收斂殘差並更新基準速度場

        第一次呼叫只建立基準，返回 inf。
        最大速度為零時: 無變化返回 0，否則返回 inf。
        """
        self._update_speed_change(grid)
        if not self._has_baseline:
            self._has_baseline = True
            return math.inf

        delta = float(self.max_speed_change[None])
        max_speed = float(self.max_velocity[None])
        if math.isnan(delta) or math.isnan(max_speed):
            return math.inf
        if max_speed > 0.0:
            return delta / max_speed
        return 0.0 if delta == 0.0 else math.inf

    def fallback_fraction(self, fallback_count: int, total_nodes: int) -> float:
        fraction = fallback_count / total_nodes if total_nodes > 0 else 0.0
        if fallback_count > 0:
            self.fallback_history.append(fraction)
            if len(self.fallback_history) > 100:  # 保持最近100筆
                self.fallback_history.pop(0)
            logger.debug(f"密度回退節點: {fallback_count}/{total_nodes} ({fraction:.4%})")
        return fraction

    def should_abort_simulation(self, fraction: float) -> bool:
        """回退節點比例超過門檻時應中止模擬"""
        return fraction > self.instability_fraction
