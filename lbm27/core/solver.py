"""
D3Q27 LBM 求解器主迴圈

每次迭代依序執行 碰撞 → 遷移 → 邊界 三個階段，階段之間透過雙緩衝交換資料:

    collision:  current → next, swap
    streaming:  current → next, swap
    boundary:   current (原地)

迭代計數加一後依設定間隔計算收斂殘差、輸出巨觀量快照，並推進狀態機:

    RUNNING → CONVERGED              殘差 < 收斂容差
    RUNNING → MAX_ITERATIONS_REACHED 迭代數達到上限
    RUNNING → FAILED                 數值不穩定或快照輸出失敗
    RUNNING → CANCELLED              request_stop() (迭代之間檢查)
"""

import math
import time
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import taichi as ti

from lbm27.config.core import CS2, DEFAULT_INSTABILITY_FRACTION, MIN_TAU_STABLE
from lbm27.core.lattice import LatticeModel
from lbm27.core.grid import GridBuffer, NodeType, FLUID
from lbm27.core.collision import CollisionStage
from lbm27.core.streaming import StreamingStage
from lbm27.core.boundary import BoundaryStage, resolve_flow_axis
from lbm27.core.numerical_stability import NumericalStabilityMonitor
from lbm27.error_handling import (
    CFDError, ConfigError, GeometryError, InvalidRelaxationTime,
    NumericalInstability, SnapshotIOError, handle_cfd_error,
)

logger = logging.getLogger(__name__)


class SolverState(Enum):
    """求解器狀態"""
    RUNNING = "running"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SimulationParameters:
    """
    求解器參數

    Invariants:
        tau > 0.5 (建立時檢查，違反時拋出 InvalidRelaxationTime)
    """
    reference_density: float
    inlet_velocity: Tuple[float, float, float]
    tau: float
    max_iterations: int
    convergence_tolerance: float
    output_interval: int = 100
    convergence_interval: int = 1
    instability_fraction: float = DEFAULT_INSTABILITY_FRACTION

    def __post_init__(self):
        if not self.tau > MIN_TAU_STABLE:
            raise InvalidRelaxationTime(f"鬆弛時間 τ = {self.tau} ≤ {MIN_TAU_STABLE}",
                                        {'tau': self.tau})
        if len(self.inlet_velocity) != 3:
            raise ConfigError(f"入口速度必須包含3個分量: {self.inlet_velocity}")
        self.inlet_velocity = tuple(float(v) for v in self.inlet_velocity)
        if self.max_iterations < 0:
            raise ConfigError(f"最大迭代數不可為負: {self.max_iterations}")
        if self.output_interval < 1 or self.convergence_interval < 1:
            raise ConfigError("輸出間隔與收斂檢查間隔必須 ≥ 1",
                              {'output_interval': self.output_interval,
                               'convergence_interval': self.convergence_interval})

    @property
    def omega(self) -> float:
        return 1.0 / self.tau

    @property
    def flow_axis(self) -> Tuple[int, int]:
        """主流方向 (axis, sign)，出口外推沿此方向"""
        return resolve_flow_axis(self.inlet_velocity)

    @classmethod
    def from_config(cls, config) -> "SimulationParameters":
        return cls(
            reference_density=config.physics.density,
            inlet_velocity=config.physics.inlet_velocity,
            tau=config.calculate_tau(),
            max_iterations=config.simulation.max_iterations,
            convergence_tolerance=config.simulation.convergence_tolerance,
            output_interval=config.output.output_frequency,
            convergence_interval=config.simulation.convergence_interval,
            instability_fraction=config.simulation.instability_fraction,
        )


@dataclass
class MacroscopicSnapshot:
    """單一迭代的巨觀量快照"""
    iteration: int
    density: np.ndarray          # (nx, ny, nz)
    velocity: np.ndarray         # (nx, ny, nz, 3)
    pressure: np.ndarray         # (nx, ny, nz), p = ρ c_s²
    vorticity: np.ndarray        # (nx, ny, nz, 3), ∇ × u
    node_type: np.ndarray        # (nx, ny, nz)
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    residual: float = math.inf

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.density.shape

    @property
    def velocity_magnitude(self) -> np.ndarray:
        return np.linalg.norm(self.velocity, axis=-1)

    def statistics(self) -> Dict[str, float]:
        """流體節點統計"""
        fluid = self.node_type == FLUID
        if not fluid.any():
            return {'fluid_nodes': 0}
        speed = self.velocity_magnitude[fluid]
        rho = self.density[fluid]
        return {
            'fluid_nodes': int(fluid.sum()),
            'max_velocity': float(speed.max()),
            'mean_velocity': float(speed.mean()),
            'min_density': float(rho.min()),
            'max_density': float(rho.max()),
            'mean_density': float(rho.mean()),
        }


def _derivative(values: np.ndarray, spacing: float, axis: int) -> np.ndarray:
    """中央差分 (邊界單側差分)；該軸少於2個格點時導數為零"""
    if values.shape[axis] < 2:
        return np.zeros_like(values)
    return np.gradient(values, spacing, axis=axis)


def compute_vorticity(velocity: np.ndarray, node_type: np.ndarray,
                      spacing: Sequence[float] = (1.0, 1.0, 1.0)) -> np.ndarray:
    """
    計算渦量 ω = ∇ × u

    Args:
        velocity: 速度場 (nx, ny, nz, 3)
        node_type: 節點類型 (nx, ny, nz)，非流體節點的渦量設為零
        spacing: 格點間距 (dx, dy, dz)
    """
    dx, dy, dz = spacing
    ux, uy, uz = velocity[..., 0], velocity[..., 1], velocity[..., 2]

    vorticity = np.stack([
        _derivative(uz, dy, 1) - _derivative(uy, dz, 2),
        _derivative(ux, dz, 2) - _derivative(uz, dx, 0),
        _derivative(uy, dx, 0) - _derivative(ux, dy, 1),
    ], axis=-1).astype(np.float32)

    vorticity[node_type != FLUID] = 0.0
    return vorticity


def validate_node_types(node_types: np.ndarray) -> np.ndarray:
    """檢查幾何分類陣列，返回 uint8 副本"""
    node_types = np.asarray(node_types)
    if node_types.ndim != 3:
        raise GeometryError(f"節點類型陣列必須是3維，收到形狀 {node_types.shape}")
    if node_types.size == 0:
        raise GeometryError("節點類型陣列為空")
    if not np.issubdtype(node_types.dtype, np.integer):
        raise GeometryError(f"節點類型必須為整數，收到 {node_types.dtype}")
    valid_tags = [int(t) for t in NodeType]
    if not np.isin(node_types, valid_tags).all():
        unknown = sorted(set(np.unique(node_types).tolist()) - set(valid_tags))
        raise GeometryError(f"未知的節點類型標籤: {unknown}")
    return node_types.astype(np.uint8)


SnapshotSink = Callable[[MacroscopicSnapshot], None]


class SolverLoop:
    """
    LBM 求解器主迴圈

    擁有雙緩衝網格與三個計算階段。網格在 release() 時釋放；
    run() 結束時不自動釋放，以便取得最終快照。可作為 context manager 使用。
    """

    def __init__(self, params: SimulationParameters, node_types: np.ndarray,
                 spacing: Sequence[float] = (1.0, 1.0, 1.0),
                 lattice: Optional[LatticeModel] = None):
        self.params = params
        self.node_types = validate_node_types(node_types)
        self.shape = self.node_types.shape
        self.spacing = tuple(float(s) for s in spacing)

        self.lattice = lattice if lattice is not None else LatticeModel()
        self.buffers = GridBuffer(self.shape)
        self.monitor = None
        try:
            self.buffers.initialize(self.lattice, self.node_types,
                                    params.reference_density, params.inlet_velocity)
            self.collision = CollisionStage(self.lattice, params.tau,
                                            params.reference_density, params.inlet_velocity)
            self.streaming = StreamingStage(self.lattice)
            self.boundary = BoundaryStage(self.lattice, params.reference_density,
                                          params.inlet_velocity)
            self.monitor = NumericalStabilityMonitor(self.shape, params.instability_fraction)
            # 以初始狀態作為收斂殘差的基準
            self.monitor.convergence_residual(self.buffers.current)
        except Exception:
            self.release()
            raise

        self.state = SolverState.RUNNING
        self.iteration = 0
        self.residual = math.inf
        self.last_fallback_count = 0
        self.stage_counts: Dict[str, int] = {'collision': 0, 'streaming': 0, 'boundary': 0}
        self.sinks: List[SnapshotSink] = []
        self._stop_requested = False
        self._start_time = None

        axis, sign = params.flow_axis
        logger.info(f"✅ 求解器初始化完成: 網格 {self.shape}, τ = {params.tau:.4f}, "
                    f"ω = {params.omega:.4f}, 主流方向 {'+' if sign > 0 else '-'}{'xyz'[axis]}")

    # ------------------------------------------------------------------
    # 資源管理
    # ------------------------------------------------------------------

    def __enter__(self) -> "SolverLoop":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def released(self) -> bool:
        return self.buffers.released

    def release(self) -> None:
        """釋放雙緩衝網格與監控場，可重複呼叫"""
        self.buffers.release()
        if self.monitor is not None:
            self.monitor.destroy()

    # ------------------------------------------------------------------
    # 控制
    # ------------------------------------------------------------------

    def add_sink(self, sink: SnapshotSink) -> None:
        """註冊快照接收端 (同步呼叫)"""
        self.sinks.append(sink)

    def request_stop(self) -> None:
        """請求停止；在下一次迭代開始前生效"""
        self._stop_requested = True

    @property
    def finished(self) -> bool:
        return self.state != SolverState.RUNNING

    def _fail(self, error: CFDError) -> None:
        self.state = SolverState.FAILED
        handle_cfd_error(error, {'iteration': self.iteration})

    def step(self) -> SolverState:
        """執行一次完整迭代 (碰撞 → 遷移 → 邊界)"""
        if self.finished:
            return self.state
        if self.released:
            raise RuntimeError("求解器資源已釋放")

        buffers = self.buffers

        fallback_count = self.collision.apply(buffers.current, buffers.next)
        buffers.swap()
        self.stage_counts['collision'] += 1

        self.streaming.apply(buffers.current, buffers.next)
        buffers.swap()
        self.stage_counts['streaming'] += 1

        self.boundary.apply(buffers.current)
        self.stage_counts['boundary'] += 1

        ti.sync()
        self.iteration += 1
        self.last_fallback_count = fallback_count

        fraction = self.monitor.fallback_fraction(fallback_count, buffers.total_nodes)
        if self.monitor.should_abort_simulation(fraction):
            error = NumericalInstability(
                f"迭代 {self.iteration}: 密度回退節點比例 {fraction:.2%} 超過門檻 "
                f"{self.params.instability_fraction:.2%}",
                {'fallback_count': fallback_count, 'fraction': fraction})
            self._fail(error)
            raise error

        if self.iteration % self.params.convergence_interval == 0:
            self.residual = self.monitor.convergence_residual(buffers.current)

        if self.iteration % self.params.output_interval == 0:
            report = self.monitor.diagnose_stability(buffers.current, self.iteration)
            if not report['is_stable']:
                logger.warning(f"⚠️  迭代 {self.iteration}: 最大速度 {report['max_velocity']:.4f} "
                               f"(Ma = {report['mach_number']:.3f}), NaN節點 {report['nan_count']}")
            self._emit_snapshot()
            logger.info(f"📊 迭代 {self.iteration}: 殘差 = {self.residual:.3e}, "
                        f"最大速度 = {report['max_velocity']:.4f}")

        if self.residual < self.params.convergence_tolerance:
            self.state = SolverState.CONVERGED
        elif self.iteration >= self.params.max_iterations:
            self.state = SolverState.MAX_ITERATIONS_REACHED

        return self.state

    def run(self) -> SolverState:
        """
        執行直到終止狀態

        Returns:
            終止狀態 (CONVERGED / MAX_ITERATIONS_REACHED / CANCELLED)

        Raises:
            NumericalInstability, SnapshotIOError: 狀態轉為 FAILED 後拋出
        """
        self._start_time = time.time()
        logger.info(f"🔧 開始模擬: 最大迭代數 {self.params.max_iterations}, "
                    f"收斂容差 {self.params.convergence_tolerance:g}")

        if self.iteration == 0:
            self._emit_snapshot()
            if self.params.max_iterations == 0:
                self.state = SolverState.MAX_ITERATIONS_REACHED

        while self.state == SolverState.RUNNING:
            if self._stop_requested:
                self.state = SolverState.CANCELLED
                logger.warning(f"⚠️  模擬於迭代 {self.iteration} 被取消")
                break
            self.step()

        self._log_summary()
        return self.state

    # ------------------------------------------------------------------
    # 快照
    # ------------------------------------------------------------------

    def snapshot(self) -> MacroscopicSnapshot:
        """由 current 網格建立巨觀量快照"""
        grid = self.buffers.current
        density = grid.rho.to_numpy()
        velocity = grid.u.to_numpy()
        node_type = grid.node_types_numpy()
        return MacroscopicSnapshot(
            iteration=self.iteration,
            density=density,
            velocity=velocity,
            pressure=(density * CS2).astype(np.float32),
            vorticity=compute_vorticity(velocity, node_type, self.spacing),
            node_type=node_type,
            spacing=self.spacing,
            residual=self.residual,
        )

    def _emit_snapshot(self) -> None:
        if not self.sinks:
            return
        snapshot = self.snapshot()
        for sink in self.sinks:
            try:
                sink(snapshot)
            except SnapshotIOError as e:
                self._fail(e)
                raise
            except Exception as e:
                error = SnapshotIOError(f"快照輸出失敗 (迭代 {self.iteration}): {e}",
                                        {'iteration': self.iteration})
                self._fail(error)
                raise error from e

    def _log_summary(self) -> None:
        elapsed = time.time() - self._start_time if self._start_time else 0.0
        node_updates = self.iteration * self.buffers.total_nodes
        mlups = node_updates / elapsed / 1e6 if elapsed > 0 else 0.0
        if self.state == SolverState.CONVERGED:
            logger.info(f"✅ 模擬於 {self.iteration} 次迭代後收斂 (殘差 {self.residual:.3e})")
        else:
            logger.info(f"✅ 模擬結束: {self.state.value}, 共 {self.iteration} 次迭代")
        logger.info(f"📊 耗時 {elapsed:.2f}s, 吞吐量 {mlups:.2f} MLUPs")
