"""
格點網格與雙緩衝

Grid 以結構陣列 (SoA) 佈局保存每個格點的27個分布函數、密度、速度與節點類型；
GridBuffer 持有兩個相同尺寸的 Grid，追蹤哪一個是當前讀取來源 (current)、
哪一個是寫入目標 (next)，並在各階段之間交換角色。
"""

import logging
from enum import IntEnum
from typing import Sequence, Tuple

import numpy as np
import taichi as ti

from lbm27.config.core import Q_3D, BLOCK_DIM

logger = logging.getLogger(__name__)


class NodeType(IntEnum):
    """格點類型標籤 (裝置端以整數比較)"""
    FLUID = 0
    SOLID = 1
    INLET = 2
    OUTLET = 3


# 核心內使用的整數標籤
FLUID = int(NodeType.FLUID)
SOLID = int(NodeType.SOLID)
INLET = int(NodeType.INLET)
OUTLET = int(NodeType.OUTLET)


@ti.data_oriented
class Grid:
    """
    單一格點網格

    Fields:
        f: 分布函數 [Q×NX×NY×NZ] (SoA佈局，同方向連續存取)
        rho: 密度場 [NX×NY×NZ]
        u: 速度場 [NX×NY×NZ×3]
        node_type: 節點類型 [NX×NY×NZ] (uint8, 見 NodeType)

    場變數建立在獨立的 SNode 樹上，destroy() 可單獨釋放此網格的裝置記憶體。
    """

    def __init__(self, shape: Sequence[int], name: str = "grid"):
        nx, ny, nz = (int(n) for n in shape)
        if nx < 1 or ny < 1 or nz < 1:
            raise ValueError(f"網格尺寸必須為正: {shape}")

        self.shape: Tuple[int, int, int] = (nx, ny, nz)
        self.name = name

        self.f = ti.field(dtype=ti.f32)
        self.rho = ti.field(dtype=ti.f32)
        self.u = ti.Vector.field(3, dtype=ti.f32)
        self.node_type = ti.field(dtype=ti.u8)

        builder = ti.FieldsBuilder()
        builder.dense(ti.ijkl, (Q_3D, nx, ny, nz)).place(self.f)
        builder.dense(ti.ijk, (nx, ny, nz)).place(self.rho)
        builder.dense(ti.ijk, (nx, ny, nz)).place(self.u)
        builder.dense(ti.ijk, (nx, ny, nz)).place(self.node_type)
        self._snode_tree = builder.finalize()
        self._destroyed = False

        # 樹須先經核心存取後才能安全 destroy
        self.f.fill(0.0)
        self.rho.fill(0.0)
        self.u.fill(0.0)
        self.node_type.fill(FLUID)

    @property
    def total_nodes(self) -> int:
        return self.shape[0] * self.shape[1] * self.shape[2]

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        if not self._destroyed:
            self._snode_tree.destroy()
            self._destroyed = True
            logger.debug(f"網格 {self.name} 已釋放")

    def set_node_types(self, node_types: np.ndarray) -> None:
        node_types = np.asarray(node_types)
        if node_types.shape != self.shape:
            raise ValueError(f"節點類型陣列形狀 {node_types.shape} 與網格 {self.shape} 不符")
        self.node_type.from_numpy(node_types.astype(np.uint8))

    def node_types_numpy(self) -> np.ndarray:
        return self.node_type.to_numpy()

    @ti.kernel
    def initialize_equilibrium(self, lattice: ti.template(), rho_ref: ti.f32,
                               ux: ti.f32, uy: ti.f32, uz: ti.f32):
        """
        以平衡態初始化整個網格

        Inlet 節點使用入口速度，其餘節點 (Fluid / Solid / Outlet) 以參考密度的靜止平衡態起始。
        """
        u_in = ti.Vector([ux, uy, uz])
        u_rest = ti.Vector([0.0, 0.0, 0.0])
        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(self.shape[0], self.shape[1], self.shape[2]):
            u_init = u_rest
            if self.node_type[i, j, k] == INLET:
                u_init = u_in
            self.rho[i, j, k] = rho_ref
            self.u[i, j, k] = u_init
            for q in range(Q_3D):
                self.f[q, i, j, k] = lattice.equilibrium_d3q27_safe(q, rho_ref, u_init)


class GridBuffer:
    """
    雙緩衝網格

    同一時刻恰有一個 current (只讀來源) 與一個 next (寫入目標)；
    swap() 交換兩者角色。release() 釋放兩個網格，可重複呼叫。
    """

    def __init__(self, shape: Sequence[int]):
        self.shape = tuple(int(n) for n in shape)
        first = Grid(self.shape, "A")
        try:
            second = Grid(self.shape, "B")
        except Exception:
            first.destroy()
            raise
        self._grids = (first, second)
        self._current_index = 0
        self.swap_count = 0

    @property
    def current(self) -> Grid:
        return self._grids[self._current_index]

    @property
    def next(self) -> Grid:
        return self._grids[1 - self._current_index]

    @property
    def total_nodes(self) -> int:
        return self.current.total_nodes

    @property
    def released(self) -> bool:
        return all(grid.destroyed for grid in self._grids)

    def swap(self) -> None:
        self._current_index = 1 - self._current_index
        self.swap_count += 1

    def initialize(self, lattice, node_types: np.ndarray, rho_ref: float,
                   inlet_velocity: Sequence[float]) -> None:
        """由幾何分類與初始平衡態建立兩個緩衝區"""
        ux, uy, uz = (float(v) for v in inlet_velocity)
        for grid in self._grids:
            grid.set_node_types(node_types)
            grid.initialize_equilibrium(lattice, float(rho_ref), ux, uy, uz)

        counts = np.bincount(np.asarray(node_types, dtype=np.int64).ravel(), minlength=4)
        logger.info(f"✅ 網格初始化完成 {self.shape}: "
                    f"Fluid={counts[FLUID]}, Solid={counts[SOLID]}, "
                    f"Inlet={counts[INLET]}, Outlet={counts[OUTLET]}")

    def release(self) -> None:
        for grid in self._grids:
            grid.destroy()
