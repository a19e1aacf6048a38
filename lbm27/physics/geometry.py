"""
幾何載入與節點分類

將STL網格體素化為固體節點，其餘節點為流體；
x = 0 平面上的流體節點設為入口，x = nx-1 平面上的流體節點設為出口。
"""

import os
import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import trimesh
from scipy import ndimage

from lbm27.core.grid import NodeType, FLUID, SOLID, INLET, OUTLET
from lbm27.core.solver import validate_node_types
from lbm27.error_handling import GeometryError

logger = logging.getLogger(__name__)


class Geometry:
    """
    幾何分類結果

    Attributes:
        node_types: 節點類型陣列 (nx, ny, nz), uint8
        spacing: 格點間距 (dx, dy, dz)
        source: 來源檔案路徑 (程式生成時為 None)
    """

    def __init__(self, node_types: np.ndarray, spacing: Sequence[float] = (1.0, 1.0, 1.0),
                 source: Optional[str] = None):
        self.node_types = validate_node_types(node_types)
        self.spacing: Tuple[float, float, float] = tuple(float(s) for s in spacing)
        self.source = source

        if not (self.node_types == FLUID).any():
            raise GeometryError("幾何中沒有任何流體節點", {'source': source})

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.node_types.shape

    @property
    def counts(self) -> Dict[str, int]:
        return {t.name.lower(): int((self.node_types == int(t)).sum()) for t in NodeType}

    def mask(self, node_type: NodeType) -> np.ndarray:
        return self.node_types == int(node_type)

    def save(self, path: str) -> str:
        """以 .npy 格式保存節點分類"""
        np.save(path, self.node_types)
        return path

    # ------------------------------------------------------------------
    # 建構
    # ------------------------------------------------------------------

    @classmethod
    def from_solid_mask(cls, solid: np.ndarray, spacing: Sequence[float] = (1.0, 1.0, 1.0),
                        source: Optional[str] = None) -> "Geometry":
        """由固體遮罩分類: 非固體為流體，x 兩端平面的流體節點為入口 / 出口"""
        solid = np.asarray(solid, dtype=bool)
        if solid.ndim != 3:
            raise GeometryError(f"固體遮罩必須是3維，收到形狀 {solid.shape}")

        node_types = np.full(solid.shape, FLUID, dtype=np.uint8)
        node_types[solid] = SOLID

        inlet_plane = node_types[0] == FLUID
        outlet_plane = node_types[-1] == FLUID
        node_types[0][inlet_plane] = INLET
        node_types[-1][outlet_plane] = OUTLET
        return cls(node_types, spacing, source)

    @classmethod
    def channel(cls, nx: int, ny: int, nz: int,
                spacing: Sequence[float] = (1.0, 1.0, 1.0)) -> "Geometry":
        """
        矩形通道: y、z 四面為固體壁，x = 0 入口，x = nx-1 出口
        (壁面與入口 / 出口平面相交處為固體)
        """
        solid = np.zeros((nx, ny, nz), dtype=bool)
        solid[:, 0, :] = True
        solid[:, -1, :] = True
        solid[:, :, 0] = True
        solid[:, :, -1] = True
        return cls.from_solid_mask(solid, spacing)

    @classmethod
    def from_stl(cls, path: str, domain) -> "Geometry":
        """
        載入STL並體素化

        以 min(dx, dy, dz) 為體素邊長體素化表面，填補封閉內部，
        再將體素中心對應到最近的格點 (i·dx, j·dy, k·dz)。
        """
        if not os.path.exists(path):
            raise GeometryError(f"找不到幾何檔案: {path}", {'path': path})

        try:
            mesh = trimesh.load(path, force='mesh')
        except Exception as e:
            raise GeometryError(f"無法解析STL檔案 {path}: {e}", {'path': path}) from e

        if not isinstance(mesh, trimesh.Trimesh) or mesh.is_empty or len(mesh.faces) == 0:
            raise GeometryError(f"STL檔案沒有任何三角面: {path}", {'path': path})

        spacing = np.array(domain.spacing, dtype=np.float64)
        pitch = float(spacing.min())
        voxels = mesh.voxelized(pitch)
        filled = ndimage.binary_fill_holes(voxels.matrix)
        points = voxels.indices_to_points(np.argwhere(filled))

        shape = np.array(domain.shape)
        indices = np.rint(points / spacing).astype(np.int64)
        inside = np.all((indices >= 0) & (indices < shape), axis=1)
        indices = indices[inside]

        solid = np.zeros(domain.shape, dtype=bool)
        solid[indices[:, 0], indices[:, 1], indices[:, 2]] = True

        geometry = cls.from_solid_mask(solid, domain.spacing, source=path)
        logger.info(f"✅ 幾何載入完成 {path}: {mesh.faces.shape[0]} 個三角面, "
                    f"{geometry.counts['solid']} 固體節點, {geometry.counts['fluid']} 流體節點")
        return geometry

    @classmethod
    def from_npy(cls, path: str, domain) -> "Geometry":
        """載入預先體素化的節點分類 (.npy)"""
        try:
            node_types = np.load(path, allow_pickle=False)
        except (OSError, ValueError) as e:
            raise GeometryError(f"無法讀取節點分類檔 {path}: {e}", {'path': path}) from e

        if node_types.shape != tuple(domain.shape):
            raise GeometryError(f"節點分類形狀 {node_types.shape} 與計算域 {tuple(domain.shape)} 不符",
                                {'path': path})
        return cls(node_types, domain.spacing, source=path)

    @classmethod
    def from_file(cls, path: str, domain) -> "Geometry":
        """依副檔名選擇載入方式 (.npy 或網格檔)"""
        if path.lower().endswith(".npy"):
            return cls.from_npy(path, domain)
        return cls.from_stl(path, domain)
