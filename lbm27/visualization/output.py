"""
快照輸出

- VTKWriter: 每個快照寫成 .vti 影像資料 (pyevtk)，另寫幾何檔與 ParaView .pvd 時間序列
- NPZWriter: numpy 壓縮陣列
- SliceImageWriter: z 方向中間截面的速度大小圖 (matplotlib)

所有寫出器皆可作為 SolverLoop 的快照接收端 (callable)；失敗時拋出 SnapshotIOError。
"""

import os
import logging
from typing import List, Optional, Tuple

import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from pyevtk.hl import imageToVTK
from pyevtk.vtk import VtkGroup

from lbm27.core.grid import FLUID
from lbm27.error_handling import SnapshotIOError

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "output"


def snapshot_basename(iteration: int, prefix: str = SNAPSHOT_PREFIX) -> str:
    return f"{prefix}_{iteration:06d}"


def _ensure_directory(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise SnapshotIOError(f"無法建立輸出目錄 {path}: {e}", {'path': path}) from e


def _scalar(values: np.ndarray, dtype=np.float32) -> np.ndarray:
    return np.ascontiguousarray(values, dtype=dtype)


def _vector(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    return tuple(_scalar(values[..., c]) for c in range(3))


class VTKWriter:
    """VTK影像資料 (.vti) 輸出與 .pvd 時間序列"""

    def __init__(self, output_directory: str, prefix: str = SNAPSHOT_PREFIX):
        self.output_directory = output_directory
        self.prefix = prefix
        self.entries: List[Tuple[int, str]] = []
        _ensure_directory(output_directory)

    def __call__(self, snapshot) -> str:
        return self.write(snapshot)

    @property
    def file_count(self) -> int:
        return len(self.entries)

    def write(self, snapshot) -> str:
        base = os.path.join(self.output_directory, snapshot_basename(snapshot.iteration, self.prefix))
        point_data = {
            "Density": _scalar(snapshot.density),
            "Velocity": _vector(snapshot.velocity),
            "VelocityMagnitude": _scalar(snapshot.velocity_magnitude),
            "Pressure": _scalar(snapshot.pressure),
            "Vorticity": _vector(snapshot.vorticity),
            "NodeType": _scalar(snapshot.node_type, np.int32),
        }
        try:
            path = imageToVTK(base, origin=(0.0, 0.0, 0.0), spacing=tuple(snapshot.spacing),
                              pointData=point_data)
        except (OSError, ValueError, TypeError) as e:
            raise SnapshotIOError(f"VTK寫入失敗 {base}: {e}", {'iteration': snapshot.iteration}) from e

        self.entries.append((snapshot.iteration, path))
        logger.debug(f"已寫出 {path}")
        return path

    def write_geometry(self, geometry, name: str = "geometry") -> str:
        """寫出節點分類 (NodeType) 供 ParaView 檢視"""
        base = os.path.join(self.output_directory, name)
        try:
            path = imageToVTK(base, origin=(0.0, 0.0, 0.0), spacing=tuple(geometry.spacing),
                              pointData={"NodeType": _scalar(geometry.node_types, np.int32)})
        except (OSError, ValueError, TypeError) as e:
            raise SnapshotIOError(f"幾何檔寫入失敗 {base}: {e}") from e
        logger.info(f"✅ 幾何檔已寫出: {path}")
        return path

    def write_collection(self, name: str = "simulation") -> str:
        """寫出 ParaView .pvd 時間序列，時間步以迭代數表示"""
        base = os.path.join(self.output_directory, name)
        try:
            group = VtkGroup(base)
            for iteration, path in self.entries:
                group.addFile(filepath=path, sim_time=float(iteration))
            group.save()
        except OSError as e:
            raise SnapshotIOError(f"時間序列檔寫入失敗 {base}.pvd: {e}") from e
        logger.info(f"✅ ParaView時間序列已寫出: {base}.pvd ({self.file_count} 個檔案)")
        return base + ".pvd"


class NPZWriter:
    """numpy 壓縮陣列輸出"""

    def __init__(self, output_directory: str, prefix: str = SNAPSHOT_PREFIX):
        self.output_directory = output_directory
        self.prefix = prefix
        self.paths: List[str] = []
        _ensure_directory(output_directory)

    def __call__(self, snapshot) -> str:
        return self.write(snapshot)

    def write(self, snapshot) -> str:
        path = os.path.join(self.output_directory,
                            snapshot_basename(snapshot.iteration, self.prefix) + ".npz")
        try:
            np.savez_compressed(
                path,
                iteration=np.int64(snapshot.iteration),
                density=snapshot.density,
                velocity=snapshot.velocity,
                pressure=snapshot.pressure,
                vorticity=snapshot.vorticity,
                node_type=snapshot.node_type,
                spacing=np.asarray(snapshot.spacing),
            )
        except OSError as e:
            raise SnapshotIOError(f"NPZ寫入失敗 {path}: {e}", {'iteration': snapshot.iteration}) from e
        self.paths.append(path)
        return path


class SliceImageWriter:
    """z 方向中間截面速度大小圖"""

    def __init__(self, output_directory: str, prefix: str = "slice", dpi: int = 150,
                 z_index: Optional[int] = None):
        self.output_directory = output_directory
        self.prefix = prefix
        self.dpi = dpi
        self.z_index = z_index
        _ensure_directory(output_directory)

    def __call__(self, snapshot) -> str:
        return self.write(snapshot)

    def write(self, snapshot) -> str:
        nz = snapshot.shape[2]
        z = self.z_index if self.z_index is not None else nz // 2
        speed = np.where(snapshot.node_type[:, :, z] == FLUID,
                         snapshot.velocity_magnitude[:, :, z], np.nan)

        path = os.path.join(self.output_directory,
                            snapshot_basename(snapshot.iteration, self.prefix) + ".png")
        fig, ax = plt.subplots(figsize=(8, 4))
        try:
            im = ax.imshow(speed.T, origin='lower', aspect='auto', cmap='viridis')
            cbar = plt.colorbar(im, ax=ax, shrink=0.8)
            cbar.set_label('|u| (lattice units)')
            ax.set_title(f"Velocity magnitude, z = {z}, iteration {snapshot.iteration}")
            ax.set_xlabel('x')
            ax.set_ylabel('y')
            fig.savefig(path, dpi=self.dpi)
        except (OSError, ValueError) as e:
            raise SnapshotIOError(f"截面圖寫入失敗 {path}: {e}", {'iteration': snapshot.iteration}) from e
        finally:
            plt.close(fig)
        return path


def create_writers(output_config):
    """依輸出設定建立快照寫出器，返回 (主要寫出器, 全部寫出器列表)"""
    directory = output_config.output_directory
    if output_config.output_format == "npz":
        primary = NPZWriter(directory)
    else:
        primary = VTKWriter(directory)

    writers = [primary]
    if output_config.slice_images:
        writers.append(SliceImageWriter(directory))
    return primary, writers
