"""
遷移階段 - 拉取式 (pull) 傳播

next.f_q(x) = current.f_q(x - c_q)，鄰點座標逐軸截斷到 [0, n-1]
(不做週期包覆，也不做鏡射)，與節點類型無關。密度、速度與類型原樣複製。
邊界截斷只是粗略的後備處理，實際邊界行為由 BoundaryStage 決定。
"""

import taichi as ti

from lbm27.config.core import Q_3D, BLOCK_DIM


@ti.data_oriented
class StreamingStage:
    """拉取式遷移階段"""

    def __init__(self, lattice):
        self.lattice = lattice

    def apply(self, src, dst) -> None:
        self._stream(src, dst)

    @ti.kernel
    def _stream(self, src: ti.template(), dst: ti.template()):
        nx, ny, nz = src.shape[0], src.shape[1], src.shape[2]
        ti.loop_config(block_dim=BLOCK_DIM)
        for i, j, k in ti.ndrange(nx, ny, nz):
            for q in range(Q_3D):
                e_q = self.lattice.e[q]
                src_i = ti.min(ti.max(i - e_q[0], 0), nx - 1)
                src_j = ti.min(ti.max(j - e_q[1], 0), ny - 1)
                src_k = ti.min(ti.max(k - e_q[2], 0), nz - 1)
                dst.f[q, i, j, k] = src.f[q, src_i, src_j, src_k]
            dst.rho[i, j, k] = src.rho[i, j, k]
            dst.u[i, j, k] = src.u[i, j, k]
            dst.node_type[i, j, k] = src.node_type[i, j, k]
