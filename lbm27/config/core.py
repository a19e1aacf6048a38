"""
core.py - D3Q27 LBM核心常數

27個離散速度 (1 靜止 + 6 面 + 12 邊 + 8 角)、權重、反向索引與數值穩定性常數。
所有陣列在模組載入時建立一次並設為唯讀。
"""

import numpy as np

# ==============================================
# D3Q27 離散速度模型
# ==============================================

Q_3D = 27
CS2 = 1.0/3.0      # 格子聲速平方
INV_CS2 = 3.0
CS = float(np.sqrt(CS2))

# 速度向量順序: 靜止, 6面, 12邊, 8角
CX_3D = np.array([0,
                  1, -1, 0, 0, 0, 0,
                  1, 1, -1, -1, 1, 1, -1, -1, 0, 0, 0, 0,
                  1, 1, 1, 1, -1, -1, -1, -1], dtype=np.int32)
CY_3D = np.array([0,
                  0, 0, 1, -1, 0, 0,
                  1, -1, 1, -1, 0, 0, 0, 0, 1, 1, -1, -1,
                  1, 1, -1, -1, 1, 1, -1, -1], dtype=np.int32)
CZ_3D = np.array([0,
                  0, 0, 0, 0, 1, -1,
                  0, 0, 0, 0, 1, -1, 1, -1, 1, -1, 1, -1,
                  1, -1, 1, -1, 1, -1, 1, -1], dtype=np.int32)

VELOCITIES_3D = np.stack([CX_3D, CY_3D, CZ_3D], axis=1)

# 權重: 依速度向量長度平方分類
W_REST = 8.0/27.0
W_FACE = 2.0/27.0
W_EDGE = 1.0/54.0
W_CORNER = 1.0/216.0

_WEIGHT_BY_NORM = {0: W_REST, 1: W_FACE, 2: W_EDGE, 3: W_CORNER}
WEIGHTS_3D = np.array([_WEIGHT_BY_NORM[int(c @ c)] for c in VELOCITIES_3D], dtype=np.float64)

if abs(np.sum(WEIGHTS_3D) - 1.0) > 1e-12:
    raise ValueError("權重係數歸一化失敗")


def _compute_opposite_directions(velocities: np.ndarray) -> np.ndarray:
    """以搜尋方式建立反向索引 c[opp[q]] == -c[q]"""
    opposite = np.empty(len(velocities), dtype=np.int32)
    for q, c in enumerate(velocities):
        matches = np.where((velocities == -c).all(axis=1))[0]
        if len(matches) != 1:
            raise ValueError(f"方向 {q} 找不到唯一反向")
        opposite[q] = matches[0]
    return opposite


OPPOSITE_3D = _compute_opposite_directions(VELOCITIES_3D)

for _table in (CX_3D, CY_3D, CZ_3D, VELOCITIES_3D, WEIGHTS_3D, OPPOSITE_3D):
    _table.setflags(write=False)

# ==============================================
# 數值穩定性參數
# ==============================================

MAX_MACH = 0.3                     # |u| ≤ 0.3 c_s
MAX_VELOCITY_LU = MAX_MACH * CS
MIN_TAU_STABLE = 0.5               # τ 必須嚴格大於此值
FALLBACK_DIVISOR = 27.0            # 平衡態為負時回退 w·ρ/27
DEFAULT_INSTABILITY_FRACTION = 0.01

# 出口無法取得上游流體時的合成流出狀態
OUTLET_FALLBACK_DENSITY = 1.0
OUTLET_FALLBACK_SPEED = 0.01

# ==============================================
# 並行計算參數
# ==============================================

TILE_SHAPE = (8, 8, 1)
BLOCK_DIM = TILE_SHAPE[0] * TILE_SHAPE[1] * TILE_SHAPE[2]


def get_core_summary() -> dict:
    """核心參數摘要"""
    return {
        'model': 'D3Q27',
        'Q': Q_3D,
        'cs2': CS2,
        'weights': {'rest': W_REST, 'face': W_FACE, 'edge': W_EDGE, 'corner': W_CORNER},
        'max_velocity_lu': MAX_VELOCITY_LU,
        'block_dim': BLOCK_DIM,
    }
