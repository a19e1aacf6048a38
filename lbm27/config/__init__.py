# config/__init__.py - 統一配置系統入口
"""
lbm27 配置系統

- config.core: D3Q27 核心常數 (速度集、權重、反向索引、穩定性門檻)
- config.parameters: 模擬設定資料結構與 JSON / YAML 載入
- config.validator: 參數範圍驗證
"""

from .core import (
    Q_3D, CS, CS2, INV_CS2, CX_3D, CY_3D, CZ_3D, VELOCITIES_3D,
    WEIGHTS_3D, OPPOSITE_3D, W_REST, W_FACE, W_EDGE, W_CORNER,
    MAX_MACH, MAX_VELOCITY_LU, MIN_TAU_STABLE, DEFAULT_INSTABILITY_FRACTION,
    OUTLET_FALLBACK_DENSITY, OUTLET_FALLBACK_SPEED, TILE_SHAPE, BLOCK_DIM,
    get_core_summary,
)
from .parameters import (
    Config, DomainConfig, PhysicsConfig, SimulationConfig, OutputConfig,
    OUTPUT_FORMATS, ARCH_CHOICES,
)
from .validator import ConfigValidator, ConfigSchema, ParameterRange
