"""
配置參數驗證系統
為模擬設定提供schema驗證和參數合理性檢查
"""

# 標準庫導入
import math
import logging
from typing import Dict, Any, List
from dataclasses import dataclass, field

from lbm27.config.core import MAX_VELOCITY_LU
from lbm27.error_handling import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class ParameterRange:
    """參數範圍定義"""
    min_val: float
    max_val: float
    description: str
    critical: bool = True  # 是否為關鍵參數


@dataclass
class ConfigSchema:
    """配置參數驗證Schema (鍵為 區塊.欄位)"""

    grid_params: Dict[str, ParameterRange] = field(default_factory=lambda: {
        'domain.nx': ParameterRange(2, 4096, "網格X向節點數", True),
        'domain.ny': ParameterRange(1, 4096, "網格Y向節點數", True),
        'domain.nz': ParameterRange(1, 4096, "網格Z向節點數", True),
        'domain.dx': ParameterRange(1e-12, 1e6, "X向格點間距", True),
        'domain.dy': ParameterRange(1e-12, 1e6, "Y向格點間距", True),
        'domain.dz': ParameterRange(1e-12, 1e6, "Z向格點間距", True),
    })

    physics_params: Dict[str, ParameterRange] = field(default_factory=lambda: {
        'physics.reynolds_number': ParameterRange(1e-12, 1e9, "雷諾數", True),
        'physics.density': ParameterRange(1e-6, 1e6, "參考密度", True),
    })

    simulation_params: Dict[str, ParameterRange] = field(default_factory=lambda: {
        'simulation.max_iterations': ParameterRange(0, 1e12, "最大迭代數", True),
        'simulation.convergence_tolerance': ParameterRange(0.0, 1e6, "收斂容差", True),
        'simulation.convergence_interval': ParameterRange(1, 1e12, "收斂檢查間隔", True),
        'simulation.instability_fraction': ParameterRange(0.0, 1.0, "數值回退節點比例上限", True),
        'output.output_frequency': ParameterRange(1, 1e12, "輸出頻率", True),
    })

    # 可省略的參數，僅在設定時檢查
    optional_params: Dict[str, ParameterRange] = field(default_factory=lambda: {
        'simulation.tau': ParameterRange(0.5, 1e6, "鬆弛時間", True),
        'physics.viscosity': ParameterRange(0.0, 1e9, "格子黏滯係數", True),
    })


class ConfigValidator:
    """配置參數驗證器"""

    def __init__(self):
        self.schema = ConfigSchema()
        self.critical_errors: List[str] = []
        self.warnings: List[str] = []

    def validate_config(self, config) -> bool:
        """
        驗證設定的所有參數

        Returns:
            True if 驗證通過, False if 有關鍵錯誤
        """
        self.critical_errors.clear()
        self.warnings.clear()

        flat = _flatten(config.to_dict())
        for params in (self.schema.grid_params, self.schema.physics_params,
                       self.schema.simulation_params):
            for name, param_range in params.items():
                self._check_parameter_range(name, flat.get(name), param_range)
        for name, param_range in self.schema.optional_params.items():
            if flat.get(name) is not None:
                self._check_parameter_range(name, flat[name], param_range)

        # 一致性檢查需要數值型參數
        if not self.critical_errors:
            self._validate_parameter_consistency(config)
        return len(self.critical_errors) == 0

    def validate_or_raise(self, config) -> None:
        """驗證失敗時拋出 ConfigError"""
        if not self.validate_config(config):
            raise ConfigError("設定驗證失敗: " + "; ".join(self.critical_errors),
                              {'errors': list(self.critical_errors)})
        for warning in self.warnings:
            logger.warning(f"⚠️  {warning}")

    def _validate_parameter_consistency(self, config) -> None:
        """驗證參數間一致性"""
        from lbm27.config.parameters import OUTPUT_FORMATS, ARCH_CHOICES

        velocity = config.physics.inlet_velocity
        if not all(math.isfinite(v) for v in velocity):
            self.critical_errors.append(f"入口速度含非有限值: {velocity}")
        else:
            speed = math.sqrt(sum(v * v for v in velocity))
            if speed > MAX_VELOCITY_LU:
                self.warnings.append(
                    f"入口速度 |u| = {speed:.4f} 超過馬赫數限制 {MAX_VELOCITY_LU:.4f}，碰撞時將被截斷")

        if config.simulation.tau is not None and not config.simulation.tau > 0.5:
            self.critical_errors.append(f"鬆弛時間過小: tau = {config.simulation.tau} <= 0.5")

        if config.physics.viscosity is not None and not config.physics.viscosity > 0.0:
            self.critical_errors.append(f"黏滯係數必須為正: {config.physics.viscosity}")

        if config.output.output_format not in OUTPUT_FORMATS:
            self.critical_errors.append(
                f"不支援的輸出格式: {config.output.output_format} (可用: {', '.join(OUTPUT_FORMATS)})")

        if config.simulation.arch not in ARCH_CHOICES:
            self.critical_errors.append(
                f"不支援的計算後端: {config.simulation.arch} (可用: {', '.join(ARCH_CHOICES)})")

        total_nodes = config.domain.total_nodes
        if total_nodes > 50_000_000:
            self.warnings.append(f"網格節點數過大: {total_nodes:,} 可能導致記憶體不足")

    def _check_parameter_range(self, name: str, value, param_range: ParameterRange) -> None:
        """檢查單個參數範圍"""
        if value is None:
            self.critical_errors.append(f"缺少必要參數: {name} ({param_range.description})")
            return

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.critical_errors.append(f"{name} 必須是數值，收到 {value!r}")
            return

        if not (param_range.min_val <= value <= param_range.max_val):
            error_msg = (
                f"{name} = {value} 超出範圍 [{param_range.min_val}, {param_range.max_val}] "
                f"({param_range.description})"
            )
            if param_range.critical:
                self.critical_errors.append(error_msg)
            else:
                self.warnings.append(error_msg)


def _flatten(d: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in d.items():
        key = f"{prefix}.{k}" if prefix else k
        if isinstance(v, dict):
            out.update(_flatten(v, key))
        else:
            out[key] = v
    return out
