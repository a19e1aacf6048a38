"""
parameters.py - 模擬設定資料結構

設定分為四個區塊 (domain / physics / simulation / output)，
可由JSON或YAML檔載入，載入後經 ConfigValidator 檢查數值範圍。
"""

from __future__ import annotations

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Tuple

import yaml

from lbm27.config.core import DEFAULT_INSTABILITY_FRACTION
from lbm27.error_handling import ConfigError

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("vtk", "npz")
ARCH_CHOICES = ("auto", "cpu", "gpu")


@dataclass
class DomainConfig:
    nx: int
    ny: int
    nz: int
    dx: float = 1.0
    dy: float = 1.0
    dz: float = 1.0

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.nx, self.ny, self.nz)

    @property
    def spacing(self) -> Tuple[float, float, float]:
        return (self.dx, self.dy, self.dz)

    @property
    def total_nodes(self) -> int:
        return self.nx * self.ny * self.nz


@dataclass
class PhysicsConfig:
    reynolds_number: float
    inlet_velocity: Tuple[float, float, float]
    density: float = 1.0
    viscosity: Optional[float] = None
    characteristic_length: Optional[float] = None


@dataclass
class SimulationConfig:
    max_iterations: int
    convergence_tolerance: float
    tau: Optional[float] = None
    convergence_interval: int = 1
    instability_fraction: float = DEFAULT_INSTABILITY_FRACTION
    arch: str = "auto"


@dataclass
class OutputConfig:
    output_directory: str = "output"
    output_frequency: int = 100
    output_format: str = "vtk"
    slice_images: bool = False


@dataclass
class Config:
    """完整模擬設定"""
    domain: DomainConfig
    physics: PhysicsConfig
    simulation: SimulationConfig
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """由巢狀字典建立設定，缺少必要欄位時拋出 ConfigError"""
        if not isinstance(data, dict):
            raise ConfigError(f"設定內容必須是物件，收到 {type(data).__name__}")

        try:
            domain = DomainConfig(**_section(data, "domain"))
            physics_data = dict(_section(data, "physics"))
            velocity = physics_data.get("inlet_velocity")
            if velocity is None or len(velocity) != 3:
                raise ConfigError(f"physics.inlet_velocity 必須包含3個分量: {velocity}")
            physics_data["inlet_velocity"] = tuple(float(v) for v in velocity)
            physics = PhysicsConfig(**physics_data)
            simulation = SimulationConfig(**_section(data, "simulation"))
            output = OutputConfig(**data.get("output", {}))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"設定欄位錯誤: {e}") from e

        config = cls(domain=domain, physics=physics, simulation=simulation, output=output)

        # 延遲導入避免循環依賴
        from lbm27.config.validator import ConfigValidator
        ConfigValidator().validate_or_raise(config)
        return config

    @classmethod
    def from_file(cls, path: str) -> "Config":
        """
        載入設定檔

        副檔名 .yaml / .yml 以 pyyaml 解析，其餘以JSON解析。
        """
        if not os.path.exists(path):
            raise ConfigError(f"找不到設定檔: {path}", {'path': path})

        try:
            with open(path, "r", encoding="utf-8") as f:
                if path.lower().endswith((".yaml", ".yml")):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"設定檔格式錯誤 {path}: {e}", {'path': path}) from e
        except OSError as e:
            raise ConfigError(f"無法讀取設定檔 {path}: {e}", {'path': path}) from e

        config = cls.from_dict(data)
        logger.info(f"✅ 設定檔已載入: {path}")
        return config

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["physics"]["inlet_velocity"] = list(self.physics.inlet_velocity)
        return data

    @property
    def characteristic_length(self) -> float:
        if self.physics.characteristic_length is not None:
            return self.physics.characteristic_length
        return self.domain.dx

    @property
    def characteristic_velocity(self) -> float:
        return max(self.physics.inlet_velocity)

    def calculate_tau(self) -> float:
        """
        解析鬆弛時間

        優先順序: simulation.tau > physics.viscosity > 由雷諾數換算
        """
        from lbm27.core.units import UnitConverter
        from lbm27.error_handling import InvalidRelaxationTime

        if self.simulation.tau is not None:
            tau = float(self.simulation.tau)
        elif self.physics.viscosity is not None:
            tau = UnitConverter.tau_from_viscosity(self.physics.viscosity)
        else:
            tau, _ = UnitConverter.to_lattice_parameters(
                self.physics.reynolds_number,
                self.characteristic_length,
                self.characteristic_velocity,
                self.domain.dx,
            )

        if not tau > 0.5:
            raise InvalidRelaxationTime(f"鬆弛時間 τ = {tau} ≤ 0.5", {'tau': tau})
        return tau


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    if name not in data:
        raise ConfigError(f"設定缺少區塊: {name}")
    section = data[name]
    if not isinstance(section, dict):
        raise ConfigError(f"設定區塊 {name} 必須是物件")
    return section
