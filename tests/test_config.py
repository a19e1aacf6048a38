"""
設定系統測試套件
測試JSON / YAML載入、參數驗證與鬆弛時間解析
"""

import json

import pytest
import yaml

from lbm27.config import Config, ConfigValidator
from lbm27.error_handling import ConfigError, InvalidRelaxationTime


def base_config():
    return {
        "domain": {"nx": 20, "ny": 10, "nz": 10, "dx": 1.0, "dy": 1.0, "dz": 1.0},
        "physics": {"reynolds_number": 10.0, "inlet_velocity": [0.05, 0.0, 0.0], "density": 1.0},
        "simulation": {"max_iterations": 100, "convergence_tolerance": 1e-6},
        "output": {"output_directory": "out", "output_frequency": 10, "output_format": "vtk"},
    }


@pytest.fixture
def json_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(base_config()), encoding="utf-8")
    return str(path)


class TestConfigLoading:
    """設定檔載入測試"""

    def test_load_json(self, json_config):
        config = Config.from_file(json_config)
        assert config.domain.shape == (20, 10, 10)
        assert config.physics.inlet_velocity == (0.05, 0.0, 0.0)
        assert config.simulation.max_iterations == 100
        assert config.output.output_frequency == 10

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(base_config()), encoding="utf-8")
        config = Config.from_file(str(path))
        assert config.domain.spacing == (1.0, 1.0, 1.0)
        assert config.physics.reynolds_number == 10.0

    def test_defaults(self):
        data = base_config()
        del data["output"]
        config = Config.from_dict(data)
        assert config.output.output_format == "vtk"
        assert config.output.output_frequency == 100
        assert config.simulation.convergence_interval == 1
        assert config.simulation.arch == "auto"
        assert config.simulation.tau is None

    def test_to_dict_roundtrip(self, json_config):
        config = Config.from_file(json_config)
        assert Config.from_dict(config.to_dict()) == config

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            Config.from_file(str(tmp_path / "missing.json"))

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{ not json", encoding="utf-8")
        with pytest.raises(ConfigError):
            Config.from_file(str(path))

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("domain: [1, 2\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            Config.from_file(str(path))

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        with pytest.raises(ConfigError):
            Config.from_file(str(path))

    @pytest.mark.parametrize("section", ["domain", "physics", "simulation"])
    def test_missing_section(self, section):
        data = base_config()
        del data[section]
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    def test_unknown_field(self):
        data = base_config()
        data["domain"]["nw"] = 3
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    def test_missing_required_field(self):
        data = base_config()
        del data["simulation"]["max_iterations"]
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    @pytest.mark.parametrize("velocity", [[0.05, 0.0], None, 0.05, ["a", 0.0, 0.0]])
    def test_invalid_inlet_velocity(self, velocity):
        data = base_config()
        data["physics"]["inlet_velocity"] = velocity
        with pytest.raises(ConfigError):
            Config.from_dict(data)


class TestConfigValidation:
    """參數驗證測試"""

    def test_zero_reynolds_rejected(self):
        data = base_config()
        data["physics"]["reynolds_number"] = 0.0
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    @pytest.mark.parametrize("section,key,value", [
        ("domain", "nx", 0),
        ("domain", "dx", -1.0),
        ("physics", "density", 0.0),
        ("simulation", "max_iterations", -1),
        ("simulation", "convergence_tolerance", -1e-3),
        ("simulation", "tau", 0.5),
        ("simulation", "arch", "tpu"),
        ("output", "output_frequency", 0),
        ("output", "output_format", "hdf5"),
        ("physics", "viscosity", 0.0),
    ])
    def test_out_of_range(self, section, key, value):
        data = base_config()
        data[section][key] = value
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    def test_non_numeric_value(self):
        data = base_config()
        data["domain"]["ny"] = "ten"
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    @pytest.mark.parametrize("section,key", [("simulation", "tau"), ("physics", "viscosity")])
    def test_non_numeric_optional_value(self, section, key):
        """測試可選參數為字串時轉為 ConfigError 而非 TypeError"""
        data = base_config()
        data[section][key] = "0.6"
        with pytest.raises(ConfigError, match=key):
            Config.from_dict(data)

    def test_nan_tau_rejected(self):
        data = base_config()
        data["simulation"]["tau"] = float("nan")
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    def test_zero_tolerance_allowed(self):
        data = base_config()
        data["simulation"]["convergence_tolerance"] = 0.0
        assert Config.from_dict(data).simulation.convergence_tolerance == 0.0

    def test_high_inlet_speed_warns(self):
        data = base_config()
        data["physics"]["inlet_velocity"] = [0.3, 0.0, 0.0]
        config = Config.from_dict(data)

        validator = ConfigValidator()
        assert validator.validate_config(config)
        assert any("馬赫數" in w for w in validator.warnings)

    def test_collects_all_errors(self):
        config = Config.from_dict(base_config())
        config.domain.nx = 0
        config.output.output_frequency = 0

        validator = ConfigValidator()
        assert not validator.validate_config(config)
        assert len(validator.critical_errors) == 2


class TestRelaxationTime:
    """鬆弛時間解析測試"""

    def test_explicit_tau(self):
        data = base_config()
        data["simulation"]["tau"] = 0.8
        assert Config.from_dict(data).calculate_tau() == pytest.approx(0.8)

    def test_from_viscosity(self):
        data = base_config()
        data["physics"]["viscosity"] = 0.1
        assert Config.from_dict(data).calculate_tau() == pytest.approx(0.8)

    def test_from_reynolds_default_length(self):
        """測試特徵長度預設為 dx: ν = 0.05·1/10"""
        config = Config.from_dict(base_config())
        assert config.characteristic_length == 1.0
        assert config.characteristic_velocity == pytest.approx(0.05)
        assert config.calculate_tau() == pytest.approx(3.0 * 0.005 + 0.5)

    def test_from_reynolds_characteristic_length(self):
        data = base_config()
        data["physics"]["characteristic_length"] = 10.0
        assert Config.from_dict(data).calculate_tau() == pytest.approx(0.65)

    def test_explicit_tau_precedence(self):
        data = base_config()
        data["simulation"]["tau"] = 0.9
        data["physics"]["viscosity"] = 0.1
        assert Config.from_dict(data).calculate_tau() == pytest.approx(0.9)

    def test_negative_flow_gives_unstable_tau(self):
        """測試入口速度全為負時由雷諾數換算得 τ < 0.5"""
        data = base_config()
        data["physics"]["inlet_velocity"] = [-0.05, -0.01, -0.01]
        config = Config.from_dict(data)
        with pytest.raises(InvalidRelaxationTime):
            config.calculate_tau()
