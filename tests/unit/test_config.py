"""
Unit tests for configuration building, validation and loading.
"""

import pytest
import yaml
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from ghostguard.config import PipelineConfig, RetryConfig, apply_env_overrides, load_config
from ghostguard.errors import ConfigError
from ghostguard.models import Route


class TestDefaults:
    def test_documented_defaults(self):
        config = PipelineConfig()

        assert config.gates.symmetry.min_threshold == 0.95
        assert config.gates.edges.max_roughness == 2.0
        assert config.gates.completeness.min_coverage == 0.90
        assert config.gates.cavities.required_holes == ("neck", "sleeve_l", "sleeve_r")
        assert config.retry.max_retries == 1
        assert config.retry.delay_ms == 3000
        assert config.fail_safe.max_total_attempts == 3
        assert config.qa.commercial.overall_quality_threshold == 0.95
        assert config.performance.parallel_evaluation is False

    def test_frozen(self):
        config = PipelineConfig()
        with pytest.raises(AttributeError):
            config.retry = RetryConfig(max_retries=0)


class TestValidation:
    """Invalid values fail when the configuration is built."""

    @pytest.mark.parametrize("data", [
        {"gates": {"symmetry": {"min_threshold": 1.5}}},
        {"gates": {"edges": {"max_roughness": -1}}},
        {"routing": {"primary_route": "gpu-farm"}},
        {"routing": {"primary_preferred_threshold": 0.8, "fallback_required_threshold": 0.7}},
        {"retry": {"max_retries": -1}},
        {"retry": {"max_retries": 2}},
        {"retry": {"delay_ms": -5}},
        {"retry": {"route_conditions": {"tertiary": ["gpu"]}}},
        {"fail_safe": {"route_timeouts_ms": {"primary": 0, "fallback": 1000}}},
        {"performance": {"parallel_evaluation": True}},
        {"qa": {"severity": {"critical_below": 0.9, "warning_below": 0.8}}},
    ])
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ConfigError) as exc_info:
            PipelineConfig.from_dict(data)
        assert exc_info.value.code == "CONFIG_INVALID"

    def test_more_retries_with_larger_budget(self):
        config = PipelineConfig.from_dict({"retry": {"max_retries": 2}, "fail_safe": {"max_total_attempts": 4}})
        assert config.retry.max_retries == 2

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="symetry"):
            PipelineConfig.from_dict({"gates": {"symetry": {"min_threshold": 0.9}}})

    def test_non_mapping_section_rejected(self):
        with pytest.raises(ConfigError):
            PipelineConfig.from_dict({"retry": [1, 2]})

    def test_lists_become_tuples(self):
        config = PipelineConfig.from_dict({
            "gates": {"cavities": {"required_holes": ["neck"]}},
            "retry": {"route_conditions": {"primary": ["quota"]}},
        })
        assert config.gates.cavities.required_holes == ("neck",)
        assert config.retry.conditions_for(Route.PRIMARY)[-1:] == ("quota",)

    @pytest.mark.parametrize("data, key", [
        ({"retry": {"retry_conditions": "timeout"}}, "retry_conditions"),
        ({"retry": {"retry_conditions": 5}}, "retry_conditions"),
        ({"gates": {"structure": {"neck_range": 0.1}}}, "neck_range"),
        ({"retry": {"route_conditions": {"primary": "quota"}}}, "route_conditions.primary"),
        ({"retry": {"route_conditions": ["quota"]}}, "route_conditions"),
    ])
    def test_scalar_where_list_expected(self, data, key):
        with pytest.raises(ConfigError, match=key):
            PipelineConfig.from_dict(data)

    def test_timeouts_stay_scalar(self):
        config = PipelineConfig.from_dict({"fail_safe": {"route_timeouts_ms": {"primary": 500, "fallback": 900}}})
        assert config.fail_safe.timeout_for(Route.PRIMARY) == 0.5

    def test_attempt_budget_floor(self):
        with pytest.raises(ConfigError, match="max_total_attempts"):
            PipelineConfig.from_dict({"retry": {"max_retries": 0}, "fail_safe": {"max_total_attempts": 1}})


class TestLoading:
    """YAML file plus environment overrides."""

    def test_load_yaml(self, temp_dir):
        path = temp_dir / "pipeline.yaml"
        path.write_text(yaml.safe_dump({
            "routing": {"primary_route": "fallback"},
            "retry": {"delay_ms": 500},
        }), encoding="utf-8")

        config = load_config(path, env={})
        assert config.routing.primary_route == "fallback"
        assert config.retry.delay_ms == 500

    def test_env_overrides_file(self, temp_dir):
        path = temp_dir / "pipeline.yaml"
        path.write_text("retry:\n  delay_ms: 500\n", encoding="utf-8")

        config = load_config(path, env={"GHOSTGUARD_RETRY_DELAY_MS": "10", "COMFYUI_URL": "http://gpu:8188"})
        assert config.retry.delay_ms == 10
        assert config.backends.comfyui_url == "http://gpu:8188"

    def test_process_environment(self, monkeypatch):
        monkeypatch.setenv("GHOSTGUARD_PRIMARY_ROUTE", "primary")
        monkeypatch.setenv("GHOSTGUARD_COMMERCIAL_THRESHOLD", "0.9")

        config = load_config()
        assert config.routing.primary_route == "primary"
        assert config.qa.commercial.overall_quality_threshold == 0.9

    def test_bad_env_value(self):
        with pytest.raises(ConfigError, match="GHOSTGUARD_MAX_RETRIES"):
            apply_env_overrides({}, {"GHOSTGUARD_MAX_RETRIES": "many"})

    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigError):
            load_config(temp_dir / "missing.yaml", env={})

    def test_invalid_yaml(self, temp_dir):
        path = temp_dir / "broken.yaml"
        path.write_text("retry: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path, env={})

    def test_non_mapping_yaml(self, temp_dir):
        path = temp_dir / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path, env={})
