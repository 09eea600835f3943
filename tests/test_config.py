"""Tests for infection_cmr.config — configuration loading and validation."""

import warnings
from pathlib import Path

import numpy as np
import pytest
import yaml

from infection_cmr.config import (
    DesignSection,
    ModelParameters,
    ModelSection,
    SimulationConfig,
    build_design,
    deep_merge,
    default_config,
    load_config,
    validate_config,
    validate_design,
    validate_parameters,
)
from infection_cmr.errors import DesignError, ParameterError

CONFIG_DIR = Path(__file__).parent.parent / "configs"


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_nested_merge(self):
        base = {'model': {'time_model': 'continuous', 'recruitment': False}, 'x': 1}
        override = {'model': {'recruitment': True, 'extra': 4}}
        result = deep_merge(base, override)
        assert result == {
            'model': {'time_model': 'continuous', 'recruitment': True, 'extra': 4},
            'x': 1,
        }

    def test_override_dict_with_scalar(self):
        assert deep_merge({'a': {'nested': 1}}, {'a': 'replaced'}) == {'a': 'replaced'}

    def test_list_replaced_not_merged(self):
        base = {'design': {'intervals': [1.0, 2.0]}}
        deep_merge(base, {'design': {'intervals': [3.0]}})
        assert base['design']['intervals'] == [3.0]

    def test_empty_override(self):
        assert deep_merge({'a': 1}, {}) == {'a': 1}


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_creates_valid_config(self):
        assert isinstance(default_config(), SimulationConfig)

    def test_default_values(self):
        config = default_config()
        assert config.simulation.seed == 42
        assert config.simulation.parallel_workers == 1
        assert config.model.time_model == "continuous"
        assert config.model.conditioned
        assert config.model.separate_sampling
        assert config.numerics.expm_tolerance == 1e-9

    def test_default_parameters_in_domain(self):
        config = default_config()
        validate_parameters(config.parameters, config.model, config.design.n_primary)


# ── YAML loading tests ───────────────────────────────────────────────

class TestLoadConfig:
    def _write(self, path, content):
        with open(path, 'w') as f:
            yaml.dump(content, f)
        return path

    def test_load_from_yaml(self, tmp_path):
        path = self._write(tmp_path / "test.yaml", {
            'simulation': {'seed': 99},
            'parameters': {'psi12': 0.8},
        })
        config = load_config(path)
        assert config.simulation.seed == 99
        assert config.parameters.psi12 == 0.8
        # Unspecified values get defaults
        assert config.parameters.psi21 == 0.3
        assert config.design.n_primary == 6

    def test_unknown_keys_ignored(self, tmp_path):
        path = self._write(tmp_path / "test.yaml", {'model': {'colour': 'red'}})
        assert load_config(path).model.time_model == "continuous"

    def test_load_with_scenario_override(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {
            'model': {'time_model': 'continuous'},
            'parameters': {'p': 0.6, 'mu': 1.5},
        })
        scen = self._write(tmp_path / "scenario.yaml", {'parameters': {'p': 0.3}})
        config = load_config(base, scenario_path=scen)
        assert config.parameters.p == 0.3
        assert config.parameters.mu == 1.5  # unchanged

    def test_load_with_sweep_overrides(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {'simulation': {'seed': 42}})
        config = load_config(base, sweep_overrides={'simulation': {'seed': 123}})
        assert config.simulation.seed == 123

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_invalid_yaml_values_rejected(self, tmp_path):
        path = self._write(tmp_path / "bad.yaml", {'parameters': {'pi': 1.5}})
        with pytest.raises(ParameterError, match="pi"):
            load_config(path)

    def test_load_real_default_yaml(self):
        config = load_config(CONFIG_DIR / "default.yaml")
        assert config.simulation.seed == 42
        assert config.model.time_model == "continuous"
        assert config.design.intervals == [1.0, 0.5, 1.5, 1.0, 2.0]

    def test_load_discrete_scenario(self):
        config = load_config(CONFIG_DIR / "default.yaml",
                             CONFIG_DIR / "scenarios" / "discrete.yaml")
        assert config.model.time_model == "discrete"
        assert config.parameters.phi1 == 0.9

    def test_load_recruitment_scenario(self):
        config = load_config(CONFIG_DIR / "default.yaml",
                             CONFIG_DIR / "scenarios" / "recruitment.yaml")
        assert config.model.recruitment
        assert not config.model.separate_sampling
        design = build_design(config.design, config.model)
        assert design.intervals.shape == (80, 6)
        assert np.all(design.n_secondary[:, 3] == 0)


# ── Validation tests ──────────────────────────────────────────────────

class TestValidation:
    def test_invalid_time_model(self):
        config = default_config()
        config.model.time_model = "monthly"
        with pytest.raises(ValueError, match="time_model"):
            validate_config(config)

    def test_parallel_workers_positive(self):
        config = default_config()
        config.simulation.parallel_workers = 0
        with pytest.raises(ValueError, match="parallel_workers"):
            validate_config(config)

    def test_negative_seed(self):
        config = default_config()
        config.simulation.seed = -1
        with pytest.raises(ValueError, match="seed"):
            validate_config(config)

    def test_discrete_with_unequal_intervals_warns(self):
        config = default_config()
        config.model.time_model = "discrete"
        config.parameters.phi1 = 0.9
        config.design.intervals = [1.0, 2.0, 1.0, 1.0, 1.0]
        with pytest.warns(UserWarning, match="discrete"):
            validate_config(config)

    def test_recruitment_ignores_first_capture(self):
        config = default_config()
        config.model.recruitment = True
        config.design.first_capture = [0] * config.design.n_individuals
        with pytest.warns(UserWarning, match="first_capture"):
            validate_config(config)

    def test_valid_config_emits_no_warning(self):
        config = default_config()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            validate_config(config)

    def test_errors_are_value_errors(self):
        """Typed errors stay catchable as ValueError."""
        assert issubclass(ParameterError, ValueError)
        assert issubclass(DesignError, ValueError)


class TestParameterValidation:
    def test_false_positive_must_stay_below_detection(self):
        params = ModelParameters(fp_sample=0.5, r_sample=0.4)
        with pytest.raises(ParameterError, match="fp_sample"):
            validate_parameters(params, ModelSection())

    def test_diag_false_positive(self):
        params = ModelParameters(fp_diag=0.6, r_diag=0.5)
        with pytest.raises(ParameterError, match="fp_diag"):
            validate_parameters(params, ModelSection())

    def test_negative_hazard(self):
        with pytest.raises(ParameterError, match="psi21"):
            validate_parameters(ModelParameters(psi21=-0.1), ModelSection())

    def test_hazard_above_one_allowed_in_continuous_time(self):
        validate_parameters(ModelParameters(psi12=2.5), ModelSection())

    def test_probability_above_one_rejected_in_discrete_time(self):
        model = ModelSection(time_model="discrete")
        with pytest.raises(ParameterError, match="psi12"):
            validate_parameters(ModelParameters(psi12=2.5), model)

    @pytest.mark.parametrize("alpha", [0.0, 1.0])
    def test_discrete_alpha_open_interval(self, alpha):
        model = ModelSection(time_model="discrete")
        with pytest.raises(ParameterError, match="alpha"):
            validate_parameters(ModelParameters(alpha=alpha), model)

    def test_continuous_alpha_positive(self):
        with pytest.raises(ParameterError, match="alpha"):
            validate_parameters(ModelParameters(alpha=0.0), ModelSection())

    def test_per_occasion_capture_length(self):
        params = ModelParameters(p=[0.5, 0.6])
        with pytest.raises(ParameterError, match="p must have one value"):
            validate_parameters(params, ModelSection(), n_primary=6)

    def test_gamma_checked_only_with_recruitment(self):
        params = ModelParameters(gamma=-1.0)
        validate_parameters(params, ModelSection(recruitment=False))
        with pytest.raises(ParameterError, match="gamma"):
            validate_parameters(params, ModelSection(recruitment=True))

    def test_nan_rejected(self):
        with pytest.raises(ParameterError, match="finite"):
            validate_parameters(ModelParameters(mu=float('nan')), ModelSection())


class TestModelParameters:
    def test_from_mapping_keeps_base(self):
        base = ModelParameters(mu=3.0)
        params = ModelParameters.from_mapping({'beta': 0.7}, base=base)
        assert params.beta == 0.7
        assert params.mu == 3.0
        assert base.beta == 0.3  # base untouched

    def test_from_mapping_unknown_name(self):
        with pytest.raises(ParameterError, match="Unknown"):
            ModelParameters.from_mapping({'kappa': 1.0})

    def test_per_occasion_lookup(self):
        params = ModelParameters(p=[0.1, 0.2, 0.3], gamma=0.5)
        assert params.capture_probability(2) == 0.3
        assert params.recruitment(4) == 0.5


# ── Design construction tests ─────────────────────────────────────────

class TestBuildDesign:
    def test_shapes(self):
        section = DesignSection(n_individuals=4, n_primary=3, n_secondary=2,
                                n_runs=3, intervals=1.0)
        design = build_design(section, ModelSection())
        assert design.n_secondary.shape == (4, 3)
        assert design.n_runs.shape == (4, 3, 2)
        assert design.intervals.shape == (4, 2)
        assert np.all(design.first_capture == 0)

    def test_per_primary_counts(self):
        section = DesignSection(n_individuals=2, n_primary=3,
                                n_secondary=[1, 3, 2], n_runs=[1, 2, 4])
        design = build_design(section, ModelSection())
        assert design.max_secondary == 3
        np.testing.assert_array_equal(design.n_runs[0, 0], [1, 0, 0])
        np.testing.assert_array_equal(design.n_runs[0, 2], [4, 4, 0])

    def test_unsurveyed(self):
        section = DesignSection(n_individuals=2, n_primary=4, unsurveyed=[2])
        design = build_design(section, ModelSection())
        assert np.all(design.n_secondary[:, 2] == 0)
        assert np.all(design.n_runs[:, 2] == 0)

    def test_recruitment_intervals_and_no_first_capture(self):
        section = DesignSection(n_individuals=3, n_primary=4,
                                first_capture=[0, 1, 2])
        design = build_design(section, ModelSection(recruitment=True))
        assert design.intervals.shape == (3, 4)
        assert np.all(design.first_capture == -1)

    def test_wrong_interval_count(self):
        section = DesignSection(n_primary=4, intervals=[1.0, 2.0])
        with pytest.raises(DesignError, match="intervals"):
            build_design(section, ModelSection())


class TestValidateDesign:
    def test_first_capture_on_unsurveyed_occasion(self):
        section = DesignSection(n_individuals=2, n_primary=3,
                                first_capture=[0, 1], unsurveyed=[1])
        design = build_design(section, ModelSection())
        with pytest.raises(DesignError, match="first-capture"):
            validate_design(design, ModelSection())

    def test_first_capture_out_of_range(self):
        section = DesignSection(n_individuals=2, n_primary=3, first_capture=[0, 5])
        design = build_design(section, ModelSection())
        with pytest.raises(DesignError, match="outside"):
            validate_design(design, ModelSection())

    def test_nonpositive_interval(self):
        section = DesignSection(n_individuals=1, n_primary=3, intervals=[1.0, 0.0])
        design = build_design(section, ModelSection())
        with pytest.raises(DesignError, match="strictly positive"):
            validate_design(design, ModelSection())

    def test_runs_on_missing_secondary(self):
        design = build_design(DesignSection(n_individuals=1, n_primary=2,
                                            n_secondary=[2, 1]), ModelSection())
        design.n_runs[0, 1, 1] = 2
        with pytest.raises(DesignError, match="do not exist"):
            validate_design(design, ModelSection())
