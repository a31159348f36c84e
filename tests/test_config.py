"""Tests for configuration loading and workspace root discovery."""

import pytest

from textile_ls.config import (
    CONFIG_FILENAME,
    ConfigurationError,
    DiagnosticConfiguration,
    DiagnosticOptions,
    LanguageServiceConfig,
    get_workspace_root,
    load_config,
)


class TestLoadConfig:
    """Reading .textilels.yaml."""

    def test_defaults_without_file(self, tmp_root):
        config = load_config(tmp_root)
        assert config == LanguageServiceConfig()
        assert config.extension == ".textile"
        assert config.exclude == ["node_modules", ".git"]
        assert config.diagnostics.validate_file_links == "warning"

    def test_empty_file_is_defaults(self, tmp_root):
        (tmp_root / CONFIG_FILENAME).write_text("", encoding="utf-8")
        assert load_config(tmp_root) == LanguageServiceConfig()

    def test_valid_file(self, tmp_root):
        (tmp_root / CONFIG_FILENAME).write_text(
            "diagnostic_delay: 0.5\n"
            "diagnostics:\n"
            "  validate_file_links: error\n"
            "  ignore_links:\n"
            "    - /generated/**\n",
            encoding="utf-8",
        )

        config = load_config(tmp_root)

        assert config.diagnostic_delay == 0.5
        assert config.diagnostics.validate_file_links == "error"
        assert config.diagnostics.ignore_links == ["/generated/**"]

    def test_invalid_yaml(self, tmp_root):
        (tmp_root / CONFIG_FILENAME).write_text("diagnostics: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(tmp_root)
        assert "invalid YAML" in exc_info.value.message
        assert exc_info.value.path == tmp_root / CONFIG_FILENAME

    def test_top_level_must_be_mapping(self, tmp_root):
        (tmp_root / CONFIG_FILENAME).write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="expected a mapping"):
            load_config(tmp_root)

    def test_validation_error_names_field(self, tmp_root):
        (tmp_root / CONFIG_FILENAME).write_text(
            "diagnostics:\n  validate_file_links: loud\n", encoding="utf-8"
        )
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(tmp_root)
        assert "diagnostics.validate_file_links" in exc_info.value.message
        assert str(tmp_root / CONFIG_FILENAME) in str(exc_info.value)


class TestGetWorkspaceRoot:
    def test_env_var_wins(self, tmp_root, monkeypatch):
        monkeypatch.setenv("TEXTILE_LS_ROOT", str(tmp_root))
        assert get_workspace_root(tmp_root.parent) == tmp_root

    def test_nearest_ancestor_with_config(self, tmp_root):
        (tmp_root / CONFIG_FILENAME).write_text("", encoding="utf-8")
        nested = tmp_root / "a" / "b"
        nested.mkdir(parents=True)
        assert get_workspace_root(nested) == tmp_root

    def test_falls_back_to_start(self, tmp_root):
        nested = tmp_root / "a"
        nested.mkdir()
        # tmp_path ancestors carry no config file
        assert get_workspace_root(nested) == nested


class TestDiagnosticOptions:
    def test_fragment_level_inherits(self):
        assert DiagnosticOptions(validate_fragment_links="error").file_link_fragment_level == "error"

    def test_fragment_level_override(self):
        options = DiagnosticOptions(
            validate_fragment_links="error", validate_textile_file_link_fragments="ignore"
        )
        assert options.file_link_fragment_level == "ignore"

    def test_configuration_update_fires(self):
        configuration = DiagnosticConfiguration()
        seen = []
        configuration.on_did_change.subscribe(seen.append)
        options = DiagnosticOptions(enabled=False)

        configuration.update(options)

        assert seen == [options]
        assert configuration.get_options(None) is options
