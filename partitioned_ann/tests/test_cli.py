"""Unit Tests: CLI configuration"""

import argparse

from partitioned_ann.__main__ import load_config


def cli_args(log_level=None, log_format=None):
    return argparse.Namespace(command=None, log_level=log_level, log_format=log_format)


class TestLoadConfig:
    """Tests for environment settings and flag overrides."""

    def test_environment_drives_logging(self, monkeypatch):
        monkeypatch.setenv("PARTITIONED_ANN_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("PARTITIONED_ANN_LOG_JSON", "0")

        config = load_config(cli_args())

        assert config.log_level == "DEBUG"
        assert not config.log_json

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("PARTITIONED_ANN_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("PARTITIONED_ANN_LOG_JSON", "0")

        config = load_config(cli_args(log_level="ERROR", log_format="json"))

        assert config.log_level == "ERROR"
        assert config.log_json

    def test_invalid_environment_level_fails_validation(self, monkeypatch):
        monkeypatch.setenv("PARTITIONED_ANN_LOG_LEVEL", "LOUD")

        assert "log level" in load_config(cli_args()).validate()
