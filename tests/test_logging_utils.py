"""Tests for log level filtering and the configuration checks that feed it."""

import pytest

from stepwise import logging_utils
from stepwise.config import Config
from stepwise.logging_utils import log_error, log_info, log_planner, set_log_level


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv("STEPWISE_NO_COLOR", "1")
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.setattr(logging_utils, "_level", None)


def test_env_var_filters_when_no_level_set(monkeypatch, capsys):
    monkeypatch.setenv("LOG_LEVEL", "error")

    log_info("loaded 3 chunks")
    log_error("tool failed")

    assert capsys.readouterr().out == "[!] tool failed\n"


def test_configured_level_overrides_env_var(monkeypatch, capsys):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    set_log_level("debug")

    log_planner("plan created")

    assert capsys.readouterr().out == "[•] plan created\n"

    set_log_level(None)
    log_planner("plan created")
    assert capsys.readouterr().out == ""


def test_unknown_level_rejected():
    with pytest.raises(ValueError, match="Unknown log level 'LOUD'"):
        set_log_level("LOUD")


def test_config_validates_and_displays_log_level(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "ollama")
    monkeypatch.setattr(Config, "LOG_LEVEL", "warning")

    Config.validate()
    assert "  Log Level: WARNING" in Config.display().splitlines()

    monkeypatch.setattr(Config, "LOG_LEVEL", "verbose")
    with pytest.raises(ValueError, match="LOG_LEVEL must be one of"):
        Config.validate()
