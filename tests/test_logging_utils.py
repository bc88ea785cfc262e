"""Tests for logging_utils module."""

from __future__ import annotations

import pytest
from loguru import logger

from agent_task_runner.logging_utils import configure_logging


class TestConfigureLogging:
    """Test configure_logging function."""

    def test_info_level_hides_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Debug records are dropped at the default level."""
        configure_logging("info")
        logger.debug("hidden detail")
        logger.info("task created")

        err = capsys.readouterr().err
        assert "task created" in err
        assert "hidden detail" not in err
        assert "| INFO" in err

    def test_logs_never_reach_stdout(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging("DEBUG")
        logger.warning("careful")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "careful" in captured.err

    def test_json_mode_keeps_only_warnings(self, capsys: pytest.CaptureFixture[str]) -> None:
        """JSON mode raises the threshold so stderr stays quiet."""
        configure_logging("INFO", json_mode=True)
        logger.info("progress")
        logger.warning("something odd")

        err = capsys.readouterr().err
        assert "progress" not in err
        assert "something odd" in err

    def test_json_mode_honours_explicit_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging("DEBUG", json_mode=True)
        logger.debug("git status")

        assert "git status" in capsys.readouterr().err
