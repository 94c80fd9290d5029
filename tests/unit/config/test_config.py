"""
Unit tests for configuration defaults, JudgeConfig and logging setup.
"""
import logging
import pytest
from dataclasses import FrozenInstanceError
from unittest.mock import patch

from codejudge.config import JudgeConfig, setup_logging
from codejudge.config.defaults import (
    LIMIT_DEFAULTS,
    MIB,
    POOL_DEFAULTS,
    SCHEDULER_DEFAULTS,
    SERVER_DEFAULTS,
)


class TestDefaults:
    def test_limit_defaults(self):
        assert LIMIT_DEFAULTS.memory_bytes == 256 * MIB
        assert LIMIT_DEFAULTS.wall_ms > LIMIT_DEFAULTS.cpu_ms

    def test_defaults_are_frozen(self):
        with pytest.raises(FrozenInstanceError):
            POOL_DEFAULTS.max_instances = 100

    def test_server_defaults(self):
        assert (SERVER_DEFAULTS.host, SERVER_DEFAULTS.port, SERVER_DEFAULTS.log_level) == ("0.0.0.0", 8000, "INFO")


class TestJudgeConfig:
    def test_defaults(self):
        config = JudgeConfig()
        assert config.backend == "subprocess"
        assert config.max_instances == POOL_DEFAULTS.max_instances
        assert config.queue_depth == SCHEDULER_DEFAULTS.queue_depth
        assert config.backend_options == {}

    def test_zero_queue_depth_allowed(self):
        assert JudgeConfig(queue_depth=0).queue_depth == 0

    @pytest.mark.parametrize("kwargs", [
        {"max_instances": 0},
        {"queue_depth": -1},
        {"max_provision_attempts": 0},
    ])
    def test_rejects_invalid(self, kwargs):
        with pytest.raises(ValueError):
            JudgeConfig(**kwargs)


class TestSetupLogging:
    def test_quiets_process_driver_above_debug(self):
        with patch("logging.basicConfig") as basic_config:
            setup_logging("WARNING")

        assert basic_config.call_args.kwargs["level"] == logging.WARNING
        assert logging.getLogger("uvicorn").level == logging.WARNING
        assert logging.getLogger("codejudge.runtime.process").level == logging.INFO

    def test_unknown_level_falls_back_to_info(self):
        with patch("logging.basicConfig") as basic_config:
            setup_logging("chatty")
        assert basic_config.call_args.kwargs["level"] == logging.INFO

    def test_log_file_handler(self, tmp_path):
        log_file = tmp_path / "judge.log"
        with patch("logging.basicConfig") as basic_config:
            setup_logging("DEBUG", log_file=str(log_file))
        handlers = basic_config.call_args.kwargs["handlers"]
        assert any(isinstance(h, logging.FileHandler) for h in handlers)
        for h in handlers:
            if isinstance(h, logging.FileHandler):
                h.close()
