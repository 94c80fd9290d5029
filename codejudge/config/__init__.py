"""
Configuration module for codejudge.
"""
from codejudge.config.logging import setup_logging
from codejudge.config.settings import JudgeConfig

__all__ = ["setup_logging", "JudgeConfig"]
