"""
codejudge client module.
"""
from codejudge.client.base import BaseClient
from codejudge.client.client import JudgeClient
from codejudge.exceptions import JudgeClientError

__all__ = [
    "BaseClient",
    "JudgeClient",
    "JudgeClientError",
]
