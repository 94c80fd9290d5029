"""
Execution limits and per-language limit policy.

Callers may tighten the policy defaults for a job but never loosen them.
"""
import logging
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, Mapping, Optional, Union

from codejudge.config.defaults import LIMIT_DEFAULTS
from codejudge.exceptions import InvalidLimitsError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionLimits:
    cpu_ms: int = LIMIT_DEFAULTS.cpu_ms
    wall_ms: int = LIMIT_DEFAULTS.wall_ms
    memory_bytes: int = LIMIT_DEFAULTS.memory_bytes
    max_processes: int = LIMIT_DEFAULTS.max_processes
    max_output_bytes: int = LIMIT_DEFAULTS.max_output_bytes
    max_file_bytes: int = LIMIT_DEFAULTS.max_file_bytes

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidLimitsError(f"{f.name} must be an integer, got {value!r}", f.name)
            if value <= 0:
                raise InvalidLimitsError(f"{f.name} must be positive, got {value}", f.name)

    @property
    def cpu_seconds(self) -> int:
        """CPU ceiling rounded up to whole seconds, as rlimits require."""
        return max(1, -(-self.cpu_ms // 1000))

    @property
    def wall_seconds(self) -> float:
        return self.wall_ms / 1000.0

    def tighten(self, overrides: Optional[Mapping[str, Any]]) -> "ExecutionLimits":
        """Return a copy with ``overrides`` applied.

        Raises:
            InvalidLimitsError: If an override is unknown, malformed or looser
                than the current value.
        """
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        changes: Dict[str, int] = {}
        for name, value in overrides.items():
            if value is None:
                continue
            if name not in known:
                raise InvalidLimitsError(f"Unknown limit: {name}", name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidLimitsError(f"{name} must be an integer, got {value!r}", name)
            current = getattr(self, name)
            if value > current:
                raise InvalidLimitsError(
                    f"{name}={value} exceeds the policy ceiling of {current}", name
                )
            changes[name] = value
        return replace(self, **changes)

    def for_compile(self, compile_wall_ms: int, compile_cpu_ms: int) -> "ExecutionLimits":
        """Limits used while compiling: own time budget, same memory/process/file ceilings."""
        return replace(self, wall_ms=compile_wall_ms, cpu_ms=compile_cpu_ms)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionLimits":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


class LimitPolicy:
    """Per-language default limits.

    Languages without an explicit entry fall back to the base limits.
    """

    def __init__(
        self,
        base: Optional[ExecutionLimits] = None,
        overrides: Optional[Dict[str, ExecutionLimits]] = None,
    ):
        self._base = base or ExecutionLimits()
        self._overrides: Dict[str, ExecutionLimits] = dict(overrides or {})

    @property
    def base(self) -> ExecutionLimits:
        return self._base

    def set_language_limits(self, language: str, limits: ExecutionLimits) -> None:
        self._overrides[language] = limits
        logger.info(f"Limit policy for {language} set to {limits.to_dict()}")

    def defaults_for(self, language: str) -> ExecutionLimits:
        return self._overrides.get(language, self._base)

    def resolve(
        self,
        language: str,
        requested: Union[ExecutionLimits, Mapping[str, Any], None] = None,
    ) -> ExecutionLimits:
        """Resolve the effective limits for a job.

        ``requested`` may only tighten the language defaults.
        """
        defaults = self.defaults_for(language)
        if requested is None:
            return defaults
        if isinstance(requested, ExecutionLimits):
            requested = requested.to_dict()
        return defaults.tighten(requested)


def default_limit_policy() -> LimitPolicy:
    """Policy with the JVM given the extra headroom its runtime threads and heap need."""
    base = ExecutionLimits()
    return LimitPolicy(
        base=base,
        overrides={
            "java": replace(
                base,
                memory_bytes=base.memory_bytes * 2,
                max_processes=base.max_processes * 2,
            ),
        },
    )
