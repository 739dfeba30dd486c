"""Run-time options passed explicitly to engines and reducers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional

__all__ = ["EngineConfig", "DEFAULT_CONFIG"]


@dataclass(frozen=True)
class EngineConfig:
    """Immutable options shared by a batch of fits.

    Parameters
    ----------
    optimizer:
        Optimizer name requested from the engine (default: "lbfgs").
    max_iterations, tolerance:
        Optional optimizer limits; ``None`` leaves the engine default.
    max_workers:
        Number of sibling refits run at once. 1 runs them in order.
    p_digits, p_min:
        Rounding and floor used when formatting p-values.
    weight_digits:
        Rounding of reported Akaike weights.
    intervals:
        Whether the best reduced model is refit with confidence intervals.
    """

    optimizer: str = "lbfgs"
    max_iterations: Optional[int] = None
    tolerance: Optional[float] = None
    max_workers: int = 1
    p_digits: int = 3
    p_min: float = 0.001
    weight_digits: int = 2
    intervals: bool = False

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if not 0 < self.p_min < 1:
            raise ValueError(f"p_min must lie in (0, 1), got {self.p_min}")

    @classmethod
    def from_kwargs(cls, **kwargs: Any) -> "EngineConfig":
        """Build a config from keyword options, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(kwargs) - known)
        if unknown:
            raise ValueError(f"Unknown engine option(s): {unknown}. Supported: {sorted(known)}")
        return cls(**kwargs)

    def with_options(self, **kwargs: Any) -> "EngineConfig":
        return replace(self, **kwargs)

    def optimization_options(self) -> Dict[str, Any]:
        """Options forwarded to the engine's optimizer; unset limits are omitted."""
        opts = {"optimizer": self.optimizer}
        if self.max_iterations is not None:
            opts["max_iterations"] = self.max_iterations
        if self.tolerance is not None:
            opts["tolerance"] = self.tolerance
        return opts

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG = EngineConfig()
