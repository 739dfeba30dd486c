"""Contract with the external SEM engine and the batch refit runner.

twinsem never optimizes anything itself. An :class:`Engine` subclass wraps
whatever fits the models (OpenMx through rpy2, a native optimizer, a test
double) and returns fitted copies. :func:`run_batch` drives many such refits,
optionally on a bounded thread pool, and collects failures instead of
aborting.
"""

from __future__ import annotations

import abc
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from .config import DEFAULT_CONFIG, EngineConfig
from .model import (
    ModelSpecificationError,
    OptimizationError,
    StructuralModel,
    UnfittedModelError,
)

__all__ = [
    "BatchResult",
    "Engine",
    "ModelVariant",
    "VariantFailure",
    "VariantStep",
    "refit",
    "require_fit",
    "run_batch",
]

log = logging.getLogger(__name__)


def require_fit(models: Iterable[StructuralModel]) -> None:
    """Raise :class:`UnfittedModelError` naming every model without fit statistics."""
    unfit = [m.name for m in models if not m.has_been_fit]
    if unfit:
        raise UnfittedModelError(unfit)


class Engine(abc.ABC):
    """Adapter around an SEM optimizer.

    Subclasses implement :meth:`fit`. Everything else reads the
    :class:`~twinsem.model.FitStatistics` that ``fit`` attaches, so an engine
    only has to fill that record in.
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or DEFAULT_CONFIG

    @abc.abstractmethod
    def fit(self, model: StructuralModel, intervals: bool = False) -> StructuralModel:
        """Return a fitted copy of ``model`` or raise :class:`OptimizationError`."""
        raise NotImplementedError

    def modify(self, model: StructuralModel, constraints: Mapping[Any, Any],
               name: Optional[str] = None) -> StructuralModel:
        return model.modify(constraints, name=name)

    def get_parameter_matrix(self, model: StructuralModel, name: str) -> Dict[str, np.ndarray]:
        m = model.matrix(name)
        return {"values": m.values.copy(), "free": m.free.copy(), "labels": m.labels.copy()}

    def minus2ll(self, model: StructuralModel) -> float:
        require_fit([model])
        return float(model.fit.minus2ll)

    def log_likelihood(self, model: StructuralModel) -> float:
        return -0.5 * self.minus2ll(model)

    def degrees_of_freedom(self, model: StructuralModel) -> float:
        require_fit([model])
        return model.fit.df

    def estimated_parameters(self, model: StructuralModel) -> int:
        require_fit([model])
        return int(model.fit.n_parameters)

    def aic(self, model: StructuralModel) -> float:
        require_fit([model])
        return float(model.fit.aic)

    def confidence_intervals(self, model: StructuralModel) -> Dict[str, Dict[str, float]]:
        require_fit([model])
        return {
            label: {"lower": lo, "estimate": est, "upper": hi}
            for label, (lo, est, hi) in model.fit.intervals.items()
        }


def refit(engine: Engine, parent: StructuralModel, constraints: Mapping[Any, Any],
          name: str, intervals: bool = False) -> StructuralModel:
    """Apply ``constraints`` to a private copy of ``parent`` and fit it.

    An :class:`OptimizationError` leaving the engine is tagged with ``name``.
    """
    candidate = engine.modify(parent.copy(), constraints, name=name)
    try:
        return engine.fit(candidate, intervals=intervals)
    except OptimizationError as err:
        if err.variant is None:
            err.variant = name
        raise


@dataclass
class VariantStep:
    """One refit in a batch.

    ``parent`` is either a model or the name of an earlier step, in which case
    the step runs after that step's fit finishes and derives from its result.
    """

    name: str
    parent: Union[StructuralModel, str]
    constraints: Dict[Any, Any] = field(default_factory=dict)


@dataclass
class ModelVariant:
    """A fitted model derived from ``parent`` by ``constraints``."""

    name: str
    model: StructuralModel
    parent: str
    constraints: Dict[Any, Any] = field(default_factory=dict)


@dataclass
class VariantFailure:
    name: str
    error: BaseException


@dataclass
class BatchResult:
    """Successful variants and failures, each in declaration order."""

    variants: List[ModelVariant] = field(default_factory=list)
    failures: List[VariantFailure] = field(default_factory=list)

    @property
    def models(self) -> List[StructuralModel]:
        return [v.model for v in self.variants]

    @property
    def names(self) -> List[str]:
        return [v.name for v in self.variants]

    @property
    def ok(self) -> bool:
        return not self.failures

    def by_name(self, name: str) -> ModelVariant:
        for v in self.variants:
            if v.name == name:
                return v
        raise KeyError(name)

    def failure(self, name: str) -> Optional[VariantFailure]:
        for f in self.failures:
            if f.name == name:
                return f
        return None

    def extend(self, other: "BatchResult") -> None:
        self.variants.extend(other.variants)
        self.failures.extend(other.failures)


def _parent_name(step: VariantStep) -> str:
    return step.parent if isinstance(step.parent, str) else step.parent.name


def _waves(steps: Sequence[VariantStep]) -> List[List[VariantStep]]:
    """Group steps so every step runs after the step it derives from."""
    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        raise ModelSpecificationError(f"Variant names must be unique, got {names}")

    depth: Dict[str, int] = {}
    for step in steps:
        if isinstance(step.parent, str):
            if step.parent not in depth:
                raise ModelSpecificationError(
                    f"Variant '{step.name}' derives from '{step.parent}', which is not declared before it"
                )
            depth[step.name] = depth[step.parent] + 1
        else:
            depth[step.name] = 0

    waves: List[List[VariantStep]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for step in steps:
        waves[depth[step.name]].append(step)
    return waves


def run_batch(engine: Engine, steps: Sequence[VariantStep],
              config: Optional[EngineConfig] = None) -> BatchResult:
    """Refit every step and collect the outcomes.

    Siblings within a dependency wave are independent, so with
    ``config.max_workers > 1`` they run on a thread pool. Each refit works on
    its own copy of the parent. The result lists variants and failures in the
    order the steps were declared, whatever the completion order. A step whose
    parent failed is recorded as failed without being attempted.
    """
    config = config or engine.config
    fitted: Dict[str, StructuralModel] = {}
    errors: Dict[str, BaseException] = {}

    def attempt(step: VariantStep) -> StructuralModel:
        parent = fitted[step.parent] if isinstance(step.parent, str) else step.parent
        log.debug("Refitting '%s' from '%s' with %s", step.name, parent.name, step.constraints)
        return refit(engine, parent, step.constraints, step.name)

    for wave in _waves(steps):
        runnable = []
        for step in wave:
            if isinstance(step.parent, str) and step.parent in errors:
                errors[step.name] = OptimizationError(
                    f"not attempted because '{step.parent}' failed", variant=step.name
                )
            else:
                runnable.append(step)

        if config.max_workers > 1 and len(runnable) > 1:
            with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
                futures = {step.name: executor.submit(attempt, step) for step in runnable}
                for step in runnable:
                    try:
                        fitted[step.name] = futures[step.name].result()
                    except Exception as err:  # kept in BatchResult.failures
                        errors[step.name] = err
        else:
            for step in runnable:
                try:
                    fitted[step.name] = attempt(step)
                except Exception as err:  # kept in BatchResult.failures
                    errors[step.name] = err

    result = BatchResult()
    for step in steps:
        if step.name in fitted:
            result.variants.append(
                ModelVariant(step.name, fitted[step.name], _parent_name(step), dict(step.constraints))
            )
        else:
            log.warning("Variant '%s' failed: %s", step.name, errors[step.name])
            result.failures.append(VariantFailure(step.name, errors[step.name]))
    return result
