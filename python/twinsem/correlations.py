"""Genetic and environmental correlations from A, C and E.

Each variance matrix is converted to a correlation matrix on its own. A
component that was dropped (for example C in an AE model) has zero variance,
so its block is returned as all-NaN while the other two are still computed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from .model import SingularMatrixError, StructuralModel
from .standardize import Moderator, variance_components

__all__ = ["CorrelationSet", "congruence", "correlations", "cov2cor", "model_correlations"]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelationSet:
    """rA, rC and rE. ``computable[name]`` is False where the block is all-NaN."""

    rA: np.ndarray
    rC: np.ndarray
    rE: np.ndarray
    computable: Dict[str, bool] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, np.ndarray]:
        return {"rA": self.rA, "rC": self.rC, "rE": self.rE}


def congruence(M: np.ndarray) -> np.ndarray:
    """``(I*M)^-1/2 M (I*M)^-1/2``.

    Raises
    ------
    SingularMatrixError
        If any diagonal entry is zero, negative or not finite.
    """
    M = np.asarray(M, dtype=float)
    d = np.diag(M)
    bad = np.flatnonzero(~np.isfinite(d) | (d <= 0))
    if bad.size:
        raise SingularMatrixError(f"Diagonal entries {bad.tolist()} are not positive; matrix cannot be scaled")
    scale = np.diag(1.0 / np.sqrt(d))
    return scale @ M @ scale


def cov2cor(V: np.ndarray) -> np.ndarray:
    """Covariance to correlation with an exactly symmetric result."""
    R = congruence(V)
    upper = np.triu(R, k=1)
    return upper + upper.T + np.diag(np.diag(R))


def correlations(A: np.ndarray, C: np.ndarray, E: np.ndarray) -> CorrelationSet:
    """Correlation matrices for A, C and E, each computed independently."""
    out = {}
    computable = {}
    for name, M in (("rA", A), ("rC", C), ("rE", E)):
        M = np.atleast_2d(np.asarray(M, dtype=float))
        try:
            out[name] = cov2cor(M)
            computable[name] = True
        except SingularMatrixError as err:
            log.warning("%s could not be computed: %s", name, err)
            out[name] = np.full(M.shape, np.nan)
            computable[name] = False
    return CorrelationSet(out["rA"], out["rC"], out["rE"], computable)


def model_correlations(model: StructuralModel, moderator: Optional[Moderator] = None) -> CorrelationSet:
    vc = variance_components(model, moderator=moderator)
    return correlations(vc.A, vc.C, vc.E)
