"""Direction-of-Causation twin models.

Two clusters of indicators each measure one latent trait (X and Y). The
latents get a Cholesky-style a/c/e decomposition across twins, and a 2x2
``beta`` matrix carries the causal paths between them:

    beta = [[a2a, b2a],
            [a2b, b2b]]

``beta[1, 0]`` (label ``a2b``) is the effect of X on Y and ``beta[0, 1]``
(``b2a``) the effect of Y on X. The diagonal stays fixed at 0. A
:class:`CausalDirection` only ever changes which off-diagonal cells are free.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .compare import AICWeightSet, compare, rank
from .config import EngineConfig
from .engine import BatchResult, Engine, VariantStep, run_batch
from .model import (
    CausalSingularityError,
    ConfigurationError,
    Matrix,
    ModelKind,
    ModelSpecificationError,
    StructuralModel,
)
from .twin import check_twin_data

__all__ = [
    "CausalDirection",
    "DirectionComparison",
    "build_direction_set",
    "build_doc",
    "causal_inverse",
    "compare_directions",
    "expected_covariance",
    "expected_means",
    "set_direction",
]

log = logging.getLogger(__name__)

N_LATENT = 2
_ONES = np.ones((2, 2))
_DIAG1 = np.eye(2)
_DZ_AR = np.array([[1.0, 0.5], [0.5, 1.0]])
_BETA_LABELS = [["a2a", "b2a"], ["a2b", "b2b"]]
_CAUSAL_LABELS = ("a2b", "b2a")


class CausalDirection(enum.Enum):
    """Causal configurations of a DoC model, named as their refits are."""

    NONE = "none"
    X_TO_Y = "a2b"
    Y_TO_X = "b2a"
    RECIPROCAL = "Recip"

    @property
    def frees(self) -> Tuple[str, ...]:
        """beta labels that are free in this configuration."""
        return {
            CausalDirection.NONE: (),
            CausalDirection.X_TO_Y: ("a2b",),
            CausalDirection.Y_TO_X: ("b2a",),
            CausalDirection.RECIPROCAL: ("a2b", "b2a"),
        }[self]


def _factor_loadings(n_x: int, n_var: int) -> Matrix:
    free = np.zeros((n_var, N_LATENT), dtype=bool)
    free[:n_x, 0] = True
    free[n_x:, 1] = True
    m = Matrix.full("FacLoad", n_var, N_LATENT, values=free.astype(float), free=free)
    m.labels[~free] = None
    return m


def _latent_matrices(causal: bool) -> Sequence[Matrix]:
    if causal:
        return [
            Matrix.diag("a", N_LATENT, values=0.2, free=True),
            Matrix.diag("c", N_LATENT, values=0.2, free=True),
            Matrix.diag("e", N_LATENT, values=1.0, free=False),
        ]
    e_free = np.array([[False, False], [True, False]])
    return [
        Matrix.lower("a", N_LATENT, values=0.2, free=True),
        Matrix.lower("c", N_LATENT, values=0.2, free=True),
        Matrix.lower("e", N_LATENT, values=1.0, free=e_free),
    ]


def _validate_indicators(x_indicators: Sequence[str], y_indicators: Sequence[str]) -> None:
    if not x_indicators or not y_indicators:
        raise ConfigurationError(
            "Both trait clusters need at least one indicator "
            f"(got {len(x_indicators)} for X and {len(y_indicators)} for Y)"
        )
    shared = sorted(set(x_indicators) & set(y_indicators))
    if shared:
        raise ConfigurationError(f"Indicators {shared} are assigned to both X and Y")


def build_doc(
    x_indicators: Sequence[str],
    y_indicators: Sequence[str],
    mz_data: pd.DataFrame,
    dz_data: pd.DataFrame,
    name: Optional[str] = None,
    sep: str = "_T",
    causal: bool = True,
    direction: CausalDirection = CausalDirection.NONE,
) -> StructuralModel:
    """Build a Direction-of-Causation (or plain bivariate Cholesky) model.

    Parameters
    ----------
    x_indicators, y_indicators : list of str
        Base names of the indicators of latent X and latent Y.
    mz_data, dz_data : pd.DataFrame
        Twin-pair data with ``<name><sep>1`` and ``<name><sep>2`` columns.
    name : str, optional
        Defaults to "DoC", or "Chol" when ``causal`` is False.
    causal : bool
        True builds the causal form (diagonal latent a and c, latent e fixed
        at 1). False builds the Cholesky form used as the non-causal
        comparison.
    direction : CausalDirection
        Initial causal configuration.

    Raises
    ------
    ConfigurationError
        If a cluster is empty, an indicator is in both clusters, or either
        data frame lacks a twin column. Raised before any fitting.
    """
    x_indicators = list(x_indicators)
    y_indicators = list(y_indicators)
    _validate_indicators(x_indicators, y_indicators)
    sel_dvs = x_indicators + y_indicators
    columns = check_twin_data(sel_dvs, mz_data, dz_data, sep)
    if not causal and direction != CausalDirection.NONE:
        raise ModelSpecificationError("A Cholesky (causal=False) model cannot carry causal paths")

    n_var = len(sel_dvs)
    if name is None:
        name = "DoC" if causal else "Chol"

    matrices = [
        _factor_loadings(len(x_indicators), n_var),
        *_latent_matrices(causal),
        Matrix("beta", np.zeros((N_LATENT, N_LATENT)), free=False, labels=_BETA_LABELS),
        Matrix.diag("as", n_var, values=0.3, free=True),
        Matrix.diag("cs", n_var, values=0.3, free=True),
        Matrix.diag("es", n_var, values=0.3, free=True, lbound=1e-5),
        Matrix.full("Means", 1, n_var, values=0.1, free=True),
    ]
    metadata = {
        "sep": sep,
        "sel_dvs": sel_dvs,
        "x_indicators": x_indicators,
        "y_indicators": y_indicators,
        "n_var": n_var,
        "causal": causal,
        "direction": CausalDirection.NONE,
    }
    groups = {"MZ": mz_data[columns], "DZ": dz_data[columns]}
    model = StructuralModel(name, ModelKind.DOC, matrices, groups, manifests=columns, metadata=metadata)
    if direction != CausalDirection.NONE:
        model = set_direction(model, direction)
    return model


def _require_causal(model: StructuralModel) -> None:
    if model.kind != ModelKind.DOC:
        raise ModelSpecificationError(f"'{model.name}' is not a DoC model")
    if not model.metadata.get("causal", True):
        raise ModelSpecificationError(
            f"'{model.name}' is a Cholesky (causal=False) model and cannot carry causal paths"
        )


def set_direction(model: StructuralModel, direction: CausalDirection,
                  name: Optional[str] = None) -> StructuralModel:
    """Return an unfit copy with only the causal beta cells changed.

    Cells freed by ``direction`` keep their current value; the other
    off-diagonal cells are fixed at 0. Raises
    :class:`CausalSingularityError` if the resulting ``I - beta`` cannot be
    inverted.
    """
    _require_causal(model)
    direction = CausalDirection(direction)
    constraints = {label: ("free" if label in direction.frees else 0.0) for label in _CAUSAL_LABELS}
    new = model.modify(constraints, name=name)
    causal_inverse(new.values("beta"))
    new.metadata["direction"] = direction
    return new


def causal_inverse(beta: np.ndarray) -> np.ndarray:
    """``(I - beta)^-1``.

    Raises
    ------
    CausalSingularityError
        If ``I - beta`` is singular, i.e. the causal loop is degenerate.
    """
    beta = np.asarray(beta, dtype=float)
    i_beta = np.eye(beta.shape[0]) - beta
    if np.linalg.matrix_rank(i_beta) < beta.shape[0]:
        raise CausalSingularityError(f"(I - beta) is singular for beta = {beta.tolist()}")
    try:
        return np.linalg.inv(i_beta)
    except np.linalg.LinAlgError as err:
        raise CausalSingularityError(f"(I - beta) is singular for beta = {beta.tolist()}") from err


def expected_covariance(model: StructuralModel) -> Dict[str, np.ndarray]:
    """Model-implied covariances of a DoC model.

    Returns the latent covariance for both twins (``latent_mz``,
    ``latent_dz``, after the causal transform) and the manifest covariance
    (``MZ``, ``DZ``) in twin-major column order.
    """
    a, c, e = (model.values(x) for x in ("a", "c", "e"))
    A, C, E = a @ a.T, c @ c.T, e @ e.T
    v_mz = np.kron(_ONES, A) + np.kron(_ONES, C) + np.kron(_DIAG1, E)
    v_dz = np.kron(_DZ_AR, A) + np.kron(_ONES, C) + np.kron(_DIAG1, E)

    cause = np.kron(_DIAG1, causal_inverse(model.values("beta")))
    latent_mz = cause @ v_mz @ cause.T
    latent_dz = cause @ v_dz @ cause.T

    loadings = np.kron(_DIAG1, model.values("FacLoad"))
    fac_mz = loadings @ latent_mz @ loadings.T
    fac_dz = loadings @ latent_dz @ loadings.T

    # Specific paths are used directly as variances
    as_, cs, es = (model.values(x) for x in ("as", "cs", "es"))
    spec_mz = np.kron(_ONES, as_) + np.kron(_ONES, cs) + np.kron(_DIAG1, es)
    spec_dz = np.kron(_DZ_AR, as_) + np.kron(_ONES, cs) + np.kron(_DIAG1, es)

    return {
        "latent_mz": latent_mz,
        "latent_dz": latent_dz,
        "MZ": fac_mz + spec_mz,
        "DZ": fac_dz + spec_dz,
    }


def expected_means(model: StructuralModel) -> np.ndarray:
    means = model.values("Means").ravel()
    return np.concatenate([means, means])


def build_direction_set(model: StructuralModel, engine: Engine, cholesky: Optional[StructuralModel] = None,
                        config: Optional[EngineConfig] = None) -> BatchResult:
    """Refit the causal configurations of a DoC model.

    The DoC base (fit first if needed) yields ``a2b``, ``b2a`` and ``Recip``.
    An optional Cholesky model is fit alongside as the non-causal reference.
    Failures, including :class:`CausalSingularityError`, are collected per
    variant.
    """
    _require_causal(model)

    steps = []
    if cholesky is not None:
        steps.append(VariantStep(cholesky.name, cholesky, {}))
    parent = model
    if not model.has_been_fit:
        steps.append(VariantStep(model.name, model, {}))
        parent = model.name
    for direction in (CausalDirection.X_TO_Y, CausalDirection.Y_TO_X, CausalDirection.RECIPROCAL):
        constraints = {label: "free" for label in direction.frees}
        steps.append(VariantStep(direction.value, parent, constraints))
    return run_batch(engine, steps, config)


@dataclass
class DirectionComparison:
    base: StructuralModel
    batch: BatchResult
    table: pd.DataFrame
    ranking: Optional[AICWeightSet]


def compare_directions(model: StructuralModel, engine: Engine, cholesky: Optional[StructuralModel] = None,
                       config: Optional[EngineConfig] = None) -> DirectionComparison:
    """Fit the causal configurations and compare them.

    The Cholesky model is the reference row when given, otherwise the fitted
    DoC base. Every fitted model is ranked by Akaike weight.
    """
    config = config or engine.config
    batch = build_direction_set(model, engine, cholesky=cholesky, config=config)

    fitted = {v.name: v.model for v in batch.variants}
    doc_base = model if model.has_been_fit else fitted.get(model.name)
    if cholesky is not None and cholesky.name in fitted:
        reference = fitted[cholesky.name]
    else:
        reference = doc_base
    if reference is None:
        raise batch.failure(model.name).error

    others = [m for m in ([doc_base] + batch.models) if m is not None and m is not reference]
    others = list({id(m): m for m in others}.values())
    table = compare(reference, others, digits=config.p_digits, config=config)
    candidates = [reference] + others
    log.info("Comparing %s against '%s'", [m.name for m in others], reference.name)
    ranking = rank(candidates, digits=config.weight_digits) if len(candidates) > 1 else None
    return DirectionComparison(reference, batch, table, ranking)
