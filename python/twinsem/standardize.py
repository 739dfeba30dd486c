"""Standardization of A/C/E path coefficients.

Raw Cholesky paths are rescaled by the inverse standard deviation of each
trait's total variance so that, after standardization,
``diag(a a' + c c' + e e') == 1``. :func:`standardize` works on bare arrays;
:func:`standardize_model` dispatches on :class:`~twinsem.model.ModelKind` and
returns a standardized copy of a fitted model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np

from .engine import require_fit
from .model import (
    DomainError,
    ModelKind,
    ModelSpecificationError,
    SingularMatrixError,
    StructuralModel,
)

__all__ = [
    "PathMatrixSet",
    "StandardizedEstimate",
    "VarianceComponents",
    "inverse_sd",
    "path_matrices",
    "standardize",
    "standardize_model",
    "variance_components",
]

log = logging.getLogger(__name__)

Moderator = Union[float, Tuple[float, float]]


@dataclass(frozen=True)
class PathMatrixSet:
    a: np.ndarray
    c: np.ndarray
    e: np.ndarray


@dataclass(frozen=True)
class VarianceComponents:
    A: np.ndarray
    C: np.ndarray
    E: np.ndarray

    @property
    def total(self) -> np.ndarray:
        return self.A + self.C + self.E

    def proportions(self) -> "VarianceComponents":
        """Each component divided by the total variance of its trait (diagonal only)."""
        sd_inv = inverse_sd(self.total)
        return VarianceComponents(
            sd_inv @ self.A @ sd_inv, sd_inv @ self.C @ sd_inv, sd_inv @ self.E @ sd_inv
        )


@dataclass(frozen=True)
class StandardizedEstimate:
    a_std: np.ndarray
    c_std: np.ndarray
    e_std: np.ndarray
    A: np.ndarray
    C: np.ndarray
    E: np.ndarray
    Vtot: np.ndarray
    sd_inverse: np.ndarray

    @property
    def components(self) -> VarianceComponents:
        return VarianceComponents(self.A, self.C, self.E)


def inverse_sd(V: np.ndarray) -> np.ndarray:
    """Return ``diag(1 / sqrt(diag(V)))``.

    Raises
    ------
    DomainError
        If any diagonal entry of ``V`` is not strictly positive.
    """
    V = np.asarray(V, dtype=float)
    d = np.diag(V)
    for i, v in enumerate(d):
        if not np.isfinite(v) or v <= 0:
            raise DomainError(i, float(v))
    return np.diag(1.0 / np.sqrt(d))


def standardize(a: np.ndarray, c: np.ndarray, e: np.ndarray) -> StandardizedEstimate:
    """Standardize Cholesky path matrices.

    Parameters
    ----------
    a, c, e : np.ndarray
        Square path matrices of equal size (additive genetic, shared and
        unique environment). They are not modified.

    Returns
    -------
    StandardizedEstimate
        Standardized paths together with the raw variance components,
        total variance and the inverse-SD scaling matrix.

    Raises
    ------
    DomainError
        If a trait has non-positive total variance.
    """
    a, c, e = (np.atleast_2d(np.array(x, dtype=float)) for x in (a, c, e))
    if not (a.shape == c.shape == e.shape) or a.shape[0] != a.shape[1]:
        raise ModelSpecificationError(
            f"a, c and e must be square and the same size, got {a.shape}, {c.shape}, {e.shape}"
        )

    A = a @ a.T
    C = c @ c.T
    E = e @ e.T
    Vtot = A + C + E
    sd_inv = inverse_sd(Vtot)
    return StandardizedEstimate(
        a_std=sd_inv @ a,
        c_std=sd_inv @ c,
        e_std=sd_inv @ e,
        A=A,
        C=C,
        E=E,
        Vtot=Vtot,
        sd_inverse=sd_inv,
    )


def _moderated(model: StructuralModel, moderator: Optional[Moderator]) -> PathMatrixSet:
    if moderator is None:
        raise ModelSpecificationError(
            f"'{model.name}' is a GxE model: variance components depend on the moderator, pass moderator="
        )
    m = float(moderator[0]) if isinstance(moderator, tuple) else float(moderator)
    paths = [model.values(p) + model.values(p + "m") * m for p in ("a", "c", "e")]
    return PathMatrixSet(*paths)


def path_matrices(model: StructuralModel, moderator: Optional[Moderator] = None) -> PathMatrixSet:
    """The a, c, e matrices whose outer products give the latent or trait variance."""
    if model.kind in (ModelKind.ACE, ModelKind.ACECOV, ModelKind.DOC):
        return PathMatrixSet(model.values("a"), model.values("c"), model.values("e"))
    if model.kind == ModelKind.GXE:
        return _moderated(model, moderator)
    raise ModelSpecificationError(f"{model.kind.value} models have no single a/c/e path set")


def variance_components(model: StructuralModel, moderator: Optional[Moderator] = None) -> VarianceComponents:
    """A, C and E variance matrices of a model.

    DoC models are reported at the latent level. GxE models need the
    moderator value at which to evaluate the moderated paths.
    """
    kind = model.kind
    if kind in (ModelKind.ACE, ModelKind.ACECOV, ModelKind.DOC, ModelKind.GXE):
        p = path_matrices(model, moderator)
        return VarianceComponents(p.a @ p.a.T, p.c @ p.c.T, p.e @ p.e.T)
    if kind == ModelKind.IP:
        comps = []
        for x in ("a", "c", "e"):
            common = model.values(x + "i")
            specific = model.values(x + "s")
            comps.append(common @ common.T + specific @ specific.T)
        return VarianceComponents(*comps)
    if kind == ModelKind.CP:
        loadings = model.values("cp_loadings")
        comps = []
        for x in ("a", "c", "e"):
            common = model.values(x + "_cp")
            specific = model.values(x + "s")
            comps.append(loadings @ (common @ common.T) @ loadings.T + specific @ specific.T)
        return VarianceComponents(*comps)
    raise ModelSpecificationError(f"Variance components are not defined for {kind.value} models")


def _standardize_ram(model: StructuralModel) -> StructuralModel:
    A = model.values("A")
    S = model.values("S")
    identity = np.eye(S.shape[0])
    try:
        IA = np.linalg.inv(identity - A)
    except np.linalg.LinAlgError as err:
        raise SingularMatrixError(f"(I - A) is singular in '{model.name}'; the model cannot be standardized") from err
    exp_cov = IA @ S @ IA.T
    D = inverse_sd(exp_cov)

    out = model.copy(name=f"{model.name}_std")
    out.matrix("A").values[:, :] = D @ A @ np.linalg.inv(D)
    out.matrix("S").values[:, :] = D @ S @ D
    if out.has_matrix("M"):
        out.matrix("M").values[:, :] = 0.0
    return out


def standardize_model(model: StructuralModel) -> StructuralModel:
    """Return a copy of a fitted model with standardized path values.

    The copy is named ``<name>_std`` and keeps the fit statistics of the
    source model. The source model is never modified.

    Raises
    ------
    UnfittedModelError
        If ``model`` has not been fit.
    ModelSpecificationError
        For GxE models, whose variance depends on the moderator.
    """
    require_fit([model])
    kind = model.kind

    if kind == ModelKind.RAM:
        return _standardize_ram(model)
    if kind == ModelKind.GXE:
        raise ModelSpecificationError(
            "GxE models cannot be standardized as a whole; use variance_components(model, moderator=...)"
        )

    out = model.copy(name=f"{model.name}_std")
    if kind in (ModelKind.ACE, ModelKind.ACECOV, ModelKind.DOC):
        est = standardize(model.values("a"), model.values("c"), model.values("e"))
        out.matrix("a").values[:, :] = est.a_std
        out.matrix("c").values[:, :] = est.c_std
        out.matrix("e").values[:, :] = est.e_std
        return out

    sd_inv = inverse_sd(variance_components(model).total)
    if kind == ModelKind.IP:
        scaled = ("ai", "ci", "ei", "as", "cs", "es")
    elif kind == ModelKind.CP:
        scaled = ("cp_loadings", "as", "cs", "es")
    else:
        raise ModelSpecificationError(f"Don't know how to standardize {kind.value} models")
    for name in scaled:
        out.matrix(name).values[:, :] = sd_inv @ model.values(name)
    log.debug("Standardized %s in '%s'", scaled, model.name)
    return out
