"""Builders for classical twin models and their expected covariance algebra.

The builders only describe models: matrices with start values, free flags
and labels, plus the MZ/DZ data. Fitting is left to an
:class:`~twinsem.engine.Engine`. Data problems are reported as
:class:`~twinsem.model.ConfigurationError` before any engine is involved.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .model import (
    ConfigurationError,
    Matrix,
    ModelKind,
    ModelSpecificationError,
    StructuralModel,
)
from .standardize import variance_components

__all__ = [
    "build_ace",
    "build_cp",
    "build_gxe",
    "build_ip",
    "check_twin_data",
    "expected_covariance",
    "expected_means",
    "twin_vars",
]

log = logging.getLogger(__name__)

ADE_DZCR = 0.25
ACE_DZCR = 1.0


def twin_vars(names: Union[str, Sequence[str]], sep: str = "_T", suffixes: Sequence[Any] = (1, 2)) -> List[str]:
    """Expand base names into twin columns, twin-major.

    >>> twin_vars(["ht", "wt"])
    ['ht_T1', 'wt_T1', 'ht_T2', 'wt_T2']
    """
    if isinstance(names, str):
        names = [names]
    return [f"{n}{sep}{s}" for s in suffixes for n in names]


def check_twin_data(sel_dvs: Sequence[str], mz_data: Optional[pd.DataFrame], dz_data: Optional[pd.DataFrame],
                    sep: str = "_T") -> List[str]:
    """Check both groups hold every twin column; return the column list."""
    if not sel_dvs:
        raise ConfigurationError("No variables selected")
    columns = twin_vars(sel_dvs, sep=sep)
    for group, data in (("MZ", mz_data), ("DZ", dz_data)):
        if data is None or len(data) == 0:
            raise ConfigurationError(f"{group} data are missing or empty")
        missing = [c for c in columns if c not in data.columns]
        if missing:
            raise ConfigurationError(
                f"{group} data lack column(s) {missing}. Expected <name>{sep}1 and <name>{sep}2 for {list(sel_dvs)}"
            )
    return columns


def _start_values(mz_data: pd.DataFrame, columns: Sequence[str]) -> Tuple[np.ndarray, np.ndarray]:
    """Per-variable path start (sqrt of a third of the variance) and mean."""
    block = mz_data[list(columns)].astype(float)
    var = block.var().to_numpy()
    var = np.where(np.isfinite(var) & (var > 0), var, 1.0)
    means = block.mean().to_numpy()
    means = np.where(np.isfinite(means), means, 0.0)
    return np.sqrt(var / 3.0), means


def _mean_matrix(name: str, sel_dvs: Sequence[str], means: np.ndarray) -> Matrix:
    n = len(sel_dvs)
    labels = [f"{name}_{v}" for v in sel_dvs] * 2
    return Matrix(name, np.tile(means, 2).reshape(1, 2 * n), free=True, labels=np.array(labels, dtype=object))


def _zygosity_matrices(dz_ar: float, dz_cr: float) -> List[Matrix]:
    return [
        Matrix.full("dzAr", 1, 1, values=dz_ar, free=False),
        Matrix.full("dzCr", 1, 1, values=dz_cr, free=False),
    ]


def _groups(columns: Sequence[str], mz_data: pd.DataFrame, dz_data: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    return {"MZ": mz_data[list(columns)], "DZ": dz_data[list(columns)]}


def build_ace(
    sel_dvs: Sequence[str],
    mz_data: pd.DataFrame,
    dz_data: pd.DataFrame,
    sep: str = "_T",
    dz_ar: float = 0.5,
    dz_cr: float = ACE_DZCR,
    name: Optional[str] = None,
    covariates: Optional[Sequence[str]] = None,
) -> StructuralModel:
    """Build a Cholesky ACE (or, with ``dz_cr=0.25``, ADE) twin model.

    Args:
        sel_dvs: Base variable names; columns are ``<name><sep>1/2``.
        mz_data: MZ twin pairs, one row per pair.
        dz_data: DZ twin pairs.
        sep: Separator between base name and twin number.
        dz_ar: DZ genetic correlation (0.5).
        dz_cr: DZ correlation of the second component: 1.0 for C, 0.25 for D.
        name: Model name, "ACE" or "ADE" by default.
        covariates: Optional covariates (twin columns) modelled in the
            variance. They are appended after ``sel_dvs`` so ``a``, ``c``
            and ``e`` grow to ``n_dv + n_cov`` and each covariate row loads
            on the trait factors. The model kind becomes ACEcov.

    Returns:
        An unfit :class:`StructuralModel`.
    """
    sel_dvs = list(sel_dvs)
    check_twin_data(sel_dvs, mz_data, dz_data, sep)
    covariates = list(covariates or [])
    kind = ModelKind.ACE
    if covariates:
        check_twin_data(covariates, mz_data, dz_data, sep)
        overlap = sorted(set(sel_dvs) & set(covariates))
        if overlap:
            raise ConfigurationError(f"{overlap} are listed both as traits and as covariates")
        kind = ModelKind.ACECOV
    if name is None:
        name = "ADE" if dz_cr == ADE_DZCR else "ACE"

    variables = sel_dvs + covariates
    n = len(variables)
    columns = twin_vars(variables, sep=sep)
    path_start, means = _start_values(mz_data, columns[:n])
    matrices = [
        Matrix.lower("a", n, values=np.diag(path_start), free=True),
        Matrix.lower("c", n, values=np.diag(path_start), free=True),
        Matrix.lower("e", n, values=np.diag(path_start), free=True),
        *_zygosity_matrices(dz_ar, dz_cr),
        _mean_matrix("expMean", variables, means),
    ]
    metadata = {"sep": sep, "sel_dvs": sel_dvs, "n_var": len(sel_dvs)}
    if covariates:
        metadata["covariates"] = covariates
    return StructuralModel(name, kind, matrices, _groups(columns, mz_data, dz_data),
                           manifests=columns, metadata=metadata)


def build_gxe(
    sel_dv: Union[str, Sequence[str]],
    sel_def: Union[str, Sequence[str]],
    mz_data: pd.DataFrame,
    dz_data: pd.DataFrame,
    sep: str = "_T",
    name: str = "GxE",
) -> StructuralModel:
    """Build a univariate moderated ACE model.

    Paths and the mean are linear functions of a moderator measured on each
    twin: ``a(m) = a + am*m`` (likewise for c and e) and
    ``mean(m) = mean + lin11*m + quad11*m**2``. Pairs with a missing
    moderator are removed.
    """
    if not isinstance(sel_dv, str):
        if len(sel_dv) != 1:
            raise ModelSpecificationError(f"GxE models take one trait, got {list(sel_dv)}")
        sel_dv = sel_dv[0]
    if not isinstance(sel_def, str):
        if len(sel_def) != 1:
            raise ModelSpecificationError(f"GxE models take one moderator, got {list(sel_def)}")
        sel_def = sel_def[0]

    columns = check_twin_data([sel_dv], mz_data, dz_data, sep)
    def_columns = check_twin_data([sel_def], mz_data, dz_data, sep)

    groups = {}
    for group, data in (("MZ", mz_data), ("DZ", dz_data)):
        complete = data[def_columns].notna().all(axis=1)
        dropped = int((~complete).sum())
        if dropped:
            log.info("Removed %d %s pair(s) with a missing moderator", dropped, group)
        groups[group] = data.loc[complete, columns + def_columns]
        if len(groups[group]) == 0:
            raise ConfigurationError(f"No {group} pairs have a moderator value")

    path_start, means = _start_values(groups["MZ"], columns[:1])
    start = float(path_start[0])
    matrices = [Matrix.full(p, 1, 1, values=start, free=True) for p in ("a", "c", "e")]
    matrices += [Matrix.full(p, 1, 1, values=0.0, free=True) for p in ("am", "cm", "em")]
    matrices += [
        Matrix.full("means", 1, 1, values=float(means[0]), free=True),
        Matrix("betaLin", [[0.0]], free=True, labels=[["lin11"]]),
        Matrix("betaQuad", [[0.0]], free=True, labels=[["quad11"]]),
        *_zygosity_matrices(0.5, ACE_DZCR),
    ]
    metadata = {"sep": sep, "sel_dvs": [sel_dv], "n_var": 1, "moderators": def_columns}
    return StructuralModel(name, ModelKind.GXE, matrices, groups, manifests=columns, metadata=metadata)


def _multivariate(kind: ModelKind, common: Sequence[Matrix], sel_dvs: Sequence[str], mz_data: pd.DataFrame,
                  dz_data: pd.DataFrame, sep: str, name: str, n_factors: int) -> StructuralModel:
    n = len(sel_dvs)
    columns = twin_vars(sel_dvs, sep=sep)
    path_start, means = _start_values(mz_data, columns[:n])
    matrices = list(common) + [
        Matrix.diag("as", n, values=path_start, free=True),
        Matrix.diag("cs", n, values=path_start, free=True),
        Matrix.diag("es", n, values=path_start, free=True),
        *_zygosity_matrices(0.5, ACE_DZCR),
        _mean_matrix("expMean", sel_dvs, means),
    ]
    metadata = {"sep": sep, "sel_dvs": list(sel_dvs), "n_var": n, "n_factors": n_factors}
    return StructuralModel(name, kind, matrices, _groups(columns, mz_data, dz_data),
                           manifests=columns, metadata=metadata)


def build_cp(sel_dvs: Sequence[str], mz_data: pd.DataFrame, dz_data: pd.DataFrame, sep: str = "_T",
             n_factors: int = 1, name: str = "CP") -> StructuralModel:
    """Common pathway model: A, C and E reach the traits through shared factors."""
    sel_dvs = list(sel_dvs)
    check_twin_data(sel_dvs, mz_data, dz_data, sep)
    if not 1 <= n_factors <= len(sel_dvs):
        raise ModelSpecificationError(f"n_factors must be between 1 and {len(sel_dvs)}, got {n_factors}")
    common = [
        Matrix.diag("a_cp", n_factors, values=0.6, free=True),
        Matrix.diag("c_cp", n_factors, values=0.6, free=True),
        Matrix.diag("e_cp", n_factors, values=0.6, free=True),
        Matrix.full("cp_loadings", len(sel_dvs), n_factors, values=0.6, free=True),
    ]
    return _multivariate(ModelKind.CP, common, sel_dvs, mz_data, dz_data, sep, name, n_factors)


def build_ip(sel_dvs: Sequence[str], mz_data: pd.DataFrame, dz_data: pd.DataFrame, sep: str = "_T",
             n_factors: int = 1, name: str = "IP") -> StructuralModel:
    """Independent pathway model: separate A, C and E factors load on every trait."""
    sel_dvs = list(sel_dvs)
    check_twin_data(sel_dvs, mz_data, dz_data, sep)
    if not 1 <= n_factors <= len(sel_dvs):
        raise ModelSpecificationError(f"n_factors must be between 1 and {len(sel_dvs)}, got {n_factors}")
    common = [Matrix.full(p, len(sel_dvs), n_factors, values=0.6, free=True) for p in ("ai", "ci", "ei")]
    return _multivariate(ModelKind.IP, common, sel_dvs, mz_data, dz_data, sep, name, n_factors)


def _zygosity_values(model: StructuralModel) -> Tuple[float, float]:
    dz_ar = float(model.values("dzAr")[0, 0]) if model.has_matrix("dzAr") else 0.5
    dz_cr = float(model.values("dzCr")[0, 0]) if model.has_matrix("dzCr") else ACE_DZCR
    return dz_ar, dz_cr


def _twin_blocks(A: np.ndarray, C: np.ndarray, E: np.ndarray, dz_ar: float, dz_cr: float) -> Dict[str, np.ndarray]:
    V = A + C + E
    mz_cross = A + C
    dz_cross = dz_ar * A + dz_cr * C
    return {
        "MZ": np.block([[V, mz_cross], [mz_cross.T, V]]),
        "DZ": np.block([[V, dz_cross], [dz_cross.T, V]]),
    }


def _split_moderator(moderator: Union[float, Sequence[float]]) -> Tuple[float, float]:
    if np.ndim(moderator) == 0:
        return float(moderator), float(moderator)
    m1, m2 = moderator
    return float(m1), float(m2)


def _gxe_covariance(model: StructuralModel, moderator: Union[float, Sequence[float]]) -> Dict[str, np.ndarray]:
    m1, m2 = _split_moderator(moderator)
    path = {
        p: (lambda m, p=p: float(model.values(p)[0, 0] + model.values(p + "m")[0, 0] * m))
        for p in ("a", "c", "e")
    }
    dz_ar, dz_cr = _zygosity_values(model)
    v1 = sum(path[p](m1) ** 2 for p in ("a", "c", "e"))
    v2 = sum(path[p](m2) ** 2 for p in ("a", "c", "e"))
    a12 = path["a"](m1) * path["a"](m2)
    c12 = path["c"](m1) * path["c"](m2)
    mz = a12 + c12
    dz = dz_ar * a12 + dz_cr * c12
    return {
        "MZ": np.array([[v1, mz], [mz, v2]]),
        "DZ": np.array([[v1, dz], [dz, v2]]),
    }


def expected_covariance(model: StructuralModel,
                        moderator: Optional[Union[float, Sequence[float]]] = None) -> Dict[str, np.ndarray]:
    """Model-implied MZ and DZ covariance of the twin columns.

    GxE models are evaluated at a moderator value (one value for both twins,
    or a pair). DoC models also return their latent-level matrices.
    """
    if model.kind == ModelKind.DOC:
        from .doc import expected_covariance as doc_covariance

        return doc_covariance(model)
    if model.kind == ModelKind.GXE:
        if moderator is None:
            raise ModelSpecificationError("GxE expected covariance needs a moderator value")
        return _gxe_covariance(model, moderator)
    if model.kind in (ModelKind.ACE, ModelKind.ACECOV, ModelKind.CP, ModelKind.IP):
        vc = variance_components(model)
        return _twin_blocks(vc.A, vc.C, vc.E, *_zygosity_values(model))
    raise ModelSpecificationError(f"Expected covariance is not defined for {model.kind.value} models")


def expected_means(model: StructuralModel,
                   moderator: Optional[Union[float, Sequence[float]]] = None) -> np.ndarray:
    """Model-implied means of the twin columns (twin 1 then twin 2)."""
    if model.kind == ModelKind.DOC:
        from .doc import expected_means as doc_means

        return doc_means(model)
    if model.kind == ModelKind.GXE:
        if moderator is None:
            raise ModelSpecificationError("GxE expected means need a moderator value")
        mean = float(model.values("means")[0, 0])
        lin = float(model.values("betaLin")[0, 0])
        quad = float(model.values("betaQuad")[0, 0])
        return np.array([mean + lin * m + quad * m ** 2 for m in _split_moderator(moderator)])
    return model.values("expMean").ravel()
