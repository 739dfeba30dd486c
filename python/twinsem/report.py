"""Tables of standardized estimates, correlations and confidence intervals.

These functions only build :class:`pandas.DataFrame` objects; rendering them
(markdown, HTML, diagrams) is left to the caller.
"""

from __future__ import annotations

from typing import Dict, List, Sequence

import numpy as np
import pandas as pd

from .correlations import model_correlations
from .engine import require_fit
from .model import ModelKind, ModelSpecificationError, StructuralModel
from .standardize import standardize
from .twin import ADE_DZCR

__all__ = ["correlation_table", "estimates_table", "interval_matrices"]


def _trait_names(model: StructuralModel, n: int) -> List[str]:
    if model.kind == ModelKind.DOC:
        return ["X", "Y"]
    names = list(model.metadata.get("sel_dvs") or []) + list(model.metadata.get("covariates") or [])
    if names and len(names) == n:
        return list(names)
    return [f"var{i + 1}" for i in range(n)]


def _component_names(model: StructuralModel) -> Sequence[str]:
    if model.has_matrix("dzCr") and np.isclose(model.values("dzCr")[0, 0], ADE_DZCR):
        return ("a", "d", "e")
    return ("a", "c", "e")


def _lower(M: np.ndarray) -> np.ndarray:
    out = np.array(M, dtype=float)
    out[np.triu_indices(out.shape[0], k=1)] = np.nan
    return out


def _side_by_side(blocks: Dict[str, np.ndarray], index: List[str]) -> pd.DataFrame:
    frames = []
    for prefix, M in blocks.items():
        cols = [f"{prefix}{j + 1}" for j in range(M.shape[1])]
        frames.append(pd.DataFrame(_lower(M), index=index, columns=cols))
    return pd.concat(frames, axis=1)


def estimates_table(model: StructuralModel, std: bool = True) -> pd.DataFrame:
    """Cholesky paths of an ACE-type model, one row per trait.

    Columns are ``a1..an``, ``c1..cn`` (``d1..dn`` when dzCr is 0.25) and
    ``e1..en``; cells above the diagonal are NaN. DoC models report their
    latent paths.
    """
    require_fit([model])
    if model.kind not in (ModelKind.ACE, ModelKind.ACECOV, ModelKind.DOC):
        raise ModelSpecificationError(f"No Cholesky estimate table for {model.kind.value} models")

    a, c, e = (model.values(x) for x in ("a", "c", "e"))
    if std:
        est = standardize(a, c, e)
        a, c, e = est.a_std, est.c_std, est.e_std
    names = _component_names(model)
    index = _trait_names(model, a.shape[0])
    return _side_by_side(dict(zip(names, (a, c, e))), index)


def correlation_table(model: StructuralModel) -> pd.DataFrame:
    """rA, rC (or rD) and rE side by side, lower triangles only."""
    require_fit([model])
    corr = model_correlations(model)
    names = ["r" + x.upper() for x in _component_names(model)]
    index = _trait_names(model, corr.rA.shape[0])
    return _side_by_side(dict(zip(names, (corr.rA, corr.rC, corr.rE))), index)


def interval_matrices(model: StructuralModel, matrices: Sequence[str] = ("a", "c", "e"),
                      digits: int = 2) -> Dict[str, pd.DataFrame]:
    """Place each confidence interval in the matrix cells of its parameter.

    Intervals reported by the engine are keyed by label; every cell sharing
    that label in one of ``matrices`` receives ``"est [lower, upper]"``.
    Intervals whose bounds are both 0 (dropped parameters) are skipped.
    """
    require_fit([model])
    out: Dict[str, np.ndarray] = {}
    for name in matrices:
        out[name] = np.full(model.matrix(name).shape, np.nan, dtype=object)

    for label, (lower, estimate, upper) in model.fit.intervals.items():
        if lower == 0 and upper == 0:
            continue
        text = f"{estimate:.{digits}f} [{lower:.{digits}f}, {upper:.{digits}f}]"
        for addr in model.address_of(label):
            if addr.matrix in out:
                out[addr.matrix][addr.row, addr.col] = text

    return {name: pd.DataFrame(values) for name, values in out.items()}
