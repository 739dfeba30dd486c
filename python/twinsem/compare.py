"""Likelihood-ratio comparison tables and Akaike-weight ranking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import chi2

from .config import DEFAULT_CONFIG, EngineConfig
from .engine import require_fit
from .model import ModelSpecificationError, StructuralModel

__all__ = [
    "AICWeightSet",
    "COMPARISON_COLUMNS",
    "akaike_weights",
    "compare",
    "comparison_sentences",
    "drop_ok",
    "format_pvalue",
    "likelihood_ratio",
    "rank",
]

log = logging.getLogger(__name__)

COMPARISON_COLUMNS = ["Model", "EP", "Δ -2LL", "Δ df", "p", "AIC", "Compare with Model"]

Models = Union[StructuralModel, Sequence[StructuralModel]]


def format_pvalue(p: Any, min_p: float = 0.001, digits: int = 3,
                  add_comparison: Optional[bool] = None) -> Any:
    """Format p-values in APA style.

    Parameters
    ----------
    p : float or sequence of float
        Value(s) to format. Sequences are formatted element-wise into a list.
    min_p : float
        Values below this are reported as ``"< min_p"``.
    digits : int
        Decimal places kept.
    add_comparison : bool, optional
        ``None`` returns bare strings (``"0.034"``, ``"< 0.001"``); ``True``
        prefixes ``"= "`` to exact values; ``False`` returns numbers (the
        floor itself for values below ``min_p``). Missing values (None,
        NaN) are returned unchanged in every mode.
    """
    if isinstance(p, (list, tuple, np.ndarray, pd.Series)):
        return [format_pvalue(x, min_p=min_p, digits=digits, add_comparison=add_comparison) for x in p]

    if p is None or pd.isna(p):
        return p
    if p < min_p:
        if add_comparison is False:
            return min_p
        return f"< {min_p}"
    if add_comparison is False:
        return round(float(p), digits)
    text = f"{round(float(p), digits):.{digits}f}"
    if add_comparison:
        return "= " + text
    return text


def likelihood_ratio(base: StructuralModel, comparison: StructuralModel) -> Tuple[float, float, float]:
    """Return ``(delta -2LL, delta df, p)`` for ``comparison`` against ``base``.

    ``p`` is the chi-square upper tail with ``delta df`` degrees of freedom,
    or NaN when the comparison has no extra degrees of freedom.
    """
    require_fit([base, comparison])
    delta_ll = comparison.fit.minus2ll - base.fit.minus2ll
    delta_df = comparison.fit.df - base.fit.df
    if delta_df > 0:
        p = float(chi2.sf(delta_ll, delta_df))
    else:
        p = np.nan
    return float(delta_ll), float(delta_df), p


def _as_list(models: Optional[Models]) -> List[StructuralModel]:
    if models is None:
        return []
    if isinstance(models, StructuralModel):
        return [models]
    return list(models)


def _reference_row(model: StructuralModel) -> dict:
    return {
        "Model": model.name,
        "EP": model.fit.n_parameters,
        "Δ -2LL": np.nan,
        "Δ df": np.nan,
        "p": np.nan,
        "AIC": model.fit.aic,
        "Compare with Model": "",
    }


def _comparison_row(base: StructuralModel, comparison: StructuralModel) -> dict:
    delta_ll, delta_df, p = likelihood_ratio(base, comparison)
    return {
        "Model": comparison.name,
        "EP": comparison.fit.n_parameters,
        "Δ -2LL": delta_ll,
        "Δ df": delta_df,
        "p": p,
        "AIC": comparison.fit.aic,
        "Compare with Model": base.name,
    }


def _pairs(bases: List[StructuralModel], comparisons: List[StructuralModel],
           all: bool) -> List[Tuple[StructuralModel, List[StructuralModel]]]:
    if all:
        return [(b, comparisons) for b in bases]
    if len(bases) == 1:
        return [(bases[0], comparisons)]
    if len(bases) != len(comparisons):
        raise ModelSpecificationError(
            f"With all=False, give one base or one base per comparison ({len(bases)} bases, "
            f"{len(comparisons)} comparisons)"
        )
    return [(b, [c]) for b, c in zip(bases, comparisons)]


def compare(base: Models, comparison: Optional[Models] = None, all: bool = True,
            digits: int = 3, config: Optional[EngineConfig] = None) -> pd.DataFrame:
    """Tabulate likelihood-ratio tests of nested models against base model(s).

    Parameters
    ----------
    base : StructuralModel or list
        Reference model(s). Each appears once as a row without deltas.
    comparison : StructuralModel or list, optional
        Models compared with the base(s). Omit to get just the reference rows.
    all : bool
        Compare every base with every comparison (default). When False,
        bases and comparisons are paired in order.
    digits : int
        Decimal places for the p column.

    Returns
    -------
    pd.DataFrame
        Columns ``Model, EP, Δ -2LL, Δ df, p, AIC, Compare with Model``.
        AIC is the engine's value; ``p`` is an APA-formatted string.

    Raises
    ------
    UnfittedModelError
        Naming every model that has not been fit.
    """
    config = config or DEFAULT_CONFIG
    bases = _as_list(base)
    comparisons = _as_list(comparison)
    if not bases:
        raise ModelSpecificationError("compare needs at least one base model")
    require_fit(bases + comparisons)

    rows = []
    for b, comps in _pairs(bases, comparisons, all):
        rows.append(_reference_row(b))
        rows.extend(_comparison_row(b, c) for c in comps)

    table = pd.DataFrame(rows, columns=COMPARISON_COLUMNS)
    table["p"] = format_pvalue(table["p"].to_numpy(), min_p=config.p_min, digits=digits)
    return table


def comparison_sentences(base: StructuralModel, comparison: Models, digits: int = 3,
                         alpha: float = 0.05) -> List[str]:
    """One sentence per comparison describing whether dropping it hurt fit."""
    out = []
    for comp in _as_list(comparison):
        delta_ll, delta_df, p = likelihood_ratio(base, comp)
        if np.isnan(p):
            continue
        if p < alpha:
            verdict = "This caused a significant loss of fit"
        else:
            verdict = "This did not lower fit significantly"
        out.append(
            f"The hypothesis that {comp.name} was tested by dropping {comp.name} from {base.name}. "
            f"{verdict} (χ²({delta_df:g}) = {delta_ll:.2f}, p {format_pvalue(p, digits=digits, add_comparison=True)}: "
            f"AIC = {round(comp.fit.aic, digits)})."
        )
    return out


def akaike_weights(aics: Sequence[float]) -> np.ndarray:
    """Normalized ``exp(-0.5 * (AIC - min AIC))``."""
    aics = np.asarray(aics, dtype=float)
    raw = np.exp(-0.5 * (aics - aics.min()))
    return raw / raw.sum()


@dataclass
class AICWeightSet:
    """Akaike weights of a candidate set and the model with the lowest AIC."""

    names: List[str]
    aics: np.ndarray
    weights: np.ndarray
    rounded: np.ndarray
    best_index: int
    best_model: StructuralModel

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"Model": self.names, "AIC": self.aics, "Weight": self.rounded})

    def __repr__(self) -> str:
        lines = [f"Best model by AIC: '{self.best_model.name}'"]
        lines.append(self.to_frame().to_string(index=False))
        return "\n".join(lines)


def rank(models: Sequence[StructuralModel], digits: int = 2) -> AICWeightSet:
    """Rank fitted models by Akaike weight.

    Models need not be nested. Every model must have been fit: unfit models
    are reported, never silently dropped from the candidate set.
    """
    models = list(models)
    if len(models) < 2:
        raise ModelSpecificationError("rank needs at least two models")
    require_fit(models)

    names = [m.name for m in models]
    aics = np.array([m.fit.aic for m in models], dtype=float)
    weights = akaike_weights(aics)
    best = int(np.argmin(aics))
    rounded = np.round(weights, digits)

    log.info("The '%s' model is the best fitting model according to AIC.", names[best])
    log.info(
        "AIC weight-based conditional probabilities of being the best model for %s respectively are: %s",
        ", ".join(f"'{n}'" for n in names),
        ", ".join(f"{w:g}" for w in rounded),
    )
    return AICWeightSet(names, aics, weights, rounded, best, models[best])


def drop_ok(model1: StructuralModel, model2: StructuralModel, alpha: float = 0.05,
            text: str = "parameter") -> bool:
    """True when ``model2`` (with parameters dropped) does not fit significantly worse.

    Raises ``ModelSpecificationError`` when ``model2`` has no more degrees
    of freedom than ``model1``: nothing was dropped, so there is no test.
    """
    delta_ll, delta_df, p = likelihood_ratio(model1, model2)
    if delta_df <= 0:
        raise ModelSpecificationError(
            f"'{model2.name}' has {delta_df:g} more df than '{model1.name}': nothing was dropped to test"
        )
    are = "are" if delta_df > 1 else "is"
    if p < alpha:
        log.info("The %s %s significant and should be kept (p = %s)", text, are, format_pvalue(p))
        return False
    log.info("The %s %s non-significant and can be dropped (p = %s)", text, are, format_pvalue(p))
    return True
