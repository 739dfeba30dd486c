"""Nested-model reduction for ACE/ADE and GxE twin models.

:func:`build_nested_set` decides which constraints to apply and refits each
variant through the engine. :func:`reduce` adds the comparison table, the
Akaike-weight ranking and the choice of a best model.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .compare import AICWeightSet, compare, rank
from .config import EngineConfig
from .engine import BatchResult, Engine, VariantFailure, VariantStep, refit, require_fit, run_batch
from .model import ModelKind, ModelSpecificationError, OptimizationError, ParameterAddress, StructuralModel
from .twin import ACE_DZCR, ADE_DZCR

__all__ = [
    "GXE_VARIANTS",
    "NestedFamily",
    "ReductionResult",
    "build_nested_set",
    "detect_family",
    "drop_matrix",
    "reduce",
]

log = logging.getLogger(__name__)

_DZCR = ParameterAddress("dzCr", 0, 0)

# (name, parent, labels or pattern); parent None is the base model
GXE_VARIANTS = [
    ("No_lin_mean", None, "lin11"),
    ("No_quad_mean", None, "quad11"),
    ("No_means_moderation", None, "lin|quad"),
    ("No_mod_on_A", None, "am_r1c1"),
    ("No_mod_on_C", None, "cm_r1c1"),
    ("No_mod_on_E", None, "em_r1c1"),
    ("No_moderation", None, "[ace]m"),
    ("No_A_no_mod_on_A", "No_mod_on_A", "a_r1c1"),
    ("No_C_no_mod_on_C", "No_mod_on_C", "c_r1c1"),
    ("No_c_no_ce_mod", "No_C_no_mod_on_C", "em_r1c1"),
    ("No_c_no_moderation", "No_c_no_ce_mod", "am_r1c1"),
]

_ACE_FAMILY_ORDER = ["ACE", "ADE", "CE", "DE", "AE"]


class NestedFamily(enum.Enum):
    ACE = "ACE"
    ADE = "ADE"
    GXE = "GxE"


def detect_family(model: StructuralModel) -> NestedFamily:
    """Infer the reduction family from the model kind and its dzCr value."""
    if model.kind == ModelKind.GXE:
        return NestedFamily.GXE
    if model.kind not in (ModelKind.ACE, ModelKind.ACECOV):
        raise ModelSpecificationError(f"No nested-model reduction is defined for {model.kind.value} models")

    dz_cr = float(model.values("dzCr")[0, 0])
    if np.isclose(dz_cr, ACE_DZCR):
        return NestedFamily.ACE
    if np.isclose(dz_cr, ADE_DZCR):
        return NestedFamily.ADE
    raise ModelSpecificationError(
        f"{dz_cr} is an odd value for dzCr: expected 1 (C) or 0.25 (D). "
        "Other values (e.g. assortative mating) are not supported"
    )


def drop_matrix(model: StructuralModel, matrix: str) -> Dict[Any, float]:
    """Constraints fixing every free cell of ``matrix`` at 0, keyed by label where there is one."""
    constraints: Dict[Any, float] = {}
    for addr, label in model.matrix(matrix).addresses(free=True):
        constraints[label if label is not None else addr] = 0.0
    if not constraints:
        raise ModelSpecificationError(f"Matrix '{matrix}' of '{model.name}' has no free parameters to drop")
    return constraints


def _renamed_base(model: StructuralModel, family: NestedFamily) -> StructuralModel:
    if family == NestedFamily.ADE and model.name == "ACE":
        return model.copy(name="ADE")
    return model


def _reduction_base(model: StructuralModel, family: NestedFamily) -> StructuralModel:
    if family == NestedFamily.ADE:
        if model.name == "ACE":
            log.info("You gave me an ADE model, but it was called 'ACE'. It is renamed 'ADE' for clarity.")
        else:
            log.info("You gave me an ADE model.")
    elif family == NestedFamily.ACE:
        log.info("You gave me an ACE model.")
    return _renamed_base(model, family)


def _ace_nested_set(base: StructuralModel, engine: Engine, family: NestedFamily,
                    config: Optional[EngineConfig]) -> BatchResult:
    if family == NestedFamily.ACE:
        alt_name, alt_dzcr = "ADE", ADE_DZCR
    else:
        alt_name, alt_dzcr = "ACE", ACE_DZCR
    result = run_batch(engine, [VariantStep(alt_name, base, {_DZCR: alt_dzcr})], config)

    drop_a_parent = base
    if result.variants:
        alt = result.variants[0].model
        # ACE and ADE are not nested: the lower raw -2LL picks the regime, ties keep the base
        if base.fit.minus2ll > alt.fit.minus2ll:
            drop_a_parent = alt
            if family == NestedFamily.ACE:
                log.info("A dominance model is preferred, set dzCr = 0.25")
            else:
                log.info("An ACE model is preferred, set dzCr = 1.0")
    else:
        log.warning("'%s' could not be fit; reducing from '%s' only", alt_name, base.name)

    ae_parent = drop_a_parent if family == NestedFamily.ACE else base
    dz_cr = float(drop_a_parent.values("dzCr")[0, 0])
    drop_a_name = "CE" if np.isclose(dz_cr, ACE_DZCR) else "DE"

    steps = [
        VariantStep(drop_a_name, drop_a_parent, drop_matrix(drop_a_parent, "a")),
        VariantStep("AE", ae_parent, drop_matrix(ae_parent, "c")),
    ]
    result.extend(run_batch(engine, steps, config))
    return result


def _gxe_nested_set(base: StructuralModel, engine: Engine, config: Optional[EngineConfig]) -> BatchResult:
    steps = []
    for name, parent, pattern in GXE_VARIANTS:
        labels = base.find_labels(pattern)
        steps.append(VariantStep(name, base if parent is None else parent, {label: 0.0 for label in labels}))
    return run_batch(engine, steps, config)


def build_nested_set(model: StructuralModel, engine: Engine, family: Optional[NestedFamily] = None,
                     config: Optional[EngineConfig] = None) -> BatchResult:
    """Build and refit the nested variants of a fitted base model.

    For an ACE base (dzCr = 1) the set is ADE, then CE or DE, then AE; for an
    ADE base (dzCr = 0.25) it is ACE, CE or DE, and AE. Which branch the
    drop-A model comes from is decided by the raw -2LL of the two full
    models. GxE bases yield the eleven variants of :data:`GXE_VARIANTS`.

    Parameters
    ----------
    model : StructuralModel
        Fitted base model.
    engine : Engine
        Refits each variant.
    family : NestedFamily, optional
        Expected family; checked against the model when given.
    config : EngineConfig, optional
        ``max_workers`` controls parallel refits.

    Returns
    -------
    BatchResult
        Fitted variants and per-variant failures, in declaration order.
    """
    require_fit([model])
    detected = detect_family(model)
    if family is not None and NestedFamily(family) != detected:
        raise ModelSpecificationError(
            f"'{model.name}' is a {detected.value} model, not {NestedFamily(family).value}"
        )
    base = _reduction_base(model, detected)
    if detected == NestedFamily.GXE:
        return _gxe_nested_set(base, engine, config)
    return _ace_nested_set(base, engine, detected, config)


@dataclass
class ReductionResult:
    """Outcome of :func:`reduce`."""

    base: StructuralModel
    family: NestedFamily
    batch: BatchResult
    table: pd.DataFrame
    ranking: Optional[AICWeightSet]
    best: StructuralModel
    failures: List[Any] = field(default_factory=list)

    def __repr__(self) -> str:
        lines = [self.table.to_string(index=False)]
        if self.ranking is not None:
            lines += ["", repr(self.ranking)]
        for f in self.failures:
            lines.append(f"Failed: {f.name}: {f.error}")
        return "\n".join(lines)


def reduce(model: StructuralModel, engine: Engine, config: Optional[EngineConfig] = None) -> ReductionResult:
    """Reduce a fitted ACE, ADE or GxE model and pick the best variant by AIC.

    For the ACE family the comparison table is ACE against ADE, CE/DE and
    AE; for GxE it is the base against every variant. Variants that failed
    to refit are left out of the table and ranking and listed in
    ``failures``. With ``config.intervals`` the best model is refit with
    confidence intervals; if that refit fails the earlier fit is kept and the
    error is added to ``failures``.
    """
    config = config or engine.config
    require_fit([model])
    family = detect_family(model)
    batch = build_nested_set(model, engine, family=family, config=config)
    base = _renamed_base(model, family)

    if family == NestedFamily.GXE:
        reference, comparisons = base, batch.models
    else:
        candidates = [base] + batch.models
        candidates.sort(key=lambda m: _ACE_FAMILY_ORDER.index(m.name) if m.name in _ACE_FAMILY_ORDER else 0)
        aces = [m for m in candidates if m.name == "ACE"]
        reference = aces[0] if aces else base
        comparisons = [m for m in candidates if m is not reference]

    table = compare(reference, comparisons, all=True, digits=config.p_digits, config=config)
    if comparisons:
        ranking = rank([reference] + comparisons, digits=config.weight_digits)
        best = ranking.best_model
    else:
        log.warning("No variant of '%s' could be fit; keeping the base model", base.name)
        ranking, best = None, reference
    failures = list(batch.failures)
    if config.intervals:
        try:
            best = refit(engine, best, {}, best.name, intervals=True)
        except OptimizationError as err:
            log.warning("Confidence intervals for '%s' could not be computed: %s", best.name, err)
            failures.append(VariantFailure(best.name, err))
    return ReductionResult(base, family, batch, table, ranking, best, failures)
