"""Variance standardization and nested-model comparison for twin SEMs."""

from __future__ import annotations

from .model import (
    CausalSingularityError,
    ConfigurationError,
    DomainError,
    FitStatistics,
    Matrix,
    ModelKind,
    ModelSpecificationError,
    OptimizationError,
    ParameterAddress,
    SingularMatrixError,
    StructuralModel,
    TwinModelError,
    UnfittedModelError,
)
from .config import EngineConfig
from .engine import BatchResult, Engine, ModelVariant, VariantFailure, VariantStep, refit, run_batch
from .standardize import (
    PathMatrixSet,
    StandardizedEstimate,
    VarianceComponents,
    standardize,
    standardize_model,
    variance_components,
)
from .correlations import CorrelationSet, correlations, cov2cor, model_correlations
from .compare import AICWeightSet, akaike_weights, compare, drop_ok, format_pvalue, rank
from .twin import build_ace, build_cp, build_gxe, build_ip, expected_covariance, twin_vars
from .doc import CausalDirection, build_direction_set, build_doc, compare_directions, set_direction
from .reduce import NestedFamily, ReductionResult, build_nested_set, reduce
from .report import correlation_table, estimates_table, interval_matrices

__all__ = [
    "__version__",
    "AICWeightSet",
    "BatchResult",
    "CausalDirection",
    "CausalSingularityError",
    "ConfigurationError",
    "CorrelationSet",
    "DomainError",
    "Engine",
    "EngineConfig",
    "FitStatistics",
    "Matrix",
    "ModelKind",
    "ModelSpecificationError",
    "ModelVariant",
    "NestedFamily",
    "OptimizationError",
    "ParameterAddress",
    "PathMatrixSet",
    "ReductionResult",
    "SingularMatrixError",
    "StandardizedEstimate",
    "StructuralModel",
    "TwinModelError",
    "UnfittedModelError",
    "VariantFailure",
    "VariantStep",
    "VarianceComponents",
    "akaike_weights",
    "build_ace",
    "build_cp",
    "build_direction_set",
    "build_doc",
    "build_gxe",
    "build_ip",
    "build_nested_set",
    "compare",
    "compare_directions",
    "correlation_table",
    "correlations",
    "cov2cor",
    "drop_ok",
    "estimates_table",
    "expected_covariance",
    "format_pvalue",
    "interval_matrices",
    "model_correlations",
    "rank",
    "reduce",
    "refit",
    "run_batch",
    "set_direction",
    "standardize",
    "standardize_model",
    "twin_vars",
    "variance_components",
]

__version__ = "0.0.0.dev0"
