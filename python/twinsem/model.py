"""Structural model containers shared by every twinsem operation.

A :class:`StructuralModel` is a plain, engine-neutral description of a twin
SEM: a set of named :class:`Matrix` objects (values, free flags, labels), the
MZ/DZ data it was built for, and, once an engine has fit it, a
:class:`FitStatistics` record. Models are treated as values: every operation
that changes structure (``modify``, ``copy``) returns a new object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
import copy
import re

import numpy as np
import pandas as pd

__all__ = [
    "CausalSingularityError",
    "ConfigurationError",
    "DomainError",
    "FitStatistics",
    "Matrix",
    "ModelKind",
    "ModelSpecificationError",
    "OptimizationError",
    "ParameterAddress",
    "SingularMatrixError",
    "StructuralModel",
    "TwinModelError",
    "UnfittedModelError",
]


class TwinModelError(Exception):
    """Base class for all twinsem errors."""


class ModelSpecificationError(TwinModelError, ValueError):
    """Raised when matrices, labels or metadata are inconsistent."""


class ConfigurationError(ModelSpecificationError):
    """Raised when a builder is given unusable indicators or data."""


class DomainError(TwinModelError, ArithmeticError):
    """Raised when a total variance is not strictly positive."""

    def __init__(self, index: int, value: float) -> None:
        self.index = index
        self.value = value
        super().__init__(
            f"Total variance of trait {index} is {value!r}; standardization requires a positive variance"
        )


class SingularMatrixError(TwinModelError, ArithmeticError):
    """Raised when a scaling or structural matrix cannot be inverted."""


class CausalSingularityError(SingularMatrixError):
    """Raised when (I - beta) is singular in a direction-of-causation model."""


class UnfittedModelError(TwinModelError):
    """Raised when a model without fit statistics is compared or ranked."""

    def __init__(self, names: Sequence[str]) -> None:
        self.names = list(names)
        quoted = ", ".join(f"'{n}'" for n in self.names)
        super().__init__(f"Model(s) {quoted} have not been fit; fit them before comparing")


class OptimizationError(TwinModelError, RuntimeError):
    """Raised by an engine when a fit fails. ``variant`` names the refit, if known."""

    def __init__(self, message: str, variant: Optional[str] = None) -> None:
        self.variant = variant
        super().__init__(message)

    def __str__(self) -> str:
        message = super().__str__()
        if self.variant:
            return f"{self.variant}: {message}"
        return message


@dataclass(frozen=True)
class ParameterAddress:
    """0-based cell of a named matrix."""

    matrix: str
    row: int
    col: int

    def bracket(self) -> str:
        """Render as ``name[row,col]`` with 1-based indices."""
        return f"{self.matrix}[{self.row + 1},{self.col + 1}]"


def _default_label(name: str, row: int, col: int) -> str:
    return f"{name}_r{row + 1}c{col + 1}"


class Matrix:
    """A parameter matrix: values, free flags, labels and optional lower bounds.

    Parameters
    ----------
    name:
        Matrix name, unique within a model.
    values:
        Starting (or estimated) values.
    free:
        Boolean pattern; a scalar is broadcast to the shape of ``values``.
    labels:
        ``None`` for no labels, ``True`` for the default ``<name>_r<i>c<j>``
        pattern on every cell, or an array of strings/``None``.
    lbound:
        Optional lower bounds; a scalar is broadcast.
    """

    def __init__(
        self,
        name: str,
        values: Any,
        free: Any = False,
        labels: Any = None,
        lbound: Any = None,
    ) -> None:
        self.name = name
        self.values = np.atleast_2d(np.array(values, dtype=float))
        shape = self.values.shape
        self.free = np.broadcast_to(np.asarray(free, dtype=bool), shape).copy()

        if labels is None:
            self.labels = np.full(shape, None, dtype=object)
        elif labels is True:
            self.labels = np.empty(shape, dtype=object)
            for i in range(shape[0]):
                for j in range(shape[1]):
                    self.labels[i, j] = _default_label(name, i, j)
        else:
            self.labels = np.array(labels, dtype=object).reshape(shape)

        if lbound is None:
            self.lbound = None
        else:
            self.lbound = np.broadcast_to(np.asarray(lbound, dtype=float), shape).copy()

    @classmethod
    def full(cls, name: str, nrow: int, ncol: int, values: Any = 0.0, free: Any = False,
             labels: Any = True, lbound: Any = None) -> "Matrix":
        vals = np.broadcast_to(np.asarray(values, dtype=float), (nrow, ncol))
        return cls(name, vals, free=free, labels=labels, lbound=lbound)

    @classmethod
    def lower(cls, name: str, n: int, values: Any = 0.0, free: Any = False,
              labels: Any = True, lbound: Any = None) -> "Matrix":
        """Lower-triangular matrix; the upper triangle is fixed at 0 and unlabelled."""
        m = cls.full(name, n, n, values=values, free=free, labels=labels, lbound=lbound)
        upper = np.triu_indices(n, k=1)
        m.values[upper] = 0.0
        m.free[upper] = False
        m.labels[upper] = None
        return m

    @classmethod
    def diag(cls, name: str, n: int, values: Any = 0.0, free: Any = False,
             labels: Any = True, lbound: Any = None) -> "Matrix":
        """Diagonal matrix; off-diagonal cells are fixed at 0 and unlabelled."""
        m = cls.full(name, n, n, values=values, free=free, labels=labels, lbound=lbound)
        off = ~np.eye(n, dtype=bool)
        m.values[off] = 0.0
        m.free[off] = False
        m.labels[off] = None
        return m

    @classmethod
    def iden(cls, name: str, n: int) -> "Matrix":
        return cls(name, np.eye(n), free=False, labels=None)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def addresses(self, free: Optional[bool] = None) -> Iterator[Tuple[ParameterAddress, Optional[str]]]:
        """Yield ``(address, label)`` for cells, optionally filtered on free status."""
        nrow, ncol = self.shape
        for j in range(ncol):
            for i in range(nrow):
                if free is not None and bool(self.free[i, j]) != free:
                    continue
                yield ParameterAddress(self.name, i, j), self.labels[i, j]

    def copy(self) -> "Matrix":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"Matrix(name={self.name!r}, shape={self.shape}, n_free={int(self.free.sum())})"


class ModelKind(str, Enum):
    """Model families recognised by the dispatchers."""

    ACE = "ACE"
    ACECOV = "ACEcov"
    CP = "CP"
    IP = "IP"
    GXE = "GxE"
    DOC = "DoC"
    RAM = "RAM"


@dataclass
class FitStatistics:
    """Fit summary reported by an engine.

    ``aic`` is stored exactly as the engine reports it; twinsem never
    recomputes it from ``minus2ll``.
    """

    minus2ll: float
    n_parameters: int
    df: float
    aic: float
    converged: bool = True
    intervals: Dict[str, Tuple[float, float, float]] = field(default_factory=dict)


ConstraintValue = Union[float, str, Mapping[str, Any]]

# Characters that mark a string as a regular expression rather than a label
_REGEX_CHARS = re.compile(r"[\^\$\[\]\|\(\)\*\+\?\\\{\}]")


class StructuralModel:
    """Engine-neutral twin model.

    Parameters
    ----------
    name:
        Model name used in comparison tables.
    kind:
        A :class:`ModelKind` used by the dispatchers.
    matrices:
        Ordered matrices; names must be unique.
    groups:
        Data by group name (``"MZ"``, ``"DZ"``).
    manifests:
        Selected manifest columns in twin order (``x_T1, y_T1, x_T2, y_T2``).
    metadata:
        Builder extras (``sep``, ``sel_dvs`` and so on).
    fit:
        Fit statistics, ``None`` until an engine has run the model.
    """

    def __init__(
        self,
        name: str,
        kind: ModelKind,
        matrices: Sequence[Matrix],
        groups: Optional[Mapping[str, pd.DataFrame]] = None,
        manifests: Optional[Sequence[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        fit: Optional[FitStatistics] = None,
    ) -> None:
        self.name = name
        self.kind = ModelKind(kind)
        self.matrices: Dict[str, Matrix] = {}
        for m in matrices:
            if m.name in self.matrices:
                raise ModelSpecificationError(f"Duplicate matrix name '{m.name}'")
            self.matrices[m.name] = m
        self.groups: Dict[str, pd.DataFrame] = dict(groups or {})
        self.manifests: List[str] = list(manifests or [])
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.fit = fit

    @property
    def has_been_fit(self) -> bool:
        return self.fit is not None

    def copy(self, name: Optional[str] = None, keep_fit: bool = True) -> "StructuralModel":
        """Deep copy of the model. Data frames are shared, matrices are not."""
        return StructuralModel(
            name=self.name if name is None else name,
            kind=self.kind,
            matrices=[m.copy() for m in self.matrices.values()],
            groups=self.groups,
            manifests=self.manifests,
            metadata=copy.deepcopy(self.metadata),
            fit=copy.deepcopy(self.fit) if keep_fit else None,
        )

    def matrix(self, name: str) -> Matrix:
        try:
            return self.matrices[name]
        except KeyError:
            raise ModelSpecificationError(
                f"Model '{self.name}' has no matrix '{name}'. Matrices are: {list(self.matrices)}"
            ) from None

    def has_matrix(self, name: str) -> bool:
        return name in self.matrices

    def values(self, name: str) -> np.ndarray:
        """Copy of a matrix's current values."""
        return self.matrix(name).values.copy()

    def _iter_cells(self, free: Optional[bool] = None) -> Iterator[Tuple[ParameterAddress, Optional[str]]]:
        for m in self.matrices.values():
            yield from m.addresses(free=free)

    def parameters(self, free: Optional[bool] = True) -> Dict[str, float]:
        """Map labels to values, in matrix order. Shared labels appear once."""
        out: Dict[str, float] = {}
        for addr, label in self._iter_cells(free=free):
            if label is not None and label not in out:
                out[label] = float(self.matrices[addr.matrix].values[addr.row, addr.col])
        return out

    def free_labels(self) -> set:
        return {label for _, label in self._iter_cells(free=True) if label is not None}

    def labels_in(self, matrix: str, free: Optional[bool] = True) -> List[str]:
        """Labels of one matrix's cells, in column-major order, without repeats."""
        seen: List[str] = []
        for _, label in self.matrix(matrix).addresses(free=free):
            if label is not None and label not in seen:
                seen.append(label)
        return seen

    def free_addresses(self, matrix: str) -> List[ParameterAddress]:
        return [addr for addr, _ in self.matrix(matrix).addresses(free=True)]

    def address_of(self, label: str) -> List[ParameterAddress]:
        """Every cell carrying ``label``; empty if the label is unknown."""
        return [addr for addr, lab in self._iter_cells() if lab == label]

    def find_labels(self, pattern: Union[str, Sequence[str]], free: Optional[bool] = True) -> List[str]:
        """Resolve labels or a pattern to the matching labels.

        A list is checked for membership. A plain label such as ``"a_r1c1"``
        is matched exactly (trailing digits allowed, so ``"lin"`` matches
        ``"lin11"``). Anything containing regex metacharacters is searched as
        a regular expression.
        """
        known = list(self.parameters(free=free))
        if not isinstance(pattern, str):
            missing = [p for p in pattern if p not in known]
            if missing:
                raise ModelSpecificationError(
                    f"Labels {missing} not found among {'free ' if free else ''}parameters of '{self.name}'"
                )
            return list(pattern)

        if _REGEX_CHARS.search(pattern):
            regex = re.compile(pattern)
            found = [lab for lab in known if regex.search(lab)]
        else:
            regex = re.compile("^" + re.escape(pattern) + "[0-9]*$")
            found = [lab for lab in known if regex.match(lab)]
        if not found:
            raise ModelSpecificationError(f"No parameter of '{self.name}' matches '{pattern}'")
        return found

    def modify(self, constraints: Mapping[Union[str, ParameterAddress], ConstraintValue],
               name: Optional[str] = None) -> "StructuralModel":
        """Return a new, unfit model with parameters fixed or freed.

        Keys are labels (every cell sharing the label changes) or
        :class:`ParameterAddress` values. A number fixes the parameter at
        that value, ``"free"`` frees it, and a mapping may carry ``value``
        and ``free`` keys explicitly.
        """
        new = self.copy(name=name, keep_fit=False)
        for key, spec in constraints.items():
            if isinstance(key, ParameterAddress):
                rows, cols = new.matrix(key.matrix).shape
                if not (0 <= key.row < rows and 0 <= key.col < cols):
                    raise ModelSpecificationError(
                        f"{key.bracket()} is outside '{key.matrix}' ({rows} x {cols}) in model '{self.name}'"
                    )
                cells = [key]
            else:
                cells = new.address_of(key)
                if not cells:
                    raise ModelSpecificationError(f"Model '{self.name}' has no parameter labelled '{key}'")

            if isinstance(spec, str):
                if spec != "free":
                    raise ModelSpecificationError(f"Constraint for '{key}' must be a number or 'free', got '{spec}'")
                value, free = None, True
            elif isinstance(spec, Mapping):
                value, free = spec.get("value"), bool(spec.get("free", False))
            else:
                value, free = float(spec), False

            for addr in cells:
                m = new.matrices[addr.matrix]
                if value is not None:
                    m.values[addr.row, addr.col] = value
                m.free[addr.row, addr.col] = free
        return new

    def __repr__(self) -> str:
        status = "fit" if self.has_been_fit else "unfit"
        return (
            f"StructuralModel(name={self.name!r}, kind={self.kind.value}, "
            f"matrices={list(self.matrices)}, {status})"
        )
