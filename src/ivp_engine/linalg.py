# ivp_engine/src/ivp_engine/linalg.py
"""Cached implicit solves for linearly implicit steppers.

Linearly implicit steppers repeatedly solve systems of the form

    (I - h * A) @ y = x

for a fixed operator ``A`` and a handful of step sizes ``h`` (a step, its
halves, and retries after rejection). Factorizations are cached per
``(id(A), h)`` and reused while the operator metadata matches.

Design notes:
    * Dense operators use ``scipy.linalg.lu_factor``; CSR operators use
      ``scipy.sparse.linalg.factorized``.
    * Cache semantics: keys use ``id(A)``, so the operator object must be
      constructed once and reused. A metadata tuple (shape, dtype, sparsity)
      guards against unsafe ``id`` reuse in long-lived processes.
    * The cache is bounded (least recently used entries are evicted) because
      adaptive step sizes vary continuously, and it is guarded by a lock so
      steppers can be shared across ensemble worker threads.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import TYPE_CHECKING, Final, TypeAlias, cast

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import lu_factor, lu_solve
from scipy.sparse import csr_matrix, identity, issparse
from scipy.sparse.linalg import factorized as sparse_factorized

if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Public operator types
# =============================================================================

DenseOperator: TypeAlias = NDArray[np.floating]
SparseOperator: TypeAlias = csr_matrix
Operator: TypeAlias = DenseOperator | SparseOperator


# =============================================================================
# Errors / cache
# =============================================================================

_OPERATOR_SQUARE_ERROR: Final[str] = "Operator must be square; got shape {shape}"
_OPERATOR_DIM_ERROR: Final[str] = (
    "Operator shape {shape} is incompatible with x shape {x_shape}"
)
_UNSUPPORTED_OPERATOR_ERROR: Final[str] = (
    "Unsupported operator type {typ}; expected numpy.ndarray or a scipy sparse matrix"
)

_CACHE_SIZE: Final[int] = 32

_SolverMeta = tuple[tuple[int, int], str, bool]
_IMPLICIT_SOLVER_CACHE: OrderedDict[
    tuple[int, float],
    tuple[_SolverMeta, Callable[[NDArray[np.floating]], NDArray[np.floating]]],
] = OrderedDict()
_CACHE_LOCK = threading.Lock()


def clear_implicit_solver_cache() -> None:
    """Clear the internal implicit solver cache."""
    with _CACHE_LOCK:
        _IMPLICIT_SOLVER_CACHE.clear()


def implicit_solver_cache_size() -> int:
    """Return the number of cached factorizations."""
    with _CACHE_LOCK:
        return len(_IMPLICIT_SOLVER_CACHE)


# =============================================================================
# Validation helpers
# =============================================================================


def validate_operator(op: Operator, n: int | None = None) -> tuple[int, int]:
    """Validate that ``op`` is a supported square operator.

    Args:
        op: Dense ndarray or scipy sparse matrix.
        n: Optional required size.

    Raises:
        TypeError: If ``op`` is of an unsupported type.
        ValueError: If ``op`` is not square or does not match ``n``.

    Returns:
        The operator shape.
    """
    if not (isinstance(op, np.ndarray) or issparse(op)):
        raise TypeError(_UNSUPPORTED_OPERATOR_ERROR.format(typ=type(op).__name__))
    shape = cast("tuple[int, int]", tuple(op.shape))
    if len(shape) != 2 or shape[0] != shape[1]:  # noqa: PLR2004
        raise ValueError(_OPERATOR_SQUARE_ERROR.format(shape=shape))
    if n is not None and shape[0] != n:
        raise ValueError(_OPERATOR_DIM_ERROR.format(shape=shape, x_shape=(n,)))
    return shape


def _operator_meta(op: Operator) -> _SolverMeta:
    shape = cast("tuple[int, int]", tuple(op.shape))
    return (shape, str(op.dtype), bool(issparse(op)))


def apply_operator(op: Operator, x: NDArray[np.floating]) -> NDArray[np.floating]:
    """Return ``op @ x`` as a float64 ndarray.

    Args:
        op: Dense or sparse operator.
        x: 1D input vector.

    Returns:
        Product as a 1D float64 array.
    """
    return np.asarray(op @ x, dtype=np.float64).reshape(-1)


# =============================================================================
# Implicit Euler solve: (I - h A) y = x
# =============================================================================


def build_implicit_euler_matrix(op: Operator, h: float) -> Operator:
    """Build ``I - h * A``.

    Args:
        op: Linear operator ``A``.
        h: Signed step size.

    Returns:
        ``I - h * A`` in the storage format of ``op`` (sparse stays CSR).
    """
    n = validate_operator(op)[0]
    if issparse(op):
        return cast("csr_matrix", (identity(n, format="csr") - h * op).tocsr())
    return np.eye(n, dtype=np.float64) - h * np.asarray(op, dtype=np.float64)


def _build_implicit_solver(
    op: Operator,
    h: float,
) -> Callable[[NDArray[np.floating]], NDArray[np.floating]]:
    """Factorize ``I - h * A`` once and return a reusable solve closure.

    Args:
        op: Linear operator ``A``.
        h: Signed step size.

    Returns:
        A callable mapping ``x`` to ``y`` with ``(I - h A) y = x``.
    """
    lhs = build_implicit_euler_matrix(op, h)

    if issparse(lhs):
        solve_sparse = sparse_factorized(cast("csr_matrix", lhs).tocsc())

        def sparse_solver(x: NDArray[np.floating]) -> NDArray[np.floating]:
            return np.asarray(solve_sparse(np.asarray(x, dtype=np.float64)))

        return sparse_solver

    lu, piv = lu_factor(lhs)

    def dense_solver(x: NDArray[np.floating]) -> NDArray[np.floating]:
        """Solve with the precomputed LU factorization.

        Args:
            x: Right-hand side vector.

        Returns:
            Solution vector.
        """
        return np.asarray(lu_solve((lu, piv), np.asarray(x, dtype=np.float64)))

    return dense_solver


def implicit_euler_solve(
    op: Operator,
    h: float,
    x: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Solve ``(I - h * A) @ y = x`` with a cached factorization.

    Args:
        op: Linear operator ``A``.
        h: Signed step size.
        x: 1D right-hand side.

    Raises:
        ValueError: If shapes are incompatible.

    Returns:
        The solution ``y`` as a new 1D float64 array.
    """
    x_arr = np.asarray(x, dtype=np.float64)
    n = validate_operator(op)[0]
    if x_arr.ndim != 1 or x_arr.shape[0] != n:
        raise ValueError(_OPERATOR_DIM_ERROR.format(shape=op.shape, x_shape=x_arr.shape))

    key = (id(op), float(h))
    meta = _operator_meta(op)

    with _CACHE_LOCK:
        cached = _IMPLICIT_SOLVER_CACHE.get(key)
        if cached is not None and cached[0] == meta:
            _IMPLICIT_SOLVER_CACHE.move_to_end(key)
            solver = cached[1]
        else:
            solver = _build_implicit_solver(op, h)
            _IMPLICIT_SOLVER_CACHE[key] = (meta, solver)
            while len(_IMPLICIT_SOLVER_CACHE) > _CACHE_SIZE:
                _IMPLICIT_SOLVER_CACHE.popitem(last=False)

    return solver(x_arr)
