"""Least-squares solves through a column-pivoted QR factorization.

Every function here is written against fixed array shapes with `jax.lax`
control flow, so the same code runs eagerly for sizes known only at runtime
and under `jax.jit` for sizes fixed at trace time.
"""

from __future__ import annotations

import jax
import jax.scipy.linalg
import jax_dataclasses as jdc
from jax import numpy as jnp


@jdc.pytree_dataclass
class ColPivQR:
    """Householder QR factorization with column pivoting, `J[:, p] = Q R`.

    Rows of `r_matrix` past the numerical rank are set to zero, and the matrix
    is zero-padded to `(N, N)` when `J` has fewer rows than columns.
    """

    r_matrix: jax.Array
    """Upper triangular factor. Shape: `(N, N)`."""
    permutation: jax.Array
    """Column permutation `p`. Shape: `(N,)`."""
    reflectors: jax.Array
    """Unit Householder vectors, one per row. `Q^T = H_{K-1} ... H_0` where
    `H_k = I - 2 v_k v_k^T`. Shape: `(min(M, N), M)`."""
    rank: jax.Array
    """Numerical rank of `J`."""

    def apply_qt(self, vec: jax.Array) -> jax.Array:
        """Compute the first `N` entries of `Q^T vec`, zero padded when `M < N`."""
        num_reflectors, m = self.reflectors.shape
        n = self.r_matrix.shape[0]
        assert vec.shape == (m,)

        def apply_reflector(k: int | jax.Array, vec: jax.Array) -> jax.Array:
            v = self.reflectors[k]
            return vec - 2.0 * v * jnp.dot(v, vec)

        qtv = (
            jax.lax.fori_loop(0, num_reflectors, apply_reflector, vec)
            if num_reflectors > 0
            else vec
        )
        k = min(m, n)
        return jnp.zeros((n,), dtype=vec.dtype).at[:k].set(qtv[:k])


def col_piv_qr(jacobian: jax.Array) -> ColPivQR:
    """Rank-revealing QR factorization of an `(M, N)` matrix."""
    assert len(jacobian.shape) == 2, "Jacobian should be 2D!"
    m, n = jacobian.shape
    dtype = jacobian.dtype
    k = min(m, n)
    if n == 0:
        return ColPivQR(
            r_matrix=jnp.zeros((0, 0), dtype=dtype),
            permutation=jnp.zeros((0,), dtype=jnp.int32),
            reflectors=jnp.zeros((0, m), dtype=dtype),
            rank=jnp.array(0, dtype=jnp.int32),
        )

    row_indices = jnp.arange(m)
    col_indices = jnp.arange(n)

    def householder_step(
        i: int | jax.Array, carry: tuple[jax.Array, jax.Array, jax.Array]
    ) -> tuple[jax.Array, jax.Array, jax.Array]:
        A, perm, reflectors = carry

        # Pivot: bring the remaining column with the largest norm to position i.
        remaining = jnp.where((row_indices >= i)[:, None], A, 0.0)
        col_norms = jnp.sqrt(jnp.sum(remaining**2, axis=0))
        j = jnp.argmax(jnp.where(col_indices >= i, col_norms, -1.0))
        swap = jnp.array([i, j])
        A = A.at[:, swap].set(A[:, swap[::-1]])
        perm = perm.at[swap].set(perm[swap[::-1]])

        # Reflector that zeros column i below the diagonal.
        x = jnp.where(row_indices >= i, A[:, i], 0.0)
        x_norm = jnp.linalg.norm(x)
        alpha = jnp.where(A[i, i] >= 0.0, -x_norm, x_norm)
        v = x.at[i].add(-alpha)
        v_norm = jnp.linalg.norm(v)
        v = jnp.where(v_norm > 0.0, v / jnp.where(v_norm > 0.0, v_norm, 1.0), 0.0)

        A = A - 2.0 * jnp.outer(v, v @ A)
        reflectors = reflectors.at[i].set(v)
        return A, perm, reflectors

    init = (jacobian, jnp.arange(n, dtype=jnp.int32), jnp.zeros((k, m), dtype=dtype))
    A, perm, reflectors = (
        jax.lax.fori_loop(0, k, householder_step, init) if k > 0 else init
    )

    r_matrix = jnp.zeros((n, n), dtype=dtype).at[:k].set(jnp.triu(A[:k, :]))

    # Pivots are non-increasing in magnitude. Everything after the first
    # negligible pivot is treated as rank deficient.
    diag = jnp.abs(jnp.diagonal(r_matrix))
    threshold = jnp.finfo(dtype).eps * max(m, n) * diag[0]
    rank = jnp.sum(jnp.cumprod((diag > threshold).astype(jnp.int32)))
    r_matrix = jnp.where((jnp.arange(n) < rank)[:, None], r_matrix, 0.0)

    return ColPivQR(
        r_matrix=r_matrix, permutation=perm, reflectors=reflectors, rank=rank
    )


def _givens(a: jax.Array, b: jax.Array) -> tuple[jax.Array, jax.Array]:
    """Rotation `(cos, sin)` with `-sin * a + cos * b == 0`."""
    b_dominates = jnp.abs(a) < jnp.abs(b)
    cot = a / jnp.where(b == 0.0, 1.0, b)
    tan = b / jnp.where(a == 0.0, 1.0, a)
    sin_cot = 0.5 / jnp.sqrt(0.25 + 0.25 * cot**2)
    cos_tan = 0.5 / jnp.sqrt(0.25 + 0.25 * tan**2)
    cos = jnp.where(b_dominates, sin_cot * cot, cos_tan)
    sin = jnp.where(b_dominates, sin_cot, cos_tan * tan)
    return jnp.where(b == 0.0, 1.0, cos), jnp.where(b == 0.0, 0.0, sin)


def truncated_triangular_solve(
    upper: jax.Array, rhs: jax.Array, size: jax.Array | int, transpose: bool = False
) -> jax.Array:
    """Solve `upper z = rhs` (or `upper^T z = rhs`) using only the leading
    `size` rows and columns. Entries of `z` past `size` are zero."""
    n = upper.shape[0]
    keep = jnp.arange(n) < size
    upper = jnp.where(
        keep[:, None] & keep[None, :], upper, jnp.eye(n, dtype=upper.dtype)
    )
    rhs = jnp.where(keep, rhs, 0.0)
    return jax.scipy.linalg.solve_triangular(
        upper, rhs, trans="T" if transpose else "N", lower=False
    )


def solve_ls_with_factor(
    qr: ColPivQR, d: jax.Array, r: jax.Array
) -> tuple[jax.Array, jax.Array]:
    """Like `solve_ls()`, but also returns the upper triangular factor `S`
    with `P^T (J^T J + D^2) P = S^T S`."""
    n = qr.r_matrix.shape[0]
    assert d.shape == (n,)
    if n == 0:
        return jnp.zeros((0,), dtype=r.dtype), jnp.zeros((0, 0), dtype=r.dtype)

    d_perm = d[qr.permutation]
    qtr = qr.apply_qt(r)

    def eliminate_row(
        i: int | jax.Array, carry: tuple[jax.Array, jax.Array]
    ) -> tuple[jax.Array, jax.Array]:
        # Rotate the i-th row of the diagonal matrix into S. Only entries at
        # columns >= i can be nonzero, and the rotations touch a single extra
        # element of the transformed right-hand side, which starts at zero.
        def rotate(
            j: int | jax.Array,
            inner: tuple[jax.Array, jax.Array, jax.Array, jax.Array],
        ) -> tuple[jax.Array, jax.Array, jax.Array, jax.Array]:
            S, b, row, b_extra = inner
            cos, sin = _givens(S[j, j], row[j])
            S_row = S[j]
            S = S.at[j].set(cos * S_row + sin * row)
            row = (-sin * S_row + cos * row).at[j].set(0.0)
            b_j = b[j]
            b = b.at[j].set(cos * b_j + sin * b_extra)
            b_extra = -sin * b_j + cos * b_extra
            return S, b, row, b_extra

        S, b = carry
        row = jnp.zeros((n,), dtype=S.dtype).at[i].set(d_perm[i])
        S, b, _, _ = jax.lax.fori_loop(
            i, n, rotate, (S, b, row, jnp.zeros((), dtype=S.dtype))
        )
        return S, b

    S, b = jax.lax.fori_loop(0, n, eliminate_row, (qr.r_matrix, -qtr))

    # Singular system: truncate at the first zero on the diagonal.
    nonsingular = jnp.diagonal(S) != 0.0
    num_nonsingular = jnp.sum(jnp.cumprod(nonsingular.astype(jnp.int32)))
    z = truncated_triangular_solve(S, b, num_nonsingular)
    return jnp.zeros((n,), dtype=z.dtype).at[qr.permutation].set(z), S


def solve_ls(qr: ColPivQR, d: jax.Array, r: jax.Array) -> jax.Array:
    """Solve the (possibly damped) linear least-squares problem

        min_x ||J x + r||^2 + ||diag(d) x||^2

    given the column-pivoted QR factorization of `J`. `J^T J` is never formed.
    Directions that are rank deficient in `[J; diag(d)]` get a zero step.
    """
    return solve_ls_with_factor(qr, d, r)[0]


def solve_ls_min_scaled_norm(qr: ColPivQR, d: jax.Array, r: jax.Array) -> jax.Array:
    """Undamped least-squares solution of `min_x ||J x + r||^2` with the
    smallest `||diag(d) x||`.

    This is the limit of `solve_ls(qr, sqrt(lambd) * d, r)` as `lambd -> 0+`.
    When `J` has full column rank, it's the same as `solve_ls(qr, 0 * d, r)`.
    """
    n = qr.r_matrix.shape[0]
    assert d.shape == (n,)
    if n == 0:
        return jnp.zeros((0,), dtype=r.dtype)

    dtype = qr.r_matrix.dtype
    lead = jnp.arange(n) < qr.rank
    trail = ~lead
    d_perm = d[qr.permutation]

    # Basic solution: zeros in the rank deficient block.
    z_basic = truncated_triangular_solve(qr.r_matrix, -qr.apply_qt(r), qr.rank)

    # Moving the deficient block by `t` keeps the residual fixed if the leading
    # block moves by `-K t`, where `K = R11^-1 R12`. Stacked as `z + T t`.
    K = jax.scipy.linalg.solve_triangular(
        jnp.where(
            lead[:, None] & lead[None, :], qr.r_matrix, jnp.eye(n, dtype=dtype)
        ),
        jnp.where(lead[:, None] & trail[None, :], qr.r_matrix, 0.0),
        lower=False,
    )
    T = jnp.diag(trail.astype(dtype)) - K

    # Pick `t` to minimize `||D (z + T t)||`. Columns of `T` in the leading
    # block are zero, so the entries of `t` there have no effect.
    t = jnp.linalg.lstsq(d_perm[:, None] * T, -d_perm * z_basic, rcond=None)[0]
    # Deficient coordinates that don't couple to the leading block, like zero
    # columns of `J`, stay exactly at zero.
    t = jnp.where(jnp.any(K != 0.0, axis=0), t, 0.0)

    z = z_basic + T @ t
    return jnp.zeros((n,), dtype=z.dtype).at[qr.permutation].set(z)


def solve_least_squares(jacobian: jax.Array, d: jax.Array, r: jax.Array) -> jax.Array:
    """Factor `jacobian` and solve `min_x ||J x + r||^2 + ||diag(d) x||^2`."""
    return solve_ls(col_piv_qr(jacobian), d, r)
