"""Levenberg-Marquardt parameter search.

Given `J`, a scaling vector `d`, a residual `r`, and a trust-region radius
`delta`, we look for `lambd >= 0` such that the solution `x` of

    min_x ||J x + r||^2 + lambd * ||D x||^2

either has `lambd == 0` and `||D x|| <= 1.1 delta`, or has `lambd > 0` and
`| ||D x|| - delta | <= 0.1 delta`.

For reference, see Moré, "The Levenberg-Marquardt algorithm: implementation
and theory", 1978.
"""

from __future__ import annotations

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp

from ._linear_solve import (
    ColPivQR,
    col_piv_qr,
    solve_ls_min_scaled_norm,
    solve_ls_with_factor,
    truncated_triangular_solve,
)
from .utils import jax_log

_MAX_ITERATIONS = 10
"""The search stops here even if the radius is not matched yet."""


@jdc.pytree_dataclass
class _LmparState:
    iterations: jax.Array
    lambd: jax.Array
    lambd_lower: jax.Array
    lambd_upper: jax.Array
    radius_error: jax.Array
    """`||D x|| - delta` for the current `x`."""
    x: jax.Array
    done: jax.Array


def lmpar(
    jacobian: jax.Array,
    d: jax.Array,
    r: jax.Array,
    delta: float | jax.Array,
    lambd_initial: float | jax.Array = 0.0,
    verbose: jdc.Static[bool] = False,
) -> tuple[jax.Array, jax.Array]:
    """Find a damping parameter that makes the step match the trust region.

    Args:
        jacobian: Jacobian `J`. Shape: `(M, N)`.
        d: Non-negative scaling vector. Shape: `(N,)`.
        r: Residual vector. Shape: `(M,)`.
        delta: Trust-region radius, must be positive.
        lambd_initial: Starting guess for the damping parameter.
        verbose: Log each iteration of the search.

    Returns:
        Tuple of `(lambd, x)`, where `x` solves the damped subproblem.
    """
    return lmpar_from_factor(
        col_piv_qr(jacobian), d, r, delta, lambd_initial, verbose=verbose
    )


def lmpar_from_factor(
    qr: ColPivQR,
    d: jax.Array,
    r: jax.Array,
    delta: float | jax.Array,
    lambd_initial: float | jax.Array = 0.0,
    verbose: jdc.Static[bool] = False,
) -> tuple[jax.Array, jax.Array]:
    """Same as `lmpar()`, but reuses an existing factorization of `J`."""
    n = qr.r_matrix.shape[0]
    dtype = qr.r_matrix.dtype
    if n == 0:
        return jnp.zeros((), dtype=dtype), jnp.zeros((0,), dtype=dtype)

    delta = jnp.asarray(delta, dtype=dtype)
    tiny = jnp.finfo(dtype).tiny
    perm = qr.permutation
    d_perm = d[perm]
    qtr = qr.apply_qt(r)

    # Gauss-Newton step. If J is rank deficient, this is the least-squares
    # solution with the smallest scaled norm, which is where the damped
    # solutions end up as lambd goes to zero.
    x_gn = solve_ls_min_scaled_norm(qr, d, r)
    dx_gn = d * x_gn
    dxnorm = jnp.linalg.norm(dx_gn)
    radius_error = dxnorm - delta
    gauss_newton_ok = radius_error <= 0.1 * delta
    safe_dxnorm = jnp.where(dxnorm > 0.0, dxnorm, 1.0)

    # Lower bound. Only available from the Newton step when J has full rank.
    w = truncated_triangular_solve(
        qr.r_matrix, d_perm * dx_gn[perm] / safe_dxnorm, n, transpose=True
    )
    w_norm_sq = jnp.sum(w**2)
    lambd_lower = jnp.where(
        (qr.rank == n) & (w_norm_sq > 0.0),
        radius_error / delta / jnp.where(w_norm_sq > 0.0, w_norm_sq, 1.0),
        0.0,
    )

    # Upper bound, from the norm of the scaled gradient. Coordinates with a
    # zero scale don't contribute.
    scaled_grad = jnp.where(
        d_perm > 0.0,
        (qr.r_matrix.T @ qtr) / jnp.where(d_perm > 0.0, d_perm, 1.0),
        0.0,
    )
    gnorm = jnp.linalg.norm(scaled_grad)
    lambd_upper = gnorm / delta
    lambd_upper = jnp.where(
        lambd_upper == 0.0, tiny / jnp.minimum(delta, 0.1), lambd_upper
    )

    lambd = jnp.clip(
        jnp.asarray(lambd_initial, dtype=dtype), lambd_lower, lambd_upper
    )
    lambd = jnp.where(lambd == 0.0, gnorm / safe_dxnorm, lambd)

    def step(state: _LmparState) -> _LmparState:
        iterations = state.iterations + 1
        lambd = jnp.where(
            state.lambd == 0.0,
            jnp.maximum(tiny, 0.001 * state.lambd_upper),
            state.lambd,
        )

        x, S = solve_ls_with_factor(qr, jnp.sqrt(lambd) * d, r)
        dx = d * x
        dxnorm = jnp.linalg.norm(dx)
        radius_error = dxnorm - delta

        if verbose:
            jax_log(
                "     lmpar #{i}: lambd={lambd:.4e} dxnorm={dxnorm:.4e}"
                " delta={delta:.4e}",
                i=iterations,
                lambd=lambd,
                dxnorm=dxnorm,
                delta=delta,
                ordered=True,
            )

        done = (
            (jnp.abs(radius_error) <= 0.1 * delta)
            | (
                (state.lambd_lower == 0.0)
                & (radius_error <= state.radius_error)
                & (state.radius_error < 0.0)
            )
            | (iterations >= _MAX_ITERATIONS)
        )

        # Newton correction.
        safe_dxnorm = jnp.where(dxnorm > 0.0, dxnorm, 1.0)
        nonsingular = jnp.diagonal(S) != 0.0
        w = truncated_triangular_solve(
            S,
            d_perm * dx[perm] / safe_dxnorm,
            jnp.sum(jnp.cumprod(nonsingular.astype(jnp.int32))),
            transpose=True,
        )
        w_norm_sq = jnp.sum(w**2)
        lambd_correction = jnp.where(
            w_norm_sq > 0.0,
            radius_error / delta / jnp.where(w_norm_sq > 0.0, w_norm_sq, 1.0),
            0.0,
        )

        # Shrink the bracket.
        lambd_lower = jnp.where(
            radius_error > 0.0,
            jnp.maximum(state.lambd_lower, lambd),
            state.lambd_lower,
        )
        lambd_upper = jnp.where(
            radius_error < 0.0,
            jnp.minimum(state.lambd_upper, lambd),
            state.lambd_upper,
        )

        return _LmparState(
            iterations=iterations,
            lambd=jnp.where(
                done, lambd, jnp.maximum(lambd_lower, lambd + lambd_correction)
            ),
            lambd_lower=lambd_lower,
            lambd_upper=lambd_upper,
            radius_error=radius_error,
            x=x,
            done=done,
        )

    state = jax.lax.while_loop(
        cond_fun=lambda state: ~state.done,
        body_fun=step,
        init_val=_LmparState(
            iterations=jnp.array(0),
            lambd=lambd,
            lambd_lower=lambd_lower,
            lambd_upper=lambd_upper,
            radius_error=radius_error,
            x=x_gn,
            done=gauss_newton_ok,
        ),
    )
    return jnp.where(gauss_newton_ok, 0.0, state.lambd), state.x
