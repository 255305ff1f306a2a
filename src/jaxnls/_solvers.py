from __future__ import annotations

import dataclasses
import enum
import math
import time
from typing import Any, Callable, Iterable

import jax
import jax.flatten_util
import jax_dataclasses as jdc
from jax import numpy as jnp

from ._linear_solve import ColPivQR, col_piv_qr
from ._lmpar import lmpar_from_factor
from ._variables import DimensionMismatchError, Var, VarPack, make_pack
from .utils import log_step, log_termination

_col_piv_qr_jit = jax.jit(col_piv_qr)
_lmpar_from_factor_jit = jax.jit(lmpar_from_factor, static_argnames=("verbose",))


class MinimizeStatus(enum.Enum):
    """Reason for `minimize()` returning. None of these are errors."""

    CONVERGED_STEP = enum.auto()
    """The scaled step norm dropped below `step_tolerance`."""
    CONVERGED_PARAMETER = enum.auto()
    """The relative parameter change dropped below `parameter_tolerance`."""
    CONVERGED_GRADIENT = enum.auto()
    """The residual is orthogonal to every Jacobian column, up to
    `gradient_tolerance`."""
    CONVERGED_COST = enum.auto()
    """Actual and predicted relative cost reductions are both below
    `cost_tolerance`, or the residual became exactly zero."""
    ITERATION_LIMIT = enum.auto()
    """`max_iterations` steps were proposed."""
    TIME_LIMIT = enum.auto()
    """`max_time` seconds elapsed."""
    ZERO_RESIDUAL = enum.auto()
    """The residual was exactly zero at the initial values."""


@jdc.pytree_dataclass
class TrustRegionConfig:
    # Constants follow MINPACK's lmder.
    step_quality_min: float | jax.Array = 1e-4
    """Steps with a gain ratio (actual / predicted reduction) below this are
    rejected."""
    shrink_threshold: float | jax.Array = 0.25
    """The radius shrinks when the gain ratio is at or below this."""
    grow_threshold: float | jax.Array = 0.75
    """The radius grows when the gain ratio is at or above this."""
    shrink_factor: float | jax.Array = 0.5
    """Default factor for shrinking the radius. When the cost increased, a
    quadratic interpolation factor is used instead."""
    shrink_factor_min: float | jax.Array = 0.1
    """Lower clamp for the shrink factor."""
    grow_factor: float | jax.Array = 2.0
    """When growing, the radius is set to `grow_factor * ||D x||`."""


@jdc.pytree_dataclass
class MinimizeOptions:
    step_tolerance: float | jax.Array = 1e-8
    """We terminate if `norm_2(D x) <= step_tolerance`, where `x` is the
    proposed tangent step and `D` the column scaling."""
    parameter_tolerance: float | jax.Array = 1e-6
    """We terminate if
    `norm_2(x) <= (norm_2(params) + parameter_tolerance) * parameter_tolerance`."""
    gradient_tolerance: float | jax.Array = 1e-8
    """We terminate if the cosine between the residual and every column of the
    Jacobian is at most `gradient_tolerance`."""
    cost_tolerance: float | jax.Array = 1e-6
    """We terminate if both the actual and the predicted relative reductions of
    the cost are at most `cost_tolerance`."""
    max_iterations: jdc.Static[int] = 100
    """Maximum number of proposed steps, accepted or rejected."""
    max_time: jdc.Static[float | None] = None
    """Wall-clock budget in seconds, checked once per linearization."""
    initial_trust_region_radius: float | jax.Array = 100.0
    """Initial bound on `norm_2(D x)`. Clamped to the length of the first step."""
    verbose: jdc.Static[bool] = False
    """Log one line per proposed step."""
    jit: jdc.Static[bool] = True
    """JIT-compile the residual, the Jacobian, and the linear algebra. Shapes
    are fixed at trace time. When `False`, everything runs eagerly and sizes
    can change between calls without recompiling."""
    trust_region: TrustRegionConfig = dataclasses.field(
        default_factory=TrustRegionConfig
    )


@dataclasses.dataclass(frozen=True)
class MinimizeResult:
    status: MinimizeStatus
    iterations: int
    """Number of proposed steps."""
    accepted_steps: int
    residual_evals: int
    """Number of residual evaluations, including the one at the initial values."""
    jacobian_evals: int
    """Number of linearizations: one at the start and one per accepted step."""
    cost: float
    """Final `norm_2(r) ** 2`."""
    radius: float
    lambd: float
    elapsed: float
    """Wall-clock seconds."""


class _ResidualEvaluator:
    """Evaluates residuals and Jacobians at (possibly proposed) values, and keeps
    count."""

    def __init__(
        self,
        residual_fn: Callable[..., Any],
        pack: VarPack,
        with_jacobian: bool,
        jit: bool,
    ) -> None:
        self.pack = pack
        self.with_jacobian = with_jacobian
        self.residual_evals = 0
        self.jacobian_evals = 0
        self._residual_dim: int | None = None
        self._pending_jacobian: jax.Array | None = None

        if with_jacobian:
            # User-provided Jacobians: the function is called as-is.
            self._residual_fn = residual_fn
            return

        def residual(values: tuple[Any, ...]) -> jax.Array:
            return jnp.ravel(jnp.asarray(residual_fn(*values)))

        def jacobian(values: tuple[Any, ...]) -> jax.Array:
            # Differentiate through the retraction at zero, so columns are
            # laid out in the tangent space of the pack.
            tangent_dim = sum(pack.tangent_dims(values))
            return jax.jacfwd(lambda tangent: residual(pack.retract(values, tangent)))(
                jnp.zeros((tangent_dim,))
            )

        self._residual = jax.jit(residual) if jit else residual
        self._jacobian = jax.jit(jacobian) if jit else jacobian

    def residual(self, values: tuple[Any, ...]) -> jax.Array:
        self.residual_evals += 1
        if self.with_jacobian:
            r, J = self._residual_fn(*values)
            r = jnp.ravel(jnp.asarray(r))
            self._pending_jacobian = jnp.asarray(J)
        else:
            r = self._residual(values)

        if self._residual_dim is None:
            self._residual_dim = r.shape[0]
        elif r.shape != (self._residual_dim,):
            raise DimensionMismatchError(
                f"Residual has shape {r.shape}, but earlier evaluations returned"
                f" ({self._residual_dim},)."
            )

        # Jacobians that come with the residual are checked right away, so a
        # bad one is caught even when the solver never linearizes.
        if self._pending_jacobian is not None:
            self.pack.check_jacobian(self._pending_jacobian, self._residual_dim)
        return r

    def jacobian(self, values: tuple[Any, ...]) -> jax.Array:
        """Jacobian at the values of the most recent `residual()` call."""
        self.jacobian_evals += 1
        if self.with_jacobian:
            assert self._pending_jacobian is not None
            J = self._pending_jacobian
        else:
            J = self._jacobian(values)

        assert self._residual_dim is not None
        self.pack.check_jacobian(J, self._residual_dim)
        return J


def minimize(
    residual_fn: Callable[..., Any],
    variables: VarPack | Var[Any] | Iterable[Var[Any]],
    options: MinimizeOptions = MinimizeOptions(),
    *,
    with_jacobian: bool = False,
) -> MinimizeResult:
    """Minimize `||residual_fn(*values)||^2` with Levenberg-Marquardt.

    Steps are taken in the tangent space of each variable and applied with its
    retraction. Variable handles are only written to when a step is accepted.

    Args:
        residual_fn: Maps the current values, in the order of `variables`, to a
            residual vector. With `with_jacobian=True`, it should return a
            tuple `(r, J)`, where the columns of `J` follow the tangent layout
            of the pack.
        variables: Variables to optimize. Usually built with `wrt()`.
        options: Tolerances, budgets, and trust-region constants.
        with_jacobian: Whether `residual_fn` returns its own Jacobian. If not,
            the Jacobian is computed with forward-mode autodiff.

    Returns:
        Summary of the solve. The solution is in the variable handles.
    """
    start_time = time.time()
    pack = make_pack(variables)
    evaluator = _ResidualEvaluator(residual_fn, pack, with_jacobian, options.jit)
    factor = _col_piv_qr_jit if options.jit else col_piv_qr
    damping_search = _lmpar_from_factor_jit if options.jit else lmpar_from_factor
    tr = options.trust_region

    # Nothing is written to the handles until this first linearization passes.
    values = pack.get_values()
    r = evaluator.residual(values)
    fnorm = float(jnp.linalg.norm(r))
    delta = float(options.initial_trust_region_radius)
    lambd = 0.0
    iterations = 0
    accepted_steps = 0

    def result(status: MinimizeStatus) -> MinimizeResult:
        if options.verbose:
            log_termination(status.name, iterations, accepted_steps, fnorm**2)
        return MinimizeResult(
            status=status,
            iterations=iterations,
            accepted_steps=accepted_steps,
            residual_evals=evaluator.residual_evals,
            jacobian_evals=evaluator.jacobian_evals,
            cost=fnorm**2,
            radius=delta,
            lambd=lambd,
            elapsed=time.time() - start_time,
        )

    if fnorm == 0.0:
        return result(MinimizeStatus.ZERO_RESIDUAL)

    J = evaluator.jacobian(values)
    d: jax.Array | None = None
    first_proposal = True

    while True:
        # Linearization: scale columns and check the gradient.
        col_norms = jnp.linalg.norm(J, axis=0)
        if d is None:
            d = jnp.where(col_norms == 0.0, 1.0, col_norms)
        else:
            d = jnp.maximum(d, col_norms)

        cosines = jnp.where(
            col_norms > 0.0,
            jnp.abs(J.T @ r) / jnp.where(col_norms > 0.0, col_norms, 1.0) / fnorm,
            0.0,
        )
        gnorm = float(jnp.max(cosines)) if cosines.shape[0] > 0 else 0.0
        if gnorm <= options.gradient_tolerance:
            return result(MinimizeStatus.CONVERGED_GRADIENT)

        elapsed = time.time() - start_time
        if options.max_time is not None and elapsed >= options.max_time:
            return result(MinimizeStatus.TIME_LIMIT)

        qr: ColPivQR = factor(J)
        flat_params = jax.flatten_util.ravel_pytree(values)[0]
        params_norm = float(jnp.linalg.norm(flat_params))

        # Propose steps until one is accepted or we terminate.
        while True:
            lambd_array, x = damping_search(
                qr,
                d,
                r,
                jnp.asarray(delta, dtype=r.dtype),
                jnp.asarray(lambd, dtype=r.dtype),
            )
            lambd = float(lambd_array)
            pnorm = float(jnp.linalg.norm(d * x))
            if first_proposal:
                delta = min(delta, pnorm)
                first_proposal = False

            values_proposed = pack.retract(values, x)
            r_proposed = evaluator.residual(values_proposed)
            iterations += 1

            fnorm_proposed = float(jnp.linalg.norm(r_proposed))
            if not math.isfinite(fnorm_proposed):
                fnorm_proposed = math.inf

            # Actual and predicted relative reductions of the cost.
            if 0.1 * fnorm_proposed < fnorm:
                actred = 1.0 - (fnorm_proposed / fnorm) ** 2
            else:
                actred = -1.0
            temp1 = float(jnp.linalg.norm(J @ x)) / fnorm
            temp2 = math.sqrt(lambd) * pnorm / fnorm
            prered = temp1**2 + 2.0 * temp2**2
            dirder = -(temp1**2 + temp2**2)
            ratio = actred / prered if prered != 0.0 else 0.0

            # Update the trust region.
            if ratio <= tr.shrink_threshold:
                if actred >= 0.0:
                    shrink = float(tr.shrink_factor)
                else:
                    shrink = float(tr.shrink_factor) * dirder / (dirder + 0.5 * actred)
                if 0.1 * fnorm_proposed >= fnorm or shrink < tr.shrink_factor_min:
                    shrink = float(tr.shrink_factor_min)
                delta = shrink * min(delta, pnorm / tr.shrink_factor_min)
                lambd = lambd / shrink
            elif lambd == 0.0 or ratio >= tr.grow_threshold:
                delta = float(tr.grow_factor) * pnorm
                lambd = lambd / tr.grow_factor

            accepted = ratio >= tr.step_quality_min
            if options.verbose:
                log_step(
                    iterations,
                    (fnorm_proposed if accepted else fnorm) ** 2,
                    delta,
                    lambd,
                    ratio,
                    accepted,
                )

            if accepted:
                pack.commit(values_proposed)
                values = values_proposed
                r = r_proposed
                fnorm = fnorm_proposed
                accepted_steps += 1

            # Termination.
            status: MinimizeStatus | None = None
            if accepted and fnorm == 0.0:
                status = MinimizeStatus.CONVERGED_COST
            elif (
                abs(actred) <= options.cost_tolerance
                and prered <= options.cost_tolerance
                and 0.5 * ratio <= 1.0
            ):
                status = MinimizeStatus.CONVERGED_COST
            elif pnorm <= options.step_tolerance:
                status = MinimizeStatus.CONVERGED_STEP
            elif float(jnp.linalg.norm(x)) <= (
                params_norm + options.parameter_tolerance
            ) * options.parameter_tolerance:
                status = MinimizeStatus.CONVERGED_PARAMETER
            elif iterations >= options.max_iterations:
                status = MinimizeStatus.ITERATION_LIMIT

            if status is not None:
                return result(status)
            if accepted:
                break

        J = evaluator.jacobian(values)
