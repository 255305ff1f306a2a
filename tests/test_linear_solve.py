import jax
import numpy as onp
import pytest
from jax import numpy as jnp

import jaxnls


def _random_problem(
    m: int, n: int, zero_d: bool, singular: bool, seed: int = 0
) -> tuple[onp.ndarray, onp.ndarray, onp.ndarray]:
    rng = onp.random.default_rng(seed)
    J = rng.uniform(-1.0, 1.0, size=(m, n))
    if singular and n >= 2:
        J[:, -1] = J[:, 0]
    d = onp.zeros(n) if zero_d else rng.uniform(0.0, 1.0, size=n) + 1.0
    r = rng.uniform(-1.0, 1.0, size=m)
    return J, d, r


@pytest.mark.parametrize("zero_d", [False, True])
@pytest.mark.parametrize("singular", [False, True])
@pytest.mark.parametrize("shape", [(1, 1), (5, 1), (5, 10), (8, 16), (10, 5)])
def test_solve_least_squares(
    shape: tuple[int, int], singular: bool, zero_d: bool
) -> None:
    """Solution should satisfy the normal equations of the stacked system
    `[J; D] x = [-r; 0]`, and match a dense solve when that system has full
    column rank."""
    m, n = shape
    J, d, r = _random_problem(m, n, zero_d, singular)

    x = onp.asarray(
        jaxnls.solve_least_squares(jnp.array(J), jnp.array(d), jnp.array(r))
    )
    assert x.shape == (n,)

    A = onp.concatenate([J, onp.diag(d)], axis=0)
    b = onp.concatenate([-r, onp.zeros(n)])
    onp.testing.assert_allclose(A.T @ (A @ x - b), onp.zeros(n), atol=1e-8)

    if onp.linalg.matrix_rank(A) == n:
        x_dense = onp.linalg.lstsq(A, b, rcond=None)[0]
        onp.testing.assert_allclose(x, x_dense, atol=1e-8, rtol=1e-8)


@pytest.mark.parametrize("singular", [False, True])
@pytest.mark.parametrize("shape", [(5, 1), (5, 10), (8, 16)])
def test_solve_least_squares_jit(shape: tuple[int, int], singular: bool) -> None:
    """Compiled and eager solves should agree."""
    J, d, r = _random_problem(*shape, zero_d=False, singular=singular, seed=1)
    x_eager = jaxnls.solve_least_squares(jnp.array(J), jnp.array(d), jnp.array(r))
    x_jit = jax.jit(jaxnls.solve_least_squares)(
        jnp.array(J), jnp.array(d), jnp.array(r)
    )
    onp.testing.assert_allclose(x_eager, x_jit, atol=1e-10, rtol=1e-10)


def test_solve_least_squares_zero_jacobian() -> None:
    """Without any information in `J`, the step should be zero."""
    x = jaxnls.solve_least_squares(jnp.zeros((4, 3)), jnp.ones(3), jnp.ones(4))
    onp.testing.assert_allclose(x, onp.zeros(3))

    x = jaxnls.solve_least_squares(jnp.zeros((4, 3)), jnp.zeros(3), jnp.ones(4))
    onp.testing.assert_allclose(x, onp.zeros(3))


def test_solve_least_squares_empty() -> None:
    x = jaxnls.solve_least_squares(jnp.zeros((3, 0)), jnp.zeros(0), jnp.ones(3))
    assert x.shape == (0,)

    x = jaxnls.solve_least_squares(jnp.zeros((0, 4)), jnp.ones(4), jnp.zeros(0))
    onp.testing.assert_allclose(x, onp.zeros(4))


def test_col_piv_qr() -> None:
    """Check the factorization against the input matrix."""
    J, _, _ = _random_problem(8, 5, zero_d=False, singular=False, seed=2)
    qr = jaxnls.col_piv_qr(jnp.array(J))
    assert int(qr.rank) == 5

    # Q^T J[:, p] = R, checked one column at a time.
    J_perm = J[:, onp.asarray(qr.permutation)]
    for j in range(5):
        onp.testing.assert_allclose(
            qr.apply_qt(jnp.array(J_perm[:, j])), qr.r_matrix[:, j], atol=1e-10
        )

    # Pivots should be sorted by magnitude.
    diag = onp.abs(onp.diagonal(onp.asarray(qr.r_matrix)))
    assert onp.all(diag[:-1] >= diag[1:])
    onp.testing.assert_allclose(qr.r_matrix, onp.triu(qr.r_matrix))


def test_col_piv_qr_rank() -> None:
    J, _, _ = _random_problem(6, 4, zero_d=False, singular=True, seed=3)
    qr = jaxnls.col_piv_qr(jnp.array(J))
    assert int(qr.rank) == 3
    onp.testing.assert_allclose(qr.r_matrix[3:], onp.zeros((1, 4)))

    qr = jaxnls.col_piv_qr(jnp.zeros((3, 2)))
    assert int(qr.rank) == 0


def test_solve_ls_with_factor() -> None:
    """`S^T S` should be the permuted damped Gram matrix."""
    J, d, r = _random_problem(7, 4, zero_d=False, singular=False, seed=4)
    qr = jaxnls.col_piv_qr(jnp.array(J))
    x, S = jaxnls.solve_ls_with_factor(qr, jnp.array(d), jnp.array(r))

    perm = onp.asarray(qr.permutation)
    gram = J.T @ J + onp.diag(d**2)
    S = onp.asarray(S)
    onp.testing.assert_allclose(S.T @ S, gram[perm][:, perm], atol=1e-10)
    onp.testing.assert_allclose(S, onp.triu(S))
    onp.testing.assert_allclose(
        x, jaxnls.solve_ls(qr, jnp.array(d), jnp.array(r)), atol=1e-12
    )


@pytest.mark.parametrize("singular", [False, True])
@pytest.mark.parametrize("shape", [(1, 1), (5, 1), (5, 10), (2, 5), (8, 16), (10, 5)])
def test_solve_ls_min_scaled_norm(shape: tuple[int, int], singular: bool) -> None:
    """Out of all least-squares solutions, the one with the smallest `||D x||`.
    In the scaled coordinates `y = D x`, that's the pseudo-inverse solution."""
    J, d, r = _random_problem(*shape, zero_d=False, singular=singular, seed=2)
    qr = jaxnls.col_piv_qr(jnp.array(J))
    x = onp.asarray(jaxnls.solve_ls_min_scaled_norm(qr, jnp.array(d), jnp.array(r)))

    x_expected = onp.linalg.pinv(J / d[None, :], rcond=1e-10) @ -r / d
    onp.testing.assert_allclose(x, x_expected, atol=1e-8, rtol=1e-8)

    x_jit = jax.jit(jaxnls.solve_ls_min_scaled_norm)(qr, jnp.array(d), jnp.array(r))
    onp.testing.assert_allclose(x_jit, x, atol=1e-10, rtol=1e-10)

    # Full column rank leaves only one least-squares solution.
    if onp.linalg.matrix_rank(J) == shape[1]:
        x_basic = jaxnls.solve_ls(qr, jnp.zeros(shape[1]), jnp.array(r))
        onp.testing.assert_allclose(x, x_basic, atol=1e-10)


def test_solve_ls_min_scaled_norm_zero_column() -> None:
    """Directions that `J` doesn't see get exactly zero."""
    J = onp.array([[1.0, 0.0, 2.0], [3.0, 0.0, -1.0], [0.5, 0.0, 1.0]])
    qr = jaxnls.col_piv_qr(jnp.array(J))
    x = jaxnls.solve_ls_min_scaled_norm(
        qr, jnp.array([1.0, 2.0, 3.0]), jnp.array([1.0, 2.0, 3.0])
    )
    assert float(x[1]) == 0.0

    x = jaxnls.solve_ls_min_scaled_norm(
        jaxnls.col_piv_qr(jnp.zeros((0, 4))), jnp.ones(4), jnp.zeros(0)
    )
    onp.testing.assert_allclose(x, onp.zeros(4))
