from __future__ import annotations

import dataclasses
import math
from typing import Any, Callable, ClassVar, Generic, Iterable, Iterator, TypeVar, cast

import jax
from jax import flatten_util
from jax import numpy as jnp

T = TypeVar("T")


class DimensionMismatchError(ValueError):
    """Raised when array shapes disagree with the tangent layout of a
    `VarPack`. This is always a bug in the caller's residual function."""


class Var(Generic[T]):
    """Handle for a single optimization variable.

    Handles are mutable: they hold the current value, and `minimize()` writes
    new values into them when a step is accepted. The manifold structure is
    declared per subclass through class keywords:

        class MyVar(
            jaxnls.Var[SomeGroup],
            default_factory=SomeGroup.identity,
            retract_fn=jaxlie.manifold.rplus,
            local_fn=jaxlie.manifold.rminus,
            tangent_dim=SomeGroup.tangent_dim,
        ): ...

    When `retract_fn` is omitted, the variable is treated as Euclidean and the
    tangent dimension is inferred from the default value.

    Values can carry leading batch axes relative to the default value. A
    batched value is optimized as a stacked collection of independent
    manifold elements, with `prod(batch_axes) * tangent_dim` degrees of
    freedom.
    """

    default_factory: ClassVar[Callable[[], Any]]
    """Default value for this variable."""
    tangent_dim: ClassVar[int]
    """Dimension of the tangent space of a single (unbatched) element."""
    retract_fn: ClassVar[Callable[[Any, jax.Array], Any]]
    """Retraction function for the manifold."""
    local_fn: ClassVar[Callable[[Any, Any], jax.Array]]
    """Local tangent difference. `local_fn(a, b)` maps `b` into the tangent
    space at `a`, so that `retract_fn(a, local_fn(a, b)) == b`."""

    _default_leaf_ndim: ClassVar[int]

    def __init__(self, value: T | None = None) -> None:
        self.value: T = (
            cast(T, type(self).default_factory()) if value is None else value
        )

    def __init_subclass__(
        cls,
        *,
        default_factory: Callable[[], Any] | None = None,
        retract_fn: Callable[[Any, jax.Array], Any] | None = None,
        local_fn: Callable[[Any, Any], jax.Array] | None = None,
        tangent_dim: int | None = None,
        **kwargs,
    ) -> None:
        super().__init_subclass__(**kwargs)

        if default_factory is None:
            # Plain subclass of an existing variable type.
            assert retract_fn is None and local_fn is None and tangent_dim is None
            assert hasattr(cls, "default_factory"), (
                f"{cls.__name__} needs a `default_factory`."
            )
            return

        cls.default_factory = staticmethod(default_factory)  # type: ignore
        default_leaves = jax.tree.leaves(jax.eval_shape(default_factory))
        assert len(default_leaves) > 0, "Variable values need at least one array."
        cls._default_leaf_ndim = len(default_leaves[0].shape)

        if retract_fn is not None:
            assert tangent_dim is not None and local_fn is not None
            cls.tangent_dim = tangent_dim
            cls.retract_fn = staticmethod(retract_fn)  # type: ignore
            cls.local_fn = staticmethod(local_fn)  # type: ignore
        else:
            assert tangent_dim is None and local_fn is None
            cls.tangent_dim = int(
                sum([math.prod(leaf.shape) for leaf in default_leaves])
            )
            cls.retract_fn = staticmethod(_euclidean_retract)  # type: ignore
            cls.local_fn = staticmethod(_euclidean_local)  # type: ignore

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.value})"

    @property
    def dof(self) -> int:
        """Degrees of freedom of the current value."""
        return self.dof_of(self.value)

    def batch_axes_of(self, value: T) -> tuple[int, ...]:
        leaf = jax.tree.leaves(value)[0]
        num_batch_axes = len(leaf.shape) - type(self)._default_leaf_ndim
        assert num_batch_axes >= 0, (
            f"Value for {type(self).__name__} has fewer axes than its default."
        )
        return tuple(leaf.shape[:num_batch_axes])

    def dof_of(self, value: T) -> int:
        return math.prod(self.batch_axes_of(value)) * type(self).tangent_dim

    def retract(self, value: T, tangent: jax.Array) -> T:
        """Apply a tangent-space update. Does not modify the handle."""
        var_type = type(self)
        batch_axes = self.batch_axes_of(value)
        if batch_axes == ():
            return var_type.retract_fn(value, tangent)

        num_batch_axes = len(batch_axes)
        flat_value = jax.tree.map(
            lambda x: x.reshape((-1, *x.shape[num_batch_axes:])), value
        )
        out = jax.vmap(var_type.retract_fn)(
            flat_value, tangent.reshape((-1, var_type.tangent_dim))
        )
        return jax.tree.map(lambda x: x.reshape((*batch_axes, *x.shape[1:])), out)

    def local(self, value_a: T, value_b: T) -> jax.Array:
        """Flattened tangent vector taking `value_a` to `value_b`."""
        var_type = type(self)
        batch_axes = self.batch_axes_of(value_a)
        if batch_axes == ():
            return jnp.ravel(var_type.local_fn(value_a, value_b))

        num_batch_axes = len(batch_axes)
        flatten = lambda x: x.reshape((-1, *x.shape[num_batch_axes:]))
        return jnp.ravel(
            jax.vmap(var_type.local_fn)(
                jax.tree.map(flatten, value_a), jax.tree.map(flatten, value_b)
            )
        )


def _euclidean_retract(pytree: T, delta: jax.Array) -> T:
    # Euclidean retraction.
    flat, unravel = flatten_util.ravel_pytree(pytree)
    del flat
    return cast(T, jax.tree.map(jnp.add, pytree, unravel(delta)))


def _euclidean_local(pytree_a: Any, pytree_b: Any) -> jax.Array:
    return (
        flatten_util.ravel_pytree(pytree_b)[0] - flatten_util.ravel_pytree(pytree_a)[0]
    )


class VectorVar(Var[jax.Array], default_factory=lambda: jnp.zeros(())):
    """Euclidean vector variable. The length of the value passed in sets the
    degrees of freedom, so it can be chosen at runtime."""


@dataclasses.dataclass(frozen=True)
class VarPack:
    """Ordered group of variables that are optimized jointly.

    Tangent vectors for the pack are the concatenation of per-variable tangent
    vectors, in the order the variables were given. Jacobians passed to the
    solver must use the same column layout.
    """

    variables: tuple[Var[Any], ...]

    def __post_init__(self) -> None:
        seen = set[int]()
        for var in self.variables:
            if not isinstance(var, Var):
                raise TypeError(f"Expected a Var, but got {type(var).__name__}.")
            if id(var) in seen:
                raise ValueError(f"{var!r} appears more than once in the pack.")
            seen.add(id(var))

    def __len__(self) -> int:
        return len(self.variables)

    def __iter__(self) -> Iterator[Var[Any]]:
        return iter(self.variables)

    def get_values(self) -> tuple[Any, ...]:
        return tuple(var.value for var in self.variables)

    def tangent_dims(self, values: tuple[Any, ...] | None = None) -> tuple[int, ...]:
        if values is None:
            values = self.get_values()
        return tuple(var.dof_of(value) for var, value in zip(self.variables, values))

    @property
    def tangent_dim(self) -> int:
        """Sum of tangent dimensions of all variables in the pack."""
        return sum(self.tangent_dims())

    def offsets(self, values: tuple[Any, ...] | None = None) -> tuple[int, ...]:
        """Start index of each variable's segment in a pack tangent vector."""
        out = list[int]()
        start = 0
        for dim in self.tangent_dims(values):
            out.append(start)
            start += dim
        return tuple(out)

    def split(
        self, tangent: jax.Array, values: tuple[Any, ...] | None = None
    ) -> list[jax.Array]:
        """Split a pack tangent vector into per-variable segments."""
        dims = self.tangent_dims(values)
        if tangent.shape != (sum(dims),):
            raise DimensionMismatchError(
                f"Tangent vector has shape {tangent.shape}, but the pack has"
                f" {sum(dims)} degrees of freedom."
            )
        segments = list[jax.Array]()
        start = 0
        for dim in dims:
            segments.append(tangent[start : start + dim])
            start += dim
        return segments

    def retract(self, values: tuple[Any, ...], tangent: jax.Array) -> tuple[Any, ...]:
        """Propose updated values. Handles are left untouched; use `commit()`
        to write the result back."""
        assert len(values) == len(self.variables)
        return tuple(
            var.retract(value, segment)
            for var, value, segment in zip(
                self.variables, values, self.split(tangent, values)
            )
        )

    def commit(self, values: tuple[Any, ...]) -> None:
        """Write values into the variable handles."""
        assert len(values) == len(self.variables)
        for var, value in zip(self.variables, values):
            var.value = value

    def apply(self, tangent: jax.Array) -> None:
        """Retract every variable by its segment of `tangent`, in place."""
        self.commit(self.retract(self.get_values(), tangent))

    def local(
        self, values_a: tuple[Any, ...], values_b: tuple[Any, ...]
    ) -> jax.Array:
        """Pack tangent vector taking `values_a` to `values_b`."""
        segments = [
            var.local(a, b) for var, a, b in zip(self.variables, values_a, values_b)
        ]
        if len(segments) == 0:
            return jnp.zeros((0,))
        return jnp.concatenate(segments, axis=0)

    def check_jacobian(self, jacobian: jax.Array, residual_dim: int) -> None:
        """Make sure a Jacobian matches the residual length and the tangent
        layout of this pack."""
        expected = (residual_dim, self.tangent_dim)
        if jacobian.shape != expected:
            raise DimensionMismatchError(
                f"Jacobian has shape {jacobian.shape}, expected {expected}"
                f" (residual dimension, pack tangent dimension)."
            )


def wrt(*variables: Var[Any]) -> VarPack:
    """Group variables for `minimize()`. The argument order sets both the
    order in which values are passed to the residual function and the column
    layout of its Jacobian."""
    return VarPack(tuple(variables))


def make_pack(variables: VarPack | Var[Any] | Iterable[Var[Any]]) -> VarPack:
    if isinstance(variables, VarPack):
        return variables
    if isinstance(variables, Var):
        return VarPack((variables,))
    return VarPack(tuple(variables))
