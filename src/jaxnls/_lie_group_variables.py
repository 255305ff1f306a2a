"""Variables for `jaxlie` groups.

Updates are applied on the right, `retract(x, t) = x @ exp(t)`, and
`local(a, b) = log(a^-1 @ b)`.
"""

from typing import Any

import jaxlie

from ._variables import Var


def _group_capability(group: type[jaxlie.MatrixLieGroup]) -> dict[str, Any]:
    return dict(
        default_factory=group.identity,
        retract_fn=jaxlie.manifold.rplus,
        local_fn=jaxlie.manifold.rminus,
        tangent_dim=group.tangent_dim,
    )


class SO2Var(Var[jaxlie.SO2], **_group_capability(jaxlie.SO2)):
    """Planar rotation. One degree of freedom."""


class SO3Var(Var[jaxlie.SO3], **_group_capability(jaxlie.SO3)):
    """Rotation in 3D, stored as a unit quaternion. Tangent vectors are
    axis-angle."""


class SE2Var(Var[jaxlie.SE2], **_group_capability(jaxlie.SE2)):
    """Planar rigid transform. Tangent order: `(vx, vy, omega)`."""


class SE3Var(Var[jaxlie.SE3], **_group_capability(jaxlie.SE3)):
    """Rigid transform in 3D. Tangent order: translation first, then
    rotation."""
