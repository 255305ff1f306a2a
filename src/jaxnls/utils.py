from functools import partial

import jax
from loguru import logger


def _log(fmt: str, *args, **kwargs) -> None:
    logger.bind(function="log").info(fmt, *args, **kwargs)


def jax_log(fmt: str, *args, **kwargs) -> None:
    """Emit a loguru info message from a JITed JAX function."""
    jax.debug.callback(partial(_log, fmt), *args, **kwargs)


def log_step(
    iteration: int,
    cost: float,
    radius: float,
    lambd: float,
    ratio: float,
    accepted: bool,
) -> None:
    """Summary of one proposed step. `cost` is the cost after the step was
    accepted or rejected."""
    _log(
        " step #{}: cost={:.6e} radius={:.4e} lambd={:.4e} ratio={:.4f} {}",
        iteration,
        cost,
        radius,
        lambd,
        ratio,
        "accepted" if accepted else "rejected",
    )


def log_termination(
    status_name: str, iterations: int, accepted_steps: int, cost: float
) -> None:
    _log(
        "Terminated with {} after {} steps ({} accepted), cost={:.6e}",
        status_name,
        iterations,
        accepted_steps,
        cost,
    )
