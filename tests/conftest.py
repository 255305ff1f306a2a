import jax

# Comparisons in the test suite are made at double precision.
jax.config.update("jax_enable_x64", True)
