from setuptools import find_packages, setup

setup(
    name="jaxnls",
    version="0.0",
    description="Levenberg-Marquardt least squares on manifolds in Jax",
    license="BSD",
    packages=find_packages("src"),
    package_dir={"": "src"},
    package_data={"jaxnls": ["py.typed"]},
    python_requires=">=3.10",
    install_requires=[
        "jax>=0.4.31",
        "jaxlib",
        "jaxlie>=1.3.0",
        "jax_dataclasses>=1.0.0",
        "loguru",
        "numpy",
    ],
    extras_require={
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "type-checking": [
            "mypy",
        ],
    },
)
