from setuptools import find_packages, setup

setup(
    name="jaxsubgraph",
    version="0.0",
    description="Subgraph-preconditioned conjugate gradient for linear factor graphs in Jax",
    author="brentyi",
    author_email="brentyi@berkeley.edu",
    license="BSD",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    package_data={"jaxsubgraph": ["py.typed"]},
    python_requires=">=3.10",
    install_requires=[
        "tyro",
        "jax>=0.4.25",
        "jaxlib",
        "jax_dataclasses>=1.6.0",
        "numpy",
        "scipy",
        "loguru",
        "termcolor",
    ],
    extras_require={
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "type-checking": [
            "mypy",
            "types-termcolor",
        ],
    },
)
