"""
Pytest configuration and shared fixtures for kmbayes tests.

Fitted models are session-scoped: compiling the iteration kernel dominates
the cost of a short chain, so each fit configuration is run once and shared.
"""

import pytest
import numpy as np

import kmbayes
from kmbayes.settings import build_control_params
from kmbayes.selection import build_selection_spec


def simulate_data(n=30, M=4, p=1, seed=0, noise_sd=0.5):
    """
    Draw (y, Z, X, h) from a model where only z1 and z2 matter.

        h(z) = sin(z1) + 0.25 z2^2,   y = h + X beta + eps
    """
    rng = np.random.default_rng(seed)
    Z = rng.normal(size=(n, M))
    X = rng.normal(size=(n, p))
    h = np.sin(Z[:, 0]) + 0.25 * Z[:, 1] ** 2
    y = h + X @ np.full(p, 0.5) + noise_sd * rng.normal(size=n)
    return y, Z, X, h


@pytest.fixture
def rng_seed():
    """Default RNG seed for reproducible tests."""
    return 42


@pytest.fixture(scope="session")
def small_data():
    """(y, Z, X, h) with n=30, M=4, p=1."""
    return simulate_data()


@pytest.fixture
def default_control():
    return build_control_params(None)


@pytest.fixture
def component_selection():
    return build_selection_spec(4, varsel=True)


@pytest.fixture(scope="session")
def fit_novs(small_data):
    """Short chain without variable selection."""
    y, Z, X, _ = small_data
    return kmbayes.kmbayes(y, Z, X, iter=200, verbose=False, rng_seed=1)


@pytest.fixture(scope="session")
def fit_varsel(small_data):
    """Short chain with component-wise selection."""
    y, Z, X, _ = small_data
    return kmbayes.kmbayes(y, Z, X, iter=200, varsel=True, verbose=False, rng_seed=2)


@pytest.fixture(scope="session")
def fit_hier(small_data):
    """Short chain with hierarchical selection over groups {z1, z2}, {z3, z4}."""
    y, Z, X, _ = small_data
    return kmbayes.kmbayes(y, Z, X, iter=200, varsel=True, groups=[1, 1, 2, 2],
                           verbose=False, rng_seed=3)


@pytest.fixture(scope="session")
def data_factory():
    """simulate_data, for tests that need a different design."""
    return simulate_data
