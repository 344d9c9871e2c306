# ==================================================
# ================ TESTS: conftest =================
# ==================================================
from __future__ import annotations

from typing import Callable, Tuple

import numpy as np
import pytest

from core.config import GlobalConfig, get_global_config, set_global_config


# ===================
# Helpers
# ===================

def _make_np(shape: Tuple[int, ...], seed: int = 123, dtype: str = "float64") -> np.ndarray:
    """
    Deterministic NumPy array with random values.
    A fixed seed keeps the tests reproducible across runs.
    """
    rng = np.random.default_rng(seed)
    return rng.standard_normal(size=shape).astype(dtype)


# ===================
# Fixtures
# ===================

@pytest.fixture
def make_np() -> Callable[..., np.ndarray]:
    return _make_np


@pytest.fixture(autouse=True)
def restore_global_config():
    """Every test starts from, and leaves behind, the default process-wide configuration."""
    saved = GlobalConfig(**vars(get_global_config()))
    yield
    set_global_config(saved)


@pytest.fixture
def threads():
    """
    Switch the frameworks between one and several threads.

    `threads(n)` sets `n_jobs` and lowers the work threshold so that even small
    test images are split over `n` threads.
    """
    def _set(n: int) -> GlobalConfig:
        return set_global_config(n_jobs=n, min_operations_per_thread=1)
    return _set
