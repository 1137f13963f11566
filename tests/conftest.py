from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest

DelayedPair = Callable[[int, int], tuple[np.ndarray, np.ndarray]]


@pytest.fixture
def delayed_pair() -> DelayedPair:
    """Return a factory of (reference, delayed) noise pairs.

    The second signal lags the first by ``delay`` samples, so correlating
    (reference, delayed) peaks at ``-delay``.
    """
    rng = np.random.default_rng(1234)

    def make(length: int, delay: int) -> tuple[np.ndarray, np.ndarray]:
        base = rng.uniform(-0.5, 0.5, length + abs(delay))
        if delay >= 0:
            return base[delay:], base[: length]
        return base[: length], base[-delay:]

    return make
