from __future__ import annotations

import numpy as np
import pytest

from tonesync.errors import InvalidInput
from tonesync.fft import FFTEngine, is_power_of_two


def test_is_power_of_two() -> None:
    assert is_power_of_two(1)
    assert is_power_of_two(4096)
    assert not is_power_of_two(0)
    assert not is_power_of_two(-8)
    assert not is_power_of_two(1000)


@pytest.mark.parametrize("size", [0, 3, 1000, 4097])
def test_rejects_size_that_is_not_a_power_of_two(size: int) -> None:
    with pytest.raises(InvalidInput):
        FFTEngine(size)


def test_forward_matches_numpy() -> None:
    x = np.random.default_rng(0).standard_normal(64)
    real, imag = FFTEngine(64).forward(x)
    expected = np.fft.fft(x)
    np.testing.assert_allclose(real, expected.real, atol=1e-12)
    np.testing.assert_allclose(imag, expected.imag, atol=1e-12)


def test_inverse_undoes_forward() -> None:
    engine = FFTEngine(256)
    x = np.random.default_rng(1).standard_normal(256)
    np.testing.assert_allclose(engine.inverse(*engine.forward(x)), x, atol=1e-12)


def test_forward_results_are_not_overwritten_by_later_calls() -> None:
    engine = FFTEngine(8)
    real_a, _ = engine.forward(np.ones(8))
    engine.forward(np.zeros(8))
    assert real_a[0] == pytest.approx(8.0)


def test_rejects_wrong_length() -> None:
    engine = FFTEngine(16)
    with pytest.raises(InvalidInput):
        engine.forward(np.zeros(15))
    with pytest.raises(InvalidInput):
        engine.inverse(np.zeros(16), np.zeros(8))
