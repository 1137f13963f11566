"""Fixed-size real-input FFT engine used by the cross-correlator."""

from __future__ import annotations

import numpy as np

from tonesync.errors import InvalidInput


def is_power_of_two(n: int) -> bool:
    """Return True if n is a positive power of two."""
    return n > 0 and (n & (n - 1)) == 0


class FFTEngine:
    """Forward/inverse discrete Fourier transform of one fixed size.

    The engine keeps a complex work buffer for its size so repeated transforms
    of the same length do not allocate a fresh spectrum each time. Callers that
    need a different size create a new engine.

    Attributes:
        size: Transform length N, always a power of two.
    """

    def __init__(self, size: int) -> None:
        """Initialize the engine.

        Args:
            size: Transform length. Must be a power of two.

        Raises:
            InvalidInput: If size is not a positive power of two.
        """
        if not is_power_of_two(size):
            raise InvalidInput(f"FFT size must be a power of two, got {size}")
        self.size = size
        self._spectrum = np.empty(size, dtype=np.complex128)

    def _check(self, values: np.ndarray, what: str) -> np.ndarray:
        array = np.asarray(values, dtype=np.float64)
        if array.ndim != 1 or array.shape[0] != self.size:
            raise InvalidInput(
                f"{what} must be a 1-D array of length {self.size}, got shape {array.shape}"
            )
        return array

    def forward(self, real: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Transform a real time-domain signal.

        Args:
            real: Time-domain samples of length N.

        Returns:
            Tuple of (real, imag) spectrum arrays, each of length N.
        """
        samples = self._check(real, "signal")
        self._spectrum[:] = np.fft.fft(samples)
        return self._spectrum.real.copy(), self._spectrum.imag.copy()

    def inverse(self, real: np.ndarray, imag: np.ndarray) -> np.ndarray:
        """Transform a spectrum back to the time domain.

        This is the exact inverse of forward(): ``inverse(*forward(x)) == x``
        up to rounding. Only the real part of the result is returned.

        Args:
            real: Real part of the spectrum, length N.
            imag: Imaginary part of the spectrum, length N.

        Returns:
            Real time-domain samples of length N.
        """
        self._spectrum.real = self._check(real, "real spectrum")
        self._spectrum.imag = self._check(imag, "imaginary spectrum")
        return np.fft.ifft(self._spectrum).real
