"""Exceptions raised by the tonesync core."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all tonesync errors."""


class InvalidInput(SyncError, ValueError):
    """A signal is empty, malformed or has an unusable size."""


class DecodeError(SyncError, ValueError):
    """A recorded audio artifact does not match the expected container layout."""


class CorrelationFailure(SyncError, ArithmeticError):
    """The transform or normalization produced non-finite values."""


class AlignmentInProgress(SyncError, RuntimeError):
    """A long alignment was requested while another one is still running."""


class RecordingError(SyncError, RuntimeError):
    """Not enough audio was captured to produce a recording."""
