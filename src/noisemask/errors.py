"""Exceptions raised by the mask search."""

from __future__ import annotations


class NumericalCorruptionError(RuntimeError):
    """Raised when sample tensors or the loss contain NaN values."""


__all__ = ["NumericalCorruptionError"]
