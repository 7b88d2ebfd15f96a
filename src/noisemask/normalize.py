"""Whole-tensor standardization with a closed-form backward pass."""

from __future__ import annotations

from typing import NamedTuple

import torch


class Normalized(NamedTuple):
    values: torch.Tensor
    mean: torch.Tensor
    stdev: torch.Tensor


def normalize(x: torch.Tensor) -> Normalized:
    """Standardize ``x`` with scalar statistics taken over every element.

    The standard deviation is the population one (divide by ``x.numel()``),
    which is the convention :func:`backward_normalize` differentiates.
    """

    mean = x.mean()
    stdev = x.std(unbiased=False)
    return Normalized((x - mean) / stdev, mean, stdev)


def denormalize(y: torch.Tensor, mean: torch.Tensor, stdev: torch.Tensor) -> torch.Tensor:
    return y * stdev + mean


def backward_normalize(
    grad_output: torch.Tensor,
    x: torch.Tensor,
    mean: torch.Tensor,
    stdev: torch.Tensor,
    element_count: int | None = None,
) -> torch.Tensor:
    """Vector-Jacobian product of :func:`normalize` treated as one group.

    Parameters
    ----------
    grad_output:
        Gradient of the loss with respect to the normalized tensor.
    x:
        The tensor that was normalized.
    mean, stdev:
        Statistics returned by :func:`normalize` for ``x``.
    element_count:
        Size of the normalization group. Defaults to ``x.numel()``.
    """

    if grad_output.shape != x.shape:
        raise ValueError(
            f"gradient shape {tuple(grad_output.shape)} does not match input shape {tuple(x.shape)}"
        )
    n = x.numel() if element_count is None else element_count
    centered = x - mean
    dsigma2 = torch.sum(grad_output * centered * (-0.5) * stdev.pow(-3))
    dmu = torch.sum(grad_output * (-1.0 / stdev)) + torch.sum(-2.0 * centered) * dsigma2 / n
    return grad_output / stdev + dsigma2 * 2.0 * centered / n + dmu / n


__all__ = ["Normalized", "backward_normalize", "denormalize", "normalize"]
