"""Loss terms of the mask search and their closed-form mask gradients."""

from __future__ import annotations

import math

import torch


def fidelity_loss(reference: torch.Tensor, current: torch.Tensor) -> torch.Tensor:
    """Squared L2 distance between two restricted-subset distributions."""
    if reference.shape != current.shape:
        raise ValueError(
            f"fidelity_loss expects matching shapes, got reference={tuple(reference.shape)} "
            f"current={tuple(current.shape)}"
        )
    diff = reference - current
    return torch.sum(diff * diff)


def mask_energy(mask: torch.Tensor) -> float:
    """Squared L2 norm of the mask."""
    return float(torch.sum(mask * mask))


def log_energy_regularization(mask: torch.Tensor, weight: float) -> float:
    """``-weight * log(||mask||^2)``; grows as the mask shrinks."""
    return -weight * math.log(mask_energy(mask))


def log_energy_regularization_grad(mask: torch.Tensor, weight: float) -> torch.Tensor:
    """Analytic gradient ``-weight * 2 * mask / ||mask||^2``."""
    return -weight * 2.0 * mask / mask_energy(mask)


__all__ = [
    "fidelity_loss",
    "log_energy_regularization",
    "log_energy_regularization_grad",
    "mask_energy",
]
