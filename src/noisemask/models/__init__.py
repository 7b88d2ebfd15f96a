"""Acoustic models and checkpoint helpers."""

from __future__ import annotations

from .acoustic import AcousticModel, AcousticModelConfig, GatedConvBlock
from .checkpoint import CheckpointBundle, load_checkpoint, save_checkpoint
from .criterion import CTCCriterion

__all__ = [
    "AcousticModel",
    "AcousticModelConfig",
    "CTCCriterion",
    "CheckpointBundle",
    "GatedConvBlock",
    "load_checkpoint",
    "save_checkpoint",
]
