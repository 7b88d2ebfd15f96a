"""Checkpoint bundles holding a pretrained acoustic model and its criterion."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import torch

from .acoustic import AcousticModel, AcousticModelConfig
from .criterion import CTCCriterion

REQUIRED_KEYS = ("config", "model_state_dict")


@dataclass
class CheckpointBundle:
    model: AcousticModel
    criterion: CTCCriterion
    config: AcousticModelConfig
    tokens: Optional[List[str]] = None
    flags: Dict[str, Any] = field(default_factory=dict)


def save_checkpoint(
    path: str | Path,
    model: AcousticModel,
    criterion: CTCCriterion | None = None,
    *,
    tokens: Optional[List[str]] = None,
    flags: Optional[Dict[str, Any]] = None,
) -> Path:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    criterion = criterion or CTCCriterion()
    torch.save(
        {
            "config": model.config.to_dict(),
            "model_state_dict": model.state_dict(),
            "criterion": {"blank_id": criterion.blank_id},
            "tokens": tokens,
            "flags": dict(flags or {}),
        },
        output_path,
    )
    return output_path


def load_checkpoint(path: str | Path, device: torch.device | str = "cpu") -> CheckpointBundle:
    """Rebuild the model and criterion stored in ``path``.

    ``flags`` carries the options the model was trained with; callers may use
    them as defaults for the search configuration.
    """

    ckpt_path = Path(path)
    if not ckpt_path.exists():
        raise FileNotFoundError(ckpt_path)
    checkpoint = torch.load(ckpt_path, map_location=device)
    missing = [key for key in REQUIRED_KEYS if key not in checkpoint]
    if missing:
        raise ValueError(f"Invalid checkpoint {ckpt_path}: missing keys {missing}")

    config = AcousticModelConfig.from_dict(checkpoint["config"])
    model = AcousticModel(config)
    model.load_state_dict(checkpoint["model_state_dict"])
    model = model.to(device)

    criterion_cfg = checkpoint.get("criterion") or {}
    criterion = CTCCriterion(blank_id=int(criterion_cfg.get("blank_id", 0))).to(device)
    return CheckpointBundle(
        model=model,
        criterion=criterion,
        config=config,
        tokens=checkpoint.get("tokens"),
        flags=dict(checkpoint.get("flags") or {}),
    )


__all__ = ["CheckpointBundle", "load_checkpoint", "save_checkpoint"]
