"""Sequence criterion paired with the acoustic model."""

from __future__ import annotations

import torch
import torch.nn.functional as F
from torch import nn


class CTCCriterion(nn.Module):
    """CTC loss over ``(batch, time, classes)`` logits."""

    def __init__(self, blank_id: int = 0):
        super().__init__()
        self.blank_id = blank_id

    def forward(self, logits: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
        if targets.dim() == 1:
            targets = targets.unsqueeze(0)
        if logits.size(0) != targets.size(0):
            raise ValueError(
                f"batch mismatch: logits={tuple(logits.shape)} targets={tuple(targets.shape)}"
            )
        batch, time, _ = logits.shape
        log_probs = F.log_softmax(logits, dim=-1).transpose(0, 1)
        input_lengths = torch.full((batch,), time, dtype=torch.long, device=logits.device)
        target_lengths = torch.full(
            (batch,), targets.size(1), dtype=torch.long, device=logits.device
        )
        return F.ctc_loss(
            log_probs,
            targets.long(),
            input_lengths,
            target_lengths,
            blank=self.blank_id,
            reduction="mean",
            zero_infinity=True,
        )

    def extra_repr(self) -> str:
        return f"blank_id={self.blank_id}"


__all__ = ["CTCCriterion"]
