"""Read-only wrapper around a pretrained acoustic model and its criterion."""

from __future__ import annotations

from typing import List, NamedTuple, Optional, Tuple

import torch
import torch.nn.functional as F
from torch import nn


class ModelEvaluation(NamedTuple):
    """Result of a gradient-tracked forward pass.

    ``inputs`` is the leaf fed to the model; after ``backward`` its ``grad``
    holds d(loss)/d(normalized input) in the time-major ``(T, K, 1, 1)`` layout.
    ``output`` is the class-major ``(N, T)`` view of ``logits`` ``(1, T, N)``.
    """

    inputs: torch.Tensor
    logits: torch.Tensor
    output: torch.Tensor


class FrozenModelAdapter:
    """Evaluate a frozen model without ever updating its parameters.

    Parameters
    ----------
    model:
        Module mapping ``(batch, time, bins)`` frames to ``(batch, time, classes)`` logits.
    criterion:
        Optional sequence criterion, used for diagnostics and gradient clipping.
    token_range:
        Half-open ``(start, stop)`` class slice kept by :meth:`restrict_and_renormalize`.
    """

    def __init__(
        self,
        model: nn.Module,
        criterion: Optional[nn.Module] = None,
        *,
        token_range: Tuple[int, int] = (2, 28),
    ):
        start, stop = token_range
        if start < 0 or stop <= start:
            raise ValueError(f"token_range must satisfy 0 <= start < stop, got {token_range}")
        self.model = model
        self.criterion = criterion
        self.token_range = (int(start), int(stop))
        self._snapshot = [p.detach().clone() for p in model.parameters()]

    # ------------------------------------------------------------------
    # layout helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _to_frames(time_major: torch.Tensor) -> torch.Tensor:
        if time_major.dim() != 4 or time_major.size(2) != 1 or time_major.size(3) != 1:
            raise ValueError(
                f"expected a time-major (T, K, 1, 1) tensor, got shape={tuple(time_major.shape)}"
            )
        return time_major[..., 0, 0].unsqueeze(0)

    @staticmethod
    def _to_class_major(logits: torch.Tensor) -> torch.Tensor:
        return logits[0].transpose(0, 1)

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------
    def reference_output(self, normalized_input: torch.Tensor) -> torch.Tensor:
        """Inference-mode forward pass on the unperturbed input, shape ``(N, T)``."""
        self.model.eval()
        if self.criterion is not None:
            self.criterion.eval()
        with torch.no_grad():
            logits = self.model(self._to_frames(normalized_input.detach()))
        return self._to_class_major(logits).detach()

    def current_output(self, normalized_input: torch.Tensor) -> ModelEvaluation:
        """Training-mode forward pass with gradient tracking on the input."""
        self.model.train()
        if self.criterion is not None:
            self.criterion.train()
        inputs = normalized_input.detach().clone().requires_grad_(True)
        logits = self.model(self._to_frames(inputs))
        output = self._to_class_major(logits)
        output.retain_grad()
        return ModelEvaluation(inputs=inputs, logits=logits, output=output)

    def restrict_and_renormalize(self, output: torch.Tensor) -> torch.Tensor:
        """Scale each frame by its class stdev, keep the token slice, softmax over it."""
        start, stop = self.token_range
        if stop > output.size(0):
            raise ValueError(
                f"token_range {self.token_range} exceeds the model's {output.size(0)} classes"
            )
        frame_std = torch.sqrt(torch.var(output, dim=0, keepdim=True))
        scaled = output / frame_std
        return F.softmax(scaled[start:stop], dim=0)

    def criterion_loss(self, logits: torch.Tensor, target: torch.Tensor) -> Optional[float]:
        if self.criterion is None or target.numel() == 0:
            return None
        with torch.no_grad():
            return float(self.criterion(logits.detach(), target.to(logits.device)))

    # ------------------------------------------------------------------
    # parameter bookkeeping (never steps)
    # ------------------------------------------------------------------
    def parameters(self) -> List[nn.Parameter]:
        params = list(self.model.parameters())
        if self.criterion is not None:
            params.extend(self.criterion.parameters())
        return params

    def zero_grad(self) -> None:
        self.model.zero_grad(set_to_none=True)
        if self.criterion is not None:
            self.criterion.zero_grad(set_to_none=True)

    def clip_gradients(self, max_norm: float, *, include_criterion: bool = True) -> float:
        """Clip parameter gradients in place; returns the total norm before clipping."""
        params = list(self.model.parameters())
        if include_criterion and self.criterion is not None:
            params.extend(self.criterion.parameters())
        params = [p for p in params if p.grad is not None]
        if not params:
            return 0.0
        return float(torch.nn.utils.clip_grad_norm_(params, max_norm))

    def parameter_drift(self) -> float:
        """Mean squared difference between current and pretrained parameters."""
        total = 0.0
        count = 0
        for current, original in zip(self.model.parameters(), self._snapshot):
            diff = current.detach() - original
            total += float(torch.sum(diff * diff))
            count += diff.numel()
        return total / count if count else 0.0


__all__ = ["FrozenModelAdapter", "ModelEvaluation"]
