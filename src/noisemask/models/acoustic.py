"""Frame-level acoustic model over magnitude spectra."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

import torch
from torch import nn


@dataclass
class AcousticModelConfig:
    num_bins: int
    num_classes: int
    d_model: int = 128
    num_layers: int = 4
    kernel_size: int = 5
    dropout: float = 0.1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AcousticModelConfig":
        return cls(
            num_bins=int(payload["num_bins"]),
            num_classes=int(payload["num_classes"]),
            d_model=int(payload.get("d_model", 128)),
            num_layers=int(payload.get("num_layers", 4)),
            kernel_size=int(payload.get("kernel_size", 5)),
            dropout=float(payload.get("dropout", 0.1)),
        )


class GatedConvBlock(nn.Module):
    """Pre-norm residual block: GLU projection then a depthwise time convolution."""

    def __init__(self, d_model: int, kernel_size: int, dropout: float):
        super().__init__()
        if kernel_size % 2 == 0:
            raise ValueError(f"kernel_size must be odd, got {kernel_size}")
        self.norm = nn.LayerNorm(d_model)
        self.in_proj = nn.Linear(d_model, 2 * d_model)
        self.conv = nn.Conv1d(
            d_model,
            d_model,
            kernel_size=kernel_size,
            padding=kernel_size // 2,
            groups=d_model,
        )
        self.out_proj = nn.Linear(d_model, d_model)
        self.dropout = nn.Dropout(dropout)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        residual = x
        gate, candidate = self.in_proj(self.norm(x)).chunk(2, dim=-1)
        y = candidate * torch.sigmoid(gate)
        y = self.conv(y.transpose(1, 2)).transpose(1, 2)
        y = self.out_proj(torch.relu(y))
        return residual + self.dropout(y)


class AcousticModel(nn.Module):
    """Stack of gated convolution blocks emitting per-frame token logits."""

    def __init__(self, config: AcousticModelConfig):
        super().__init__()
        if config.num_layers <= 0:
            raise ValueError("num_layers must be positive.")
        self.config = config
        self.input_proj = nn.Linear(config.num_bins, config.d_model)
        self.dropout = nn.Dropout(config.dropout)
        self.layers = nn.ModuleList(
            GatedConvBlock(config.d_model, config.kernel_size, config.dropout)
            for _ in range(config.num_layers)
        )
        self.final_norm = nn.LayerNorm(config.d_model)
        self.token_head = nn.Linear(config.d_model, config.num_classes)

    def forward(self, frames: torch.Tensor) -> torch.Tensor:
        """
        Parameters
        ----------
        frames:
            Tensor of shape (batch, time, num_bins).

        Returns
        -------
        Token logits of shape (batch, time, num_classes).
        """
        if frames.dim() != 3 or frames.size(-1) != self.config.num_bins:
            raise ValueError(
                f"Expected frames of shape (batch, time, {self.config.num_bins}), "
                f"received {tuple(frames.shape)}"
            )
        x = self.dropout(self.input_proj(frames))
        for layer in self.layers:
            x = layer(x)
        return self.token_head(self.final_norm(x))


__all__ = ["AcousticModel", "AcousticModelConfig", "GatedConvBlock"]
