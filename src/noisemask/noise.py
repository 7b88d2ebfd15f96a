"""Noise sources feeding the mask search."""

from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence

import torch


class NoiseSource(Protocol):
    def sample(self, shape: Sequence[int], *, like: torch.Tensor) -> torch.Tensor:
        ...


class GaussianNoise:
    """I.i.d. normal draws with a fixed mean and standard deviation."""

    def __init__(self, std: float, mean: float = 0.0, seed: Optional[int] = None):
        if std < 0:
            raise ValueError(f"std must be non-negative, got {std}")
        self.std = float(std)
        self.mean = float(mean)
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)

    def sample(self, shape: Sequence[int], *, like: torch.Tensor) -> torch.Tensor:
        draw = torch.randn(tuple(shape), generator=self.generator, dtype=like.dtype)
        return (draw * self.std + self.mean).to(like.device)

    def __repr__(self) -> str:
        return f"GaussianNoise(std={self.std:g}, mean={self.mean:g})"


class FixedNoise:
    """Replay pre-recorded noise tensors, one per iteration."""

    def __init__(self, draws: Iterable[torch.Tensor]):
        self.draws: List[torch.Tensor] = [d.detach().clone() for d in draws]
        self._index = 0

    def reset(self) -> None:
        self._index = 0

    def sample(self, shape: Sequence[int], *, like: torch.Tensor) -> torch.Tensor:
        if self._index >= len(self.draws):
            raise RuntimeError(f"FixedNoise exhausted after {len(self.draws)} draws")
        draw = self.draws[self._index]
        if tuple(draw.shape) != tuple(shape):
            raise ValueError(f"recorded noise has shape {tuple(draw.shape)}, expected {tuple(shape)}")
        self._index += 1
        return draw.to(device=like.device, dtype=like.dtype)


__all__ = ["FixedNoise", "GaussianNoise", "NoiseSource"]
