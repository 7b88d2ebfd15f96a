"""Single-sample container and loaders for the mask search."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np
import torch

from ..errors import NumericalCorruptionError
from ..spectral import spectrogram_from_wave, to_magnitude, to_time_major


@dataclass
class SpectralSample:
    """One utterance as consumed by the mask search.

    ``spectrogram`` is packed ``(2K, T, 1, 1)``; ``features`` is the
    unnormalized time-major magnitude ``(T, K, 1, 1)``; ``target`` holds the
    token ids of the transcription.
    """

    spectrogram: torch.Tensor
    features: torch.Tensor
    target: torch.Tensor
    sample_id: str = "sample"

    @property
    def num_bins(self) -> int:
        return self.spectrogram.size(0) // 2

    @property
    def num_frames(self) -> int:
        return self.spectrogram.size(1)

    def to(self, device: torch.device | str) -> "SpectralSample":
        return SpectralSample(
            spectrogram=self.spectrogram.to(device),
            features=self.features.to(device),
            target=self.target.to(device),
            sample_id=self.sample_id,
        )


def _as_rank4(tensor: torch.Tensor, name: str) -> torch.Tensor:
    while tensor.dim() < 4:
        tensor = tensor.unsqueeze(-1)
    if tensor.dim() != 4:
        raise ValueError(f"{name} must have at most 4 axes, got shape={tuple(tensor.shape)}")
    return tensor


def build_sample(
    spectrogram: torch.Tensor,
    features: torch.Tensor | None = None,
    target: torch.Tensor | Sequence[int] | None = None,
    sample_id: str = "sample",
) -> SpectralSample:
    """Assemble a sample, deriving ``features`` from the spectrogram when absent."""
    spectrogram = _as_rank4(torch.as_tensor(spectrogram, dtype=torch.float32), "spectrogram")
    if spectrogram.size(0) % 2 != 0:
        raise ValueError(f"packed axis must be even, got {spectrogram.size(0)}")
    if spectrogram.size(2) != 1 or spectrogram.size(3) != 1:
        raise ValueError(f"channel and batch must be 1, got shape={tuple(spectrogram.shape)}")

    if features is None:
        features = to_time_major(to_magnitude(spectrogram))
    else:
        features = _as_rank4(torch.as_tensor(features, dtype=torch.float32), "features")
    expected = (spectrogram.size(1), spectrogram.size(0) // 2, 1, 1)
    if tuple(features.shape) != expected:
        raise ValueError(f"features must have shape {expected}, got {tuple(features.shape)}")

    if target is None:
        target = torch.zeros(0, dtype=torch.long)
    target = torch.as_tensor(target)
    return SpectralSample(spectrogram, features.contiguous(), target, sample_id)


def sample_from_wave(
    wave: torch.Tensor | np.ndarray,
    *,
    n_fft: int = 512,
    hop_length: int | None = None,
    target: Sequence[int] | None = None,
    sample_id: str = "sample",
) -> SpectralSample:
    """Featurize a mono waveform into a :class:`SpectralSample`."""
    wave_t = torch.as_tensor(np.asarray(wave, dtype=np.float32))
    spectrogram = spectrogram_from_wave(wave_t, n_fft=n_fft, hop_length=hop_length)
    return build_sample(spectrogram, target=target, sample_id=sample_id)


def load_sample(path: str | Path) -> SpectralSample:
    """Load a sample stored as a ``.pt`` dict or an ``.npz`` archive.

    Both formats use the keys ``fft`` (packed spectrogram), ``input``
    (optional unnormalized features) and ``target`` (optional token ids).
    """

    sample_path = Path(path)
    if not sample_path.exists():
        raise FileNotFoundError(sample_path)
    suffix = sample_path.suffix.lower()
    if suffix == ".pt":
        payload = torch.load(sample_path, map_location="cpu")
        if not isinstance(payload, dict):
            raise ValueError(f"{sample_path}: expected a dict payload, got {type(payload).__name__}")
        arrays = dict(payload)
    elif suffix == ".npz":
        with np.load(sample_path) as archive:
            arrays = {key: torch.from_numpy(archive[key]) for key in archive.files}
    else:
        raise ValueError(f"Unsupported sample format: {sample_path.suffix} (expected .pt/.npz)")

    if "fft" not in arrays:
        raise ValueError(f"{sample_path}: missing required key 'fft'")
    return build_sample(
        arrays["fft"],
        features=arrays.get("input"),
        target=arrays.get("target"),
        sample_id=sample_path.stem,
    )


def save_sample(sample: SpectralSample, path: str | Path) -> None:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(
        {"fft": sample.spectrogram, "input": sample.features, "target": sample.target},
        output_path,
    )


def validate_sample(sample: SpectralSample) -> None:
    """Fail fast when the sample features or target hold NaN values."""
    if torch.isnan(sample.features).any():
        raise NumericalCorruptionError(f"sample {sample.sample_id!r} features contain NaN values")
    if sample.target.is_floating_point() and torch.isnan(sample.target).any():
        raise NumericalCorruptionError(f"sample {sample.sample_id!r} target contains NaN values")


__all__ = [
    "SpectralSample",
    "build_sample",
    "load_sample",
    "sample_from_wave",
    "save_sample",
    "validate_sample",
]
