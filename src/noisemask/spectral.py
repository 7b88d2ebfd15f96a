"""Packed complex spectrogram helpers.

The packed layout interleaves real and imaginary parts along the first axis:
row ``2k`` holds the real part of bin ``k`` and row ``2k + 1`` its imaginary
part. Tensors carry four axes ``(2K, T, C, B)``.
"""

from __future__ import annotations

import torch


def _check_packed(spectrogram: torch.Tensor) -> None:
    if spectrogram.dim() != 4:
        raise ValueError(
            f"packed spectrogram must have 4 axes (2K, T, C, B), got shape={tuple(spectrogram.shape)}"
        )
    if spectrogram.size(0) % 2 != 0:
        raise ValueError(f"packed axis must be even, got {spectrogram.size(0)}")


def to_magnitude(spectrogram: torch.Tensor) -> torch.Tensor:
    """Return ``sqrt(real**2 + imag**2)`` per bin pair, shape ``(K, T, C, B)``."""
    _check_packed(spectrogram)
    real = spectrogram[0::2]
    imag = spectrogram[1::2]
    return torch.sqrt(real * real + imag * imag)


def expand_magnitude_to_pairs(magnitude: torch.Tensor) -> torch.Tensor:
    """Copy each magnitude onto both slots of its pair, shape ``(2K, T, C, B)``."""
    return magnitude.repeat_interleave(2, dim=0)


def to_time_major(tensor: torch.Tensor) -> torch.Tensor:
    """``(K, T, C, B)`` -> ``(T, K, C, B)``."""
    return tensor.transpose(0, 1).contiguous()


def to_channel_major(tensor: torch.Tensor) -> torch.Tensor:
    """``(T, K, C, B)`` -> ``(K, T, C, B)``."""
    return tensor.transpose(0, 1).contiguous()


def backward_magnitude(
    grad_magnitude: torch.Tensor,
    spectrogram: torch.Tensor,
    mask: torch.Tensor,
    noise: torch.Tensor,
    expanded_magnitude: torch.Tensor,
) -> torch.Tensor:
    """Gradient of a scalar loss with respect to the mask.

    The noisy input is ``raw = spectrogram + mask * noise`` and the magnitude
    of a pair is ``sqrt(re**2 + im**2)``, so for every packed slot

        d/d mask = d/d magnitude * (noise**2 * mask + noise * spectrogram) / magnitude

    with the pair's magnitude gradient shared by its real and imaginary slot.
    Zero magnitudes divide by zero and are left unguarded.

    Parameters
    ----------
    grad_magnitude:
        Loss gradient with respect to the magnitude, channel-major ``(K, T, C, B)``.
    spectrogram, mask, noise:
        Packed ``(2K, T, C, B)`` tensors used to build the noisy input.
    expanded_magnitude:
        Output of :func:`expand_magnitude_to_pairs` for the noisy input.
    """

    if not (spectrogram.shape == mask.shape == noise.shape == expanded_magnitude.shape):
        raise ValueError(
            "spectrogram, mask, noise and expanded magnitude must share a shape, got "
            f"{tuple(spectrogram.shape)}, {tuple(mask.shape)}, {tuple(noise.shape)}, "
            f"{tuple(expanded_magnitude.shape)}"
        )
    local = (noise * noise * mask + noise * spectrogram) / expanded_magnitude
    return expand_magnitude_to_pairs(grad_magnitude) * local


def pack_complex(stft: torch.Tensor) -> torch.Tensor:
    """Pack a complex ``(K, T)`` STFT into the ``(2K, T, 1, 1)`` layout."""
    if not torch.is_complex(stft) or stft.dim() != 2:
        raise ValueError(f"expected a complex (K, T) tensor, got dtype={stft.dtype} shape={tuple(stft.shape)}")
    num_bins, num_frames = stft.shape
    packed = torch.stack([stft.real, stft.imag], dim=1).reshape(2 * num_bins, num_frames)
    return packed.unsqueeze(-1).unsqueeze(-1).contiguous()


def unpack_complex(spectrogram: torch.Tensor) -> torch.Tensor:
    """Inverse of :func:`pack_complex` for singleton channel and batch."""
    _check_packed(spectrogram)
    if spectrogram.size(2) != 1 or spectrogram.size(3) != 1:
        raise ValueError(f"channel and batch must be 1, got shape={tuple(spectrogram.shape)}")
    flat = spectrogram[..., 0, 0]
    return torch.complex(flat[0::2].contiguous(), flat[1::2].contiguous())


def spectrogram_from_wave(
    wave: torch.Tensor,
    n_fft: int = 512,
    hop_length: int | None = None,
) -> torch.Tensor:
    """Featurize a mono waveform into a packed spectrogram with a Hann window."""
    if wave.dim() != 1:
        raise ValueError(f"expected a mono waveform of shape (time,), got {tuple(wave.shape)}")
    hop_length = hop_length or n_fft // 4
    window = torch.hann_window(n_fft, device=wave.device, dtype=wave.dtype)
    stft = torch.stft(
        wave,
        n_fft=n_fft,
        hop_length=hop_length,
        win_length=n_fft,
        window=window,
        center=True,
        pad_mode="reflect",
        return_complex=True,
    )
    return pack_complex(stft)


__all__ = [
    "backward_magnitude",
    "expand_magnitude_to_pairs",
    "pack_complex",
    "spectrogram_from_wave",
    "to_channel_major",
    "to_magnitude",
    "to_time_major",
    "unpack_complex",
]
