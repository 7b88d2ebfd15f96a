from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import torch

from noisemask.data import build_sample, load_sample, sample_from_wave, save_sample, validate_sample
from noisemask.errors import NumericalCorruptionError


def _fft(num_bins: int = 8, num_frames: int = 4) -> torch.Tensor:
    gen = torch.Generator().manual_seed(0)
    return torch.randn(2 * num_bins, num_frames, generator=gen)


def test_build_sample_derives_time_major_features():
    sample = build_sample(_fft(), target=[1, 2, 3])
    assert sample.spectrogram.shape == (16, 4, 1, 1)
    assert sample.features.shape == (4, 8, 1, 1)
    assert sample.num_bins == 8
    assert sample.num_frames == 4
    real, imag = sample.spectrogram[0, 1, 0, 0], sample.spectrogram[1, 1, 0, 0]
    assert sample.features[1, 0, 0, 0].item() == pytest.approx(torch.hypot(real, imag).item(), rel=1e-6)
    assert sample.target.tolist() == [1, 2, 3]


def test_build_sample_rejects_mismatched_features():
    with pytest.raises(ValueError, match="features must have shape"):
        build_sample(_fft(), features=torch.zeros(8, 4))


def test_build_sample_rejects_batches():
    with pytest.raises(ValueError, match="channel and batch"):
        build_sample(torch.zeros(4, 3, 1, 2))


def test_pt_round_trip(tmp_path: Path) -> None:
    sample = build_sample(_fft(), target=[5, 6])
    path = tmp_path / "utt01.pt"
    save_sample(sample, path)

    loaded = load_sample(path)
    assert loaded.sample_id == "utt01"
    assert torch.equal(loaded.spectrogram, sample.spectrogram)
    assert torch.equal(loaded.features, sample.features)
    assert loaded.target.tolist() == [5, 6]


def test_npz_sample_with_explicit_features(tmp_path: Path) -> None:
    fft = _fft().numpy()
    features = np.ones((4, 8), dtype=np.float32)
    path = tmp_path / "utt02.npz"
    np.savez(path, fft=fft, input=features, target=np.array([7], dtype=np.int64))

    loaded = load_sample(path)
    assert loaded.features.shape == (4, 8, 1, 1)
    assert torch.equal(loaded.features[..., 0, 0], torch.ones(4, 8))


def test_load_sample_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_sample(tmp_path / "missing.pt")

    bad = tmp_path / "bad.npz"
    np.savez(bad, input=np.zeros((2, 2)))
    with pytest.raises(ValueError, match="fft"):
        load_sample(bad)

    other = tmp_path / "sample.wav"
    other.write_bytes(b"RIFF")
    with pytest.raises(ValueError, match="Unsupported"):
        load_sample(other)


def test_sample_from_wave():
    wave = np.sin(np.linspace(0, 60 * np.pi, 512)).astype(np.float32)
    sample = sample_from_wave(wave, n_fft=64, hop_length=32, target=[1])
    assert sample.spectrogram.shape == (66, 17, 1, 1)
    assert sample.features.shape == (17, 33, 1, 1)


def test_validate_sample_flags_nan():
    sample = build_sample(_fft())
    validate_sample(sample)

    sample.target = torch.tensor([1.0, float("nan")])
    with pytest.raises(NumericalCorruptionError, match="target"):
        validate_sample(sample)
