from __future__ import annotations

import math

import pytest
import torch
from torch import nn

from noisemask.adapter import FrozenModelAdapter
from noisemask.data import SpectralSample, build_sample
from noisemask.diagnostics import MemorySink
from noisemask.errors import NumericalCorruptionError
from noisemask.models import AcousticModel, AcousticModelConfig, CTCCriterion
from noisemask.noise import FixedNoise, GaussianNoise
from noisemask.search import MaskSearch, MaskSearchConfig, SearchState
from noisemask.spectral import to_magnitude, to_time_major


class FramesToClasses(nn.Module):
    """Toy model: the normalized frames are the class scores."""

    def forward(self, frames: torch.Tensor) -> torch.Tensor:
        return frames


def _spectrogram(num_bins: int = 8, num_frames: int = 4, seed: int = 0, dtype=torch.float32) -> torch.Tensor:
    gen = torch.Generator().manual_seed(seed)
    # Offset keeps every magnitude away from zero.
    return (torch.rand(2 * num_bins, num_frames, 1, 1, generator=gen, dtype=torch.float64) + 0.5).to(dtype)


def _noise(shape, seed: int, dtype=torch.float32) -> torch.Tensor:
    gen = torch.Generator().manual_seed(seed)
    return torch.randn(*shape, generator=gen, dtype=torch.float64).to(dtype)


def _small_model(num_bins: int, num_classes: int = 30) -> AcousticModel:
    torch.manual_seed(0)
    return AcousticModel(
        AcousticModelConfig(
            num_bins=num_bins,
            num_classes=num_classes,
            d_model=16,
            num_layers=2,
            kernel_size=3,
            dropout=0.0,
        )
    )


def test_zero_noise_first_iteration_has_zero_fidelity():
    sample = build_sample(_spectrogram())
    assert sample.spectrogram.shape == (16, 4, 1, 1)
    config = MaskSearchConfig(num_iterations=1, token_start=2, token_stop=6, regularization_weight=0.1)
    sink = MemorySink()
    adapter = FrozenModelAdapter(FramesToClasses(), token_range=config.token_range)
    noise = FixedNoise([torch.zeros_like(sample.spectrogram)])

    result = MaskSearch(adapter, sample, config, noise=noise, sink=sink).run()

    record = result.history[0]
    assert record.fidelity == 0.0
    expected_reg = -0.1 * math.log(torch.sum(torch.full((16, 4, 1, 1), 0.1) ** 2).item())
    assert record.regularization == pytest.approx(expected_reg, rel=1e-6)
    assert sink.series("fidelity") == [0.0]

    # With zero noise only the regularization term moves the mask.
    energy = 64 * 0.01
    expected_mask = 0.1 * (1.0 + 1.0 * 0.1 * 2.0 / energy)
    assert torch.allclose(result.mask, torch.full_like(result.mask, expected_mask), rtol=1e-5)


def test_mask_update_matches_full_autograd():
    dtype = torch.float64
    spectrogram = _spectrogram(num_bins=6, num_frames=5, seed=3, dtype=dtype)
    noise = _noise(spectrogram.shape, seed=4, dtype=dtype) * 0.3
    sample = SpectralSample(
        spectrogram=spectrogram,
        features=to_time_major(to_magnitude(spectrogram)),
        target=torch.zeros(0, dtype=torch.long),
    )
    torch.manual_seed(5)
    model = nn.Linear(6, 9).to(dtype)
    config = MaskSearchConfig(
        num_iterations=1,
        learning_rate=1.0,
        regularization_weight=0.05,
        token_start=1,
        token_stop=8,
    )
    adapter = FrozenModelAdapter(model, token_range=config.token_range)
    mask0 = torch.full_like(spectrogram, 0.2) + 0.05 * _noise(spectrogram.shape, seed=6, dtype=dtype)

    result = MaskSearch(
        adapter, sample, config, noise=FixedNoise([noise]), initial_mask=mask0
    ).run()
    manual_grad = mask0 - result.mask

    # Reference: differentiate the whole pipeline with autograd.
    mask = mask0.clone().requires_grad_(True)
    reference = adapter.restrict_and_renormalize(
        adapter.reference_output(
            (sample.features - sample.features.mean()) / sample.features.std(unbiased=False)
        )
    )
    noisy = spectrogram + mask * noise
    magnitude = torch.sqrt(noisy[0::2] ** 2 + noisy[1::2] ** 2)
    time_major = magnitude.transpose(0, 1)
    normalized = (time_major - time_major.mean()) / time_major.std(unbiased=False)
    output = model(normalized[..., 0, 0].unsqueeze(0))[0].transpose(0, 1)
    dist = adapter.restrict_and_renormalize(output)
    loss = torch.sum((reference - dist) ** 2) - 0.05 * torch.log(torch.sum(mask**2))
    loss.backward()

    assert torch.allclose(manual_grad, mask.grad, rtol=1e-6, atol=1e-10)


def test_fixed_noise_runs_are_deterministic():
    sample = build_sample(_spectrogram(seed=7))
    draws = [_noise(sample.spectrogram.shape, seed=10 + i) for i in range(4)]
    config = MaskSearchConfig(num_iterations=4, learning_rate=0.01, token_start=0, token_stop=20)

    trajectories = []
    for _ in range(2):
        sink = MemorySink()
        adapter = FrozenModelAdapter(_small_model(8), CTCCriterion(), token_range=config.token_range)
        result = MaskSearch(adapter, sample, config, noise=FixedNoise(draws), sink=sink).run()
        trajectories.append((result.mask, sink.series("mask_mean"), sink.series("fidelity")))

    assert torch.equal(trajectories[0][0], trajectories[1][0])
    assert trajectories[0][1] == trajectories[1][1]
    assert trajectories[0][2] == trajectories[1][2]


def test_run_keeps_shapes_and_model_frozen():
    sample = build_sample(_spectrogram(seed=11), target=[3, 4])
    config = MaskSearchConfig(num_iterations=3, learning_rate=0.01, max_grad_norm=1.0, seed=0)
    sink = MemorySink()
    adapter = FrozenModelAdapter(_small_model(8), CTCCriterion(), token_range=config.token_range)

    result = MaskSearch(adapter, sample, config, sink=sink).run()

    assert result.mask.shape == sample.spectrogram.shape
    assert sink.last_tensor("noise").shape == sample.spectrogram.shape
    assert sink.last_tensor("noisy_spectrogram").shape == sample.spectrogram.shape
    assert sink.series("parameter_drift") == [0.0, 0.0, 0.0]
    assert adapter.parameter_drift() == 0.0
    assert len(sink.series("criterion_loss")) == 3


def test_each_stream_reports_once_per_iteration():
    sample = build_sample(_spectrogram(seed=12))
    config = MaskSearchConfig(num_iterations=5, learning_rate=0.01, dump_every=2, seed=1)
    sink = MemorySink()
    adapter = FrozenModelAdapter(_small_model(8), token_range=config.token_range)

    MaskSearch(adapter, sample, config, sink=sink).run()

    for name in ("loss", "fidelity", "regularization", "mask_mean", "mask_var", "mask_grad_mean"):
        assert [it for it, _ in sink.scalars[name]] == [0, 1, 2, 3, 4]
    assert [it for it, _ in sink.tensors["noisy_spectrogram"]] == [0, 2, 4]
    assert [it for it, _ in sink.tensors["noise"]] == [4]
    assert [it for it, _ in sink.tensors["mask"]] == [5]
    assert [it for it, _ in sink.tensors["pristine_distribution"]] == [0]


def test_nan_in_sample_features_is_fatal():
    sample = build_sample(_spectrogram())
    sample.features[0, 0, 0, 0] = float("nan")
    adapter = FrozenModelAdapter(FramesToClasses(), token_range=(0, 8))
    search = MaskSearch(adapter, sample, MaskSearchConfig(num_iterations=1))
    with pytest.raises(NumericalCorruptionError, match="features"):
        search.run()


def test_nan_loss_is_fatal():
    class NaNModel(nn.Module):
        def forward(self, frames: torch.Tensor) -> torch.Tensor:
            return frames * float("nan")

    sample = build_sample(_spectrogram())
    adapter = FrozenModelAdapter(NaNModel(), token_range=(0, 8))
    search = MaskSearch(adapter, sample, MaskSearchConfig(num_iterations=3))
    with pytest.raises(NumericalCorruptionError, match="iteration 0"):
        search.run()
    assert search.history == []


def test_state_machine_transitions():
    sample = build_sample(_spectrogram())
    adapter = FrozenModelAdapter(FramesToClasses(), token_range=(0, 8))
    search = MaskSearch(adapter, sample, MaskSearchConfig(num_iterations=2, learning_rate=0.01))

    with pytest.raises(RuntimeError, match="step"):
        search.step()
    search.prepare()
    assert search.state is SearchState.ITERATING
    search.step()
    result = search.run()
    assert search.state is SearchState.TERMINAL
    assert len(result.history) == 2
    with pytest.raises(RuntimeError):
        search.finish()


def test_initial_mask_shape_must_match():
    sample = build_sample(_spectrogram())
    adapter = FrozenModelAdapter(FramesToClasses(), token_range=(0, 8))
    with pytest.raises(ValueError, match="initial mask shape"):
        MaskSearch(adapter, sample, initial_mask=torch.ones(4, 4, 1, 1))


def test_config_validation():
    with pytest.raises(ValueError, match="regularization_weight"):
        MaskSearchConfig(regularization_weight=0.0)
    with pytest.raises(ValueError, match="dump_every"):
        MaskSearchConfig(dump_every=0)
    with pytest.raises(ValueError, match="initial_mask"):
        MaskSearchConfig(initial_mask=0.0)


def test_all_zero_initial_mask_rejected():
    sample = build_sample(_spectrogram())
    adapter = FrozenModelAdapter(FramesToClasses(), token_range=(0, 8))
    with pytest.raises(ValueError, match="non-zero"):
        MaskSearch(adapter, sample, initial_mask=torch.zeros_like(sample.spectrogram))


def test_zero_magnitude_bin_poisons_mask_and_stops_next_iteration():
    spectrogram = _spectrogram()
    spectrogram[2:4, 1] = 0.0
    sample = build_sample(spectrogram)
    config = MaskSearchConfig(num_iterations=3, token_start=0, token_stop=8)
    sink = MemorySink()
    adapter = FrozenModelAdapter(FramesToClasses(), token_range=config.token_range)
    noise = FixedNoise([torch.zeros_like(spectrogram) for _ in range(3)])
    search = MaskSearch(adapter, sample, config, noise=noise, sink=sink)

    with pytest.raises(NumericalCorruptionError, match="iteration 1"):
        search.run()

    # Iteration 0 is finite; its update divides by the zero magnitude.
    assert sink.series("fidelity")[0] == 0.0
    assert torch.isnan(search.mask.value[2:4, 1]).all()
    assert not torch.isnan(search.mask.value[0:2]).any()


def test_gaussian_noise_seed_fixes_draws():
    like = torch.zeros(4, 3, 1, 1)
    first = GaussianNoise(2.0, mean=1.0, seed=5).sample(like.shape, like=like)
    second = GaussianNoise(2.0, mean=1.0, seed=5).sample(like.shape, like=like)
    other = GaussianNoise(2.0, mean=1.0, seed=6).sample(like.shape, like=like)

    assert first.shape == like.shape
    assert torch.equal(first, second)
    assert not torch.equal(first, other)
