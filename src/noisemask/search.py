"""Noise-mask search against a frozen acoustic model.

The mask scales Gaussian noise injected into a packed complex spectrogram.
Every iteration draws fresh noise, runs the frozen model on the normalized
magnitude of the noisy input, and moves the mask along

    d/d mask [ ||p_ref - p||^2 - lambda * log ||mask||^2 ]

where ``p`` is the restricted-subset distribution of the model output. The
model supplies d(fidelity)/d(normalized input); the rest of the chain
(normalization, magnitude, noise injection) is applied in closed form
because the mask is not a model parameter.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import torch
from tqdm import tqdm

from .adapter import FrozenModelAdapter
from .data import SpectralSample, validate_sample
from .diagnostics import DiagnosticsSink, MemorySink
from .errors import NumericalCorruptionError
from .losses import (
    fidelity_loss,
    log_energy_regularization,
    log_energy_regularization_grad,
    mask_energy,
)
from .noise import GaussianNoise, NoiseSource
from .normalize import backward_normalize, normalize
from .spectral import (
    backward_magnitude,
    expand_magnitude_to_pairs,
    to_channel_major,
    to_magnitude,
    to_time_major,
)


@dataclass
class MaskSearchConfig:
    num_iterations: int = 10
    learning_rate: float = 1.0
    regularization_weight: float = 0.1
    initial_mask: float = 0.1
    token_start: int = 2
    token_stop: int = 28
    noise_mean: float = 0.0
    # None: use the pristine spectrogram's standard deviation.
    noise_scale: Optional[float] = None
    max_grad_norm: float = 0.0
    clamp_criterion: bool = True
    dump_every: int = 1000
    log_every: int = 1
    seed: int = 123

    def __post_init__(self) -> None:
        if self.num_iterations < 0:
            raise ValueError(f"num_iterations must be >= 0, got {self.num_iterations}")
        if self.regularization_weight <= 0:
            raise ValueError(
                f"regularization_weight must be positive, got {self.regularization_weight}"
            )
        if self.dump_every <= 0:
            raise ValueError(f"dump_every must be positive, got {self.dump_every}")
        if self.initial_mask == 0:
            raise ValueError("initial_mask must be non-zero: log ||mask||^2 is undefined at zero")

    @property
    def token_range(self) -> tuple[int, int]:
        return (self.token_start, self.token_stop)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class GradientDescent:
    """Plain ``value -= lr * grad`` update, no projection."""

    def __init__(self, lr: float):
        self.lr = lr

    def step(self, value: torch.Tensor, grad: torch.Tensor) -> None:
        value.sub_(self.lr * grad)


class ExternalParameter:
    """A tensor optimized outside any module's parameter set."""

    def __init__(self, value: torch.Tensor, rule: GradientDescent):
        self.value = value
        self.rule = rule

    def apply(self, grad: torch.Tensor) -> None:
        if grad.shape != self.value.shape:
            raise ValueError(
                f"gradient shape {tuple(grad.shape)} does not match parameter shape {tuple(self.value.shape)}"
            )
        with torch.no_grad():
            self.rule.step(self.value, grad)


class SearchState(enum.Enum):
    INIT = "init"
    ITERATING = "iterating"
    TERMINAL = "terminal"


@dataclass
class IterationRecord:
    iteration: int
    loss: float
    fidelity: float
    regularization: float
    mask_mean: float
    mask_var: float
    grad_mean: float
    grad_var: float
    parameter_drift: float
    criterion_loss: Optional[float] = None


@dataclass
class SearchResult:
    mask: torch.Tensor
    history: List[IterationRecord] = field(default_factory=list)
    reference_distribution: Optional[torch.Tensor] = None

    def summary(self) -> Dict[str, Any]:
        last = self.history[-1] if self.history else None
        return {
            "iterations": len(self.history),
            "final_loss": last.loss if last else None,
            "final_fidelity": last.fidelity if last else None,
            "final_regularization": last.regularization if last else None,
            "mask_mean": float(self.mask.mean()),
            "mask_var": float(self.mask.var()),
            "mask_energy": mask_energy(self.mask),
            "max_parameter_drift": max((r.parameter_drift for r in self.history), default=0.0),
        }


class MaskSearch:
    """Iteratively refine one noise mask for one fixed sample.

    ``prepare`` fixes the reference distribution (``INIT -> ITERATING``),
    ``step`` runs one iteration, and ``finish`` persists the mask
    (``-> TERMINAL``). ``run`` chains them for ``num_iterations`` steps.
    """

    def __init__(
        self,
        adapter: FrozenModelAdapter,
        sample: SpectralSample,
        config: Optional[MaskSearchConfig] = None,
        *,
        noise: Optional[NoiseSource] = None,
        sink: Optional[DiagnosticsSink] = None,
        initial_mask: Optional[torch.Tensor] = None,
        progress: bool = False,
    ):
        self.adapter = adapter
        self.sample = sample
        self.config = config or MaskSearchConfig()
        self.sink = sink if sink is not None else MemorySink()
        self.progress = progress
        self.state = SearchState.INIT
        self.iteration = 0
        self.history: List[IterationRecord] = []
        self.reference_distribution: Optional[torch.Tensor] = None

        spectrogram = sample.spectrogram
        if initial_mask is None:
            mask = torch.full_like(spectrogram, self.config.initial_mask)
        else:
            if initial_mask.shape != spectrogram.shape:
                raise ValueError(
                    f"initial mask shape {tuple(initial_mask.shape)} does not match "
                    f"spectrogram shape {tuple(spectrogram.shape)}"
                )
            mask = initial_mask.detach().clone().to(spectrogram)
            if not torch.any(mask != 0):
                raise ValueError("initial mask must have a non-zero entry")
        self.mask = ExternalParameter(mask, GradientDescent(self.config.learning_rate))

        self.pristine_std = float(spectrogram.std(unbiased=False))
        if noise is None:
            scale = self.config.noise_scale
            noise = GaussianNoise(
                std=self.pristine_std if scale is None else scale,
                mean=self.config.noise_mean,
                seed=self.config.seed,
            )
        self.noise = noise

    # ------------------------------------------------------------------
    def prepare(self) -> torch.Tensor:
        """Validate the sample and fix the reference distribution."""
        if self.state is not SearchState.INIT:
            raise RuntimeError(f"prepare() called in state {self.state.value}")
        validate_sample(self.sample)

        spectrogram = self.sample.spectrogram
        print(
            f"[search] sample={self.sample.sample_id} fft shape={tuple(spectrogram.shape)} "
            f"input shape={tuple(self.sample.features.shape)}"
        )
        print(f"[search] fft mean={float(spectrogram.mean()):.4g} stdev={self.pristine_std:.4g}")

        pristine = normalize(self.sample.features)
        reference_output = self.adapter.reference_output(pristine.values)
        self.reference_distribution = self.adapter.restrict_and_renormalize(reference_output).detach()

        self.sink.emit("pristine_spectrogram", 0, spectrogram)
        self.sink.emit("pristine_output", 0, reference_output)
        self.sink.emit("pristine_distribution", 0, self.reference_distribution)
        self.state = SearchState.ITERATING
        return self.reference_distribution

    def step(self) -> IterationRecord:
        if self.state is not SearchState.ITERATING:
            raise RuntimeError(f"step() called in state {self.state.value}")
        cfg = self.config
        i = self.iteration
        last = i == cfg.num_iterations - 1
        spectrogram = self.sample.spectrogram
        mask = self.mask.value

        noise = self.noise.sample(spectrogram.shape, like=spectrogram)
        if noise.shape != spectrogram.shape:
            raise ValueError(
                f"noise shape {tuple(noise.shape)} does not match spectrogram shape {tuple(spectrogram.shape)}"
            )
        noisy = spectrogram + mask * noise

        magnitude = to_magnitude(noisy)
        expanded = expand_magnitude_to_pairs(magnitude)
        time_major = to_time_major(magnitude)
        normalized = normalize(time_major)

        evaluation = self.adapter.current_output(normalized.values)
        distribution = self.adapter.restrict_and_renormalize(evaluation.output)

        fidelity = fidelity_loss(self.reference_distribution, distribution)
        regularization = log_energy_regularization(mask, cfg.regularization_weight)
        fidelity_value = float(fidelity.detach())
        total = fidelity_value + regularization
        mask_mean = float(mask.mean())
        mask_var = float(mask.var())

        self.sink.emit("loss", i, total)
        self.sink.emit("fidelity", i, fidelity_value)
        self.sink.emit("regularization", i, regularization)
        self.sink.emit("log_mask_energy", i, -regularization / cfg.regularization_weight)
        self.sink.emit("mask_mean", i, mask_mean)
        self.sink.emit("mask_var", i, mask_var)
        if i % cfg.dump_every == 0:
            self.sink.emit("noisy_spectrogram", i, noisy)

        if torch.isnan(fidelity.detach()).any():
            raise NumericalCorruptionError(f"loss has NaN values at iteration {i}")

        # Model parameters receive gradients but are never stepped.
        self.adapter.zero_grad()
        fidelity.backward()
        if cfg.max_grad_norm > 0:
            self.adapter.clip_gradients(cfg.max_grad_norm, include_criterion=cfg.clamp_criterion)

        grad_input = evaluation.inputs.grad
        grad_time_major = backward_normalize(
            grad_input, time_major, normalized.mean, normalized.stdev
        )
        fidelity_grad = backward_magnitude(
            to_channel_major(grad_time_major), spectrogram, mask, noise, expanded
        )
        regularization_grad = log_energy_regularization_grad(mask, cfg.regularization_weight)
        combined = fidelity_grad + regularization_grad

        drift = self.adapter.parameter_drift()
        criterion_loss = self.adapter.criterion_loss(evaluation.logits, self.sample.target)
        record = IterationRecord(
            iteration=i,
            loss=total,
            fidelity=fidelity_value,
            regularization=regularization,
            mask_mean=mask_mean,
            mask_var=mask_var,
            grad_mean=float(combined.mean()),
            grad_var=float(combined.var()),
            parameter_drift=drift,
            criterion_loss=criterion_loss,
        )
        self.sink.emit("fidelity_grad_mean", i, float(fidelity_grad.mean()))
        self.sink.emit("fidelity_grad_var", i, float(fidelity_grad.var()))
        self.sink.emit("regularization_grad_mean", i, float(regularization_grad.mean()))
        self.sink.emit("regularization_grad_var", i, float(regularization_grad.var()))
        self.sink.emit("mask_grad_mean", i, record.grad_mean)
        self.sink.emit("mask_grad_var", i, record.grad_var)
        self.sink.emit("parameter_drift", i, drift)
        if criterion_loss is not None:
            self.sink.emit("criterion_loss", i, criterion_loss)
        if last:
            self.sink.emit("noise", i, noise)
            self.sink.emit("current_output", i, evaluation.output.detach())
            self.sink.emit("current_distribution", i, distribution.detach())
            self.sink.emit("output_grad", i, evaluation.output.grad)

        self.mask.apply(combined)

        self.history.append(record)
        self.iteration += 1
        return record

    def finish(self) -> SearchResult:
        if self.state is SearchState.TERMINAL:
            raise RuntimeError("finish() called twice")
        self.sink.emit("mask", self.iteration, self.mask.value)
        self.sink.close()
        self.state = SearchState.TERMINAL
        return SearchResult(
            mask=self.mask.value.detach().clone(),
            history=list(self.history),
            reference_distribution=self.reference_distribution,
        )

    def run(self) -> SearchResult:
        if self.state is SearchState.INIT:
            self.prepare()
        steps = range(self.iteration, self.config.num_iterations)
        iterator = tqdm(steps, desc="mask search", leave=False) if self.progress else steps
        for i in iterator:
            record = self.step()
            if self.progress:
                iterator.set_postfix(loss=f"{record.loss:.4g}", fidelity=f"{record.fidelity:.3g}")
            elif self.config.log_every > 0 and i % self.config.log_every == 0:
                print(
                    f"[iter {i}] loss={record.loss:.6g} fidelity={record.fidelity:.6g} "
                    f"reg={record.regularization:.6g} mask_mean={record.mask_mean:.4g} "
                    f"mask_var={record.mask_var:.4g} drift={record.parameter_drift:.3g}"
                )
        return self.finish()


def run_mask_search(
    adapter: FrozenModelAdapter,
    sample: SpectralSample,
    config: Optional[MaskSearchConfig] = None,
    **kwargs: Any,
) -> SearchResult:
    return MaskSearch(adapter, sample, config, **kwargs).run()


__all__ = [
    "ExternalParameter",
    "GradientDescent",
    "IterationRecord",
    "MaskSearch",
    "MaskSearchConfig",
    "SearchResult",
    "SearchState",
    "run_mask_search",
]
