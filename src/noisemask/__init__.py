"""Noise-mask search against frozen acoustic models."""

from .adapter import FrozenModelAdapter, ModelEvaluation
from .data import SpectralSample, build_sample, load_sample, sample_from_wave
from .diagnostics import FanoutSink, MemorySink, TextDumpSink
from .errors import NumericalCorruptionError
from .noise import FixedNoise, GaussianNoise
from .normalize import backward_normalize, denormalize, normalize
from .search import MaskSearch, MaskSearchConfig, SearchResult, run_mask_search
from .spectral import expand_magnitude_to_pairs, to_magnitude

__all__ = [
    "FanoutSink",
    "FixedNoise",
    "FrozenModelAdapter",
    "GaussianNoise",
    "MaskSearch",
    "MaskSearchConfig",
    "MemorySink",
    "ModelEvaluation",
    "NumericalCorruptionError",
    "SearchResult",
    "SpectralSample",
    "TextDumpSink",
    "backward_normalize",
    "build_sample",
    "denormalize",
    "expand_magnitude_to_pairs",
    "load_sample",
    "normalize",
    "run_mask_search",
    "sample_from_wave",
    "to_magnitude",
]
