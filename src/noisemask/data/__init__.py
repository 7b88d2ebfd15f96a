"""Sample utilities for the mask search."""

from .sample import (
    SpectralSample,
    build_sample,
    load_sample,
    sample_from_wave,
    save_sample,
    validate_sample,
)

__all__ = [
    "SpectralSample",
    "build_sample",
    "load_sample",
    "sample_from_wave",
    "save_sample",
    "validate_sample",
]
