#!/usr/bin/env python3
"""
Write a synthetic sample and a randomly initialised model checkpoint so that
search_mask.py can be exercised without a trained model.

Usage:
    python scripts/make_demo_inputs.py --outdir demo
    python search_mask.py --checkpoint demo/model.pt --sample demo/sample.pt --iterations 20

Outputs:
    demo/sample.pt   # fft / input / target tensors
    demo/model.pt    # AcousticModel checkpoint (untrained)
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import torch

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from noisemask.data import sample_from_wave, save_sample
from noisemask.models import AcousticModel, AcousticModelConfig, CTCCriterion, save_checkpoint

SR = 16000
TONES_HZ = (440.0, 660.0, 880.0, 1320.0)


def synthesise_wave(duration_s: float, rng: np.random.Generator) -> np.ndarray:
    """Concatenate short tones with light background noise."""
    seg_len = int(SR * duration_s / len(TONES_HZ))
    t = np.arange(seg_len) / SR
    segments = [np.sin(2 * np.pi * freq * t + rng.uniform(0, 2 * np.pi)) for freq in TONES_HZ]
    wave = np.concatenate(segments) * 0.5
    wave += 0.01 * rng.standard_normal(wave.size)
    return wave.astype(np.float32)


def main() -> None:
    parser = argparse.ArgumentParser(description="Create demo inputs for the mask search.")
    parser.add_argument("--outdir", type=Path, default=Path("demo"))
    parser.add_argument("--duration", type=float, default=0.5, help="Waveform length in seconds.")
    parser.add_argument("--n-fft", type=int, default=512)
    parser.add_argument("--hop-length", type=int, default=160)
    parser.add_argument("--num-classes", type=int, default=31)
    parser.add_argument("--seed", type=int, default=123)
    args = parser.parse_args()

    rng = np.random.default_rng(args.seed)
    torch.manual_seed(args.seed)

    wave = synthesise_wave(args.duration, rng)
    target = rng.integers(2, args.num_classes - 3, size=4).tolist()
    sample = sample_from_wave(wave, n_fft=args.n_fft, hop_length=args.hop_length, target=target, sample_id="demo")
    sample_path = args.outdir / "sample.pt"
    save_sample(sample, sample_path)
    print(f"Saved {sample_path}: fft shape={tuple(sample.spectrogram.shape)}")

    config = AcousticModelConfig(num_bins=sample.num_bins, num_classes=args.num_classes)
    model = AcousticModel(config)
    ckpt_path = save_checkpoint(args.outdir / "model.pt", model, CTCCriterion())
    print(f"Saved {ckpt_path}: {sum(p.numel() for p in model.parameters())} params")


if __name__ == "__main__":
    main()
