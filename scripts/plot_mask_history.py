#!/usr/bin/env python3
"""
Plot the diagnostics of a mask-search run.

Usage:
    python scripts/plot_mask_history.py runs/mask_20260101-000000

Outputs (written into the run directory):
    loss_curves.png     # loss / fidelity / regularization / mask stats per iteration
    final_mask.png      # heatmap of the final mask (bins x frames)
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from noisemask.diagnostics import read_tensor_dump

SCALAR_PANELS = [
    ("loss", "fidelity", "regularization"),
    ("mask_mean", "mask_var"),
    ("mask_grad_mean", "fidelity_grad_mean", "regularization_grad_mean"),
    ("parameter_drift", "criterion_loss"),
]


def load_series(run_dir: Path, name: str) -> np.ndarray | None:
    path = run_dir / f"{name}.txt"
    if not path.exists():
        return None
    return np.loadtxt(path, ndmin=1)


def latest_dump(run_dir: Path, name: str) -> Path | None:
    dumps = sorted(
        run_dir.glob(f"{name}_iter*.txt"),
        key=lambda p: int(p.stem.rsplit("_iter", 1)[1]),
    )
    return dumps[-1] if dumps else None


def plot_curves(run_dir: Path) -> Path:
    fig, axes = plt.subplots(len(SCALAR_PANELS), 1, figsize=(10, 3 * len(SCALAR_PANELS)), sharex=True)
    for ax, names in zip(axes, SCALAR_PANELS):
        for name in names:
            series = load_series(run_dir, name)
            if series is None:
                continue
            ax.plot(np.arange(series.size), series, label=name)
        ax.legend(loc="best", fontsize=8)
        ax.grid(alpha=0.3)
    axes[-1].set_xlabel("iteration")
    plt.suptitle(f"Mask search: {run_dir.name}", fontsize=12)
    plt.tight_layout()
    output = run_dir / "loss_curves.png"
    plt.savefig(output, dpi=150, bbox_inches="tight")
    plt.close()
    return output


def plot_mask(run_dir: Path) -> Path | None:
    dump = latest_dump(run_dir, "mask")
    if dump is None:
        return None
    mask = read_tensor_dump(dump)
    # (2K, T, 1, 1): real and imaginary slots share a value, keep the real rows.
    bins = mask[0::2, :, 0, 0]
    fig, ax = plt.subplots(figsize=(10, 5))
    im = ax.imshow(bins, aspect="auto", origin="lower", cmap="magma")
    ax.set_xlabel("frame")
    ax.set_ylabel("frequency bin")
    ax.set_title(f"Final mask ({dump.name})")
    fig.colorbar(im, ax=ax)
    plt.tight_layout()
    output = run_dir / "final_mask.png"
    plt.savefig(output, dpi=150, bbox_inches="tight")
    plt.close()
    return output


def main() -> None:
    parser = argparse.ArgumentParser(description="Plot mask-search diagnostics.")
    parser.add_argument("run_dir", type=Path, help="Run directory written by search_mask.py.")
    args = parser.parse_args()
    if not args.run_dir.is_dir():
        raise SystemExit(f"Run directory not found: {args.run_dir}")

    print(f"Saved {plot_curves(args.run_dir)}")
    mask_plot = plot_mask(args.run_dir)
    if mask_plot is None:
        print("No mask dump found; skipped heatmap.")
    else:
        print(f"Saved {mask_plot}")


if __name__ == "__main__":
    main()
