"""Entry point: search a noise mask for one sample against a pretrained model."""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Sequence

import torch

from noisemask.adapter import FrozenModelAdapter
from noisemask.data import load_sample
from noisemask.diagnostics import TextDumpSink
from noisemask.errors import NumericalCorruptionError
from noisemask.models import load_checkpoint
from noisemask.search import MaskSearch, MaskSearchConfig


def _parse_yaml_scalar(raw: str) -> Any:
    text = raw.strip()
    if text == "":
        return ""
    lowered = text.lower()
    if lowered in {"null", "none", "~"}:
        return None
    if lowered in {"true", "yes", "on"}:
        return True
    if lowered in {"false", "no", "off"}:
        return False
    try:
        if any(ch in text for ch in (".", "e", "E")):
            return float(text)
        return int(text)
    except ValueError:
        pass
    if (text.startswith('"') and text.endswith('"')) or (text.startswith("'") and text.endswith("'")):
        return text[1:-1]
    return text


def _load_simple_yaml(path: Path) -> dict[str, Any]:
    """Load flat ``key: value`` YAML with ``#`` comments and scalar values."""

    data: dict[str, Any] = {}
    with path.open("r", encoding="utf-8") as f:
        for line_no, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if ":" not in line:
                raise ValueError(f"Invalid YAML at {path}:{line_no}: expected 'key: value'")
            key_raw, value_raw = line.split(":", 1)
            key = key_raw.strip()
            if not key:
                raise ValueError(f"Invalid YAML at {path}:{line_no}: empty key")
            value_part = value_raw.strip()
            if value_part and not (value_part.startswith('"') or value_part.startswith("'")):
                value_part = value_part.split("#", 1)[0].strip()
            data[key] = _parse_yaml_scalar(value_part)
    return data


def _load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    suffix = path.suffix.lower()
    if suffix == ".json":
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
        if not isinstance(payload, dict):
            raise ValueError("JSON config must be an object at top-level")
        return payload
    if suffix in {".yaml", ".yml"}:
        return _load_simple_yaml(path)
    raise ValueError(f"Unsupported config format: {path.suffix} (expected .yaml/.yml/.json)")


def _apply_config_defaults(parser: argparse.ArgumentParser, config: dict[str, Any]) -> None:
    normalised: dict[str, Any] = {str(k).replace("-", "_"): v for k, v in config.items()}

    valid_dests = {action.dest for action in parser._actions if action.dest != "help"}  # noqa: SLF001
    unknown = sorted(k for k in normalised if k not in valid_dests)
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}")

    defaults: dict[str, Any] = {}
    for action in parser._actions:  # noqa: SLF001
        dest = action.dest
        if dest == "help" or dest not in normalised:
            continue
        value = normalised[dest]

        if value is None:
            converted = None
        elif isinstance(action, argparse.BooleanOptionalAction):
            if isinstance(value, bool):
                converted = value
            elif isinstance(value, str):
                converted = _parse_yaml_scalar(value)
                if not isinstance(converted, bool):
                    raise ValueError(f"Config key '{dest}' must be boolean")
            else:
                raise ValueError(f"Config key '{dest}' must be boolean")
        elif action.type is Path:
            converted = Path(str(value))
        elif action.type is int:
            converted = int(value)
        elif action.type is float:
            converted = float(value)
        elif action.type is str:
            converted = str(value)
        else:
            converted = value

        if getattr(action, "choices", None) is not None and converted is not None:
            if converted not in action.choices:
                raise ValueError(
                    f"Invalid value for config key '{dest}': {converted!r} (choices={list(action.choices)!r})"
                )

        defaults[dest] = converted

    parser.set_defaults(**defaults)


# Training flags stored in a checkpoint that also configure the search. Only
# gradient clipping carries over; the stored `lr` drove the model optimizer
# and must never reach the mask step size.
CHECKPOINT_FLAG_OPTIONS = {
    "maxgradnorm": "max_grad_norm",
    "max_grad_norm": "max_grad_norm",
}


def checkpoint_defaults(flags: Dict[str, Any]) -> Dict[str, Any]:
    return {dest: flags[key] for key, dest in CHECKPOINT_FLAG_OPTIONS.items() if key in flags}


def _build_parser() -> argparse.ArgumentParser:
    defaults = MaskSearchConfig()
    parser = argparse.ArgumentParser(description="Search a per-bin noise mask against a frozen model.")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML/JSON config file. CLI args override values from this file.",
    )
    parser.add_argument("--checkpoint", type=Path, default=None, help="Pretrained model checkpoint (.pt).")
    parser.add_argument("--sample", type=Path, default=None, help="Sample file (.pt/.npz) with fft/input/target.")
    parser.add_argument(
        "--outdir",
        type=Path,
        default=None,
        help="Output directory for diagnostics (defaults to runs/mask_<timestamp>).",
    )
    parser.add_argument("--iterations", type=int, default=defaults.num_iterations, help="Number of mask updates.")
    parser.add_argument(
        "--mask-lr",
        type=float,
        default=defaults.learning_rate,
        help="Mask learning rate (independent of the model's training lr).",
    )
    parser.add_argument(
        "--reg-weight",
        type=float,
        default=defaults.regularization_weight,
        help="Weight lambda of the -log||mask||^2 term.",
    )
    parser.add_argument("--initial-mask", type=float, default=defaults.initial_mask, help="Initial mask value.")
    parser.add_argument("--token-start", type=int, default=defaults.token_start, help="First kept token class.")
    parser.add_argument(
        "--token-stop",
        type=int,
        default=defaults.token_stop,
        help="One past the last kept token class.",
    )
    parser.add_argument("--noise-mean", type=float, default=defaults.noise_mean, help="Noise mean.")
    parser.add_argument(
        "--noise-scale",
        type=float,
        default=defaults.noise_scale,
        help="Noise standard deviation (defaults to the sample spectrogram's stdev).",
    )
    parser.add_argument(
        "--max-grad-norm",
        type=float,
        default=defaults.max_grad_norm,
        help="Clip model gradient norm when > 0 (model is never updated).",
    )
    parser.add_argument(
        "--clamp-criterion",
        action=argparse.BooleanOptionalAction,
        default=defaults.clamp_criterion,
        help="Include criterion parameters in gradient clipping.",
    )
    parser.add_argument(
        "--dump-every",
        type=int,
        default=defaults.dump_every,
        help="Dump the noisy spectrogram every N iterations.",
    )
    parser.add_argument("--log-every", type=int, default=defaults.log_every, help="Print every N iterations.")
    parser.add_argument("--seed", type=int, default=defaults.seed, help="Seed for reproducibility.")
    parser.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Show a progress bar instead of per-iteration lines.",
    )
    parser.add_argument(
        "--device",
        type=str,
        default="cuda" if torch.cuda.is_available() else "cpu",
        help="Device to run the search on.",
    )
    return parser


def parse_args(
    argv: Sequence[str] | None = None,
    *,
    checkpoint_flags: Dict[str, Any] | None = None,
) -> argparse.Namespace:
    """Parse CLI args layered over config-file and checkpoint defaults.

    Precedence: CLI > config file > flags stored in the checkpoint > built-ins.
    Only the checkpoint flags listed in ``CHECKPOINT_FLAG_OPTIONS`` are used.
    """

    config_parser = argparse.ArgumentParser(add_help=False)
    config_parser.add_argument("--config", type=Path, default=None)
    known, _ = config_parser.parse_known_args(argv)

    parser = _build_parser()
    if checkpoint_flags:
        try:
            _apply_config_defaults(parser, checkpoint_defaults(checkpoint_flags))
        except ValueError as exc:
            raise SystemExit(f"Invalid flags stored in checkpoint: {exc}") from exc
    if known.config is not None:
        try:
            cfg = _load_config_file(known.config)
            _apply_config_defaults(parser, cfg)
        except Exception as exc:
            raise SystemExit(f"Failed to load config '{known.config}': {exc}") from exc

    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> MaskSearchConfig:
    return MaskSearchConfig(
        num_iterations=args.iterations,
        learning_rate=args.mask_lr,
        regularization_weight=args.reg_weight,
        initial_mask=args.initial_mask,
        token_start=args.token_start,
        token_stop=args.token_stop,
        noise_mean=args.noise_mean,
        noise_scale=args.noise_scale,
        max_grad_norm=args.max_grad_norm,
        clamp_criterion=args.clamp_criterion,
        dump_every=args.dump_every,
        log_every=args.log_every,
        seed=args.seed,
    )


def resolve_outdir(base: Path | None) -> Path:
    if base is not None:
        return base
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return Path("runs") / f"mask_{timestamp}"


def get_git_commit() -> str | None:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout.strip()
    except (OSError, subprocess.CalledProcessError):
        return None


def main(argv: Sequence[str] | None = None) -> None:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--checkpoint", type=Path, default=None)
    pre_parser.add_argument("--device", type=str, default="cuda" if torch.cuda.is_available() else "cpu")
    pre, _ = pre_parser.parse_known_args(argv)
    bundle = None
    if pre.checkpoint is not None:
        if not pre.checkpoint.exists():
            raise SystemExit(f"Checkpoint not found: {pre.checkpoint}")
        print(f"[model] reading pre-trained model from {pre.checkpoint}")
        bundle = load_checkpoint(pre.checkpoint, device=pre.device)

    args = parse_args(argv, checkpoint_flags=bundle.flags if bundle else None)
    if args.checkpoint is None:
        raise SystemExit("--checkpoint is required (directly or via --config)")
    if bundle is None or args.checkpoint != pre.checkpoint or args.device != pre.device:
        if not args.checkpoint.exists():
            raise SystemExit(f"Checkpoint not found: {args.checkpoint}")
        bundle = load_checkpoint(args.checkpoint, device=args.device)
    if args.sample is None or not args.sample.exists():
        raise SystemExit(f"Sample not found: {args.sample}")

    torch.manual_seed(args.seed)
    num_params = sum(p.numel() for p in bundle.model.parameters())
    print(f"[model] {bundle.model.__class__.__name__} config={bundle.config.to_dict()}")
    print(f"[model] number of params is {num_params}")
    print(f"[criterion] {bundle.criterion}")

    sample = load_sample(args.sample).to(args.device)
    try:
        config = config_from_args(args)
    except ValueError as exc:
        raise SystemExit(f"Invalid search options: {exc}") from exc
    outdir = resolve_outdir(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    print(f"[run] experiment path: {outdir}")

    adapter = FrozenModelAdapter(bundle.model, bundle.criterion, token_range=config.token_range)
    search = MaskSearch(adapter, sample, config, sink=TextDumpSink(outdir), progress=args.progress)
    try:
        result = search.run()
    except NumericalCorruptionError as exc:
        raise SystemExit(f"Numerical corruption: {exc}") from exc

    metrics: Dict[str, object] = {
        "sample": str(args.sample),
        "checkpoint": str(args.checkpoint),
        "search_config": config.to_dict(),
        "config_file": str(args.config) if args.config else None,
        "cli_argv": sys.argv,
        "git_commit": get_git_commit(),
    }
    metrics.update(result.summary())
    metrics_path = outdir / "metrics.json"
    with metrics_path.open("w", encoding="utf-8") as f:
        json.dump(metrics, f, ensure_ascii=False, indent=2)

    print(f"[run] final loss={metrics['final_loss']} mask_mean={metrics['mask_mean']:.4g}")
    print(f"Wrote diagnostics to {outdir}")
    print(f"Wrote metrics to {metrics_path}")


if __name__ == "__main__":
    main()
