"""Diagnostic sinks receiving per-iteration scalars and tensor snapshots.

Sinks are pure consumers: nothing they do feeds back into the search, and a
sink that fails to write reports the failure instead of raising it.
"""

from __future__ import annotations

import sys
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import torch

Value = Union[float, int, torch.Tensor]


class DiagnosticsSink(Protocol):
    def emit(self, name: str, iteration: int, value: Value) -> None:
        ...

    def close(self) -> None:
        ...


def _is_scalar(value: Value) -> bool:
    return not isinstance(value, torch.Tensor) or value.numel() == 1 and value.dim() == 0


def _to_numpy(value: torch.Tensor) -> np.ndarray:
    return value.detach().to("cpu", dtype=torch.float64).numpy()


class MemorySink:
    """Keep every emission in memory, keyed by stream name."""

    def __init__(self) -> None:
        self.scalars: Dict[str, List[Tuple[int, float]]] = defaultdict(list)
        self.tensors: Dict[str, List[Tuple[int, torch.Tensor]]] = defaultdict(list)

    def emit(self, name: str, iteration: int, value: Value) -> None:
        if _is_scalar(value):
            self.scalars[name].append((iteration, float(value)))
        else:
            self.tensors[name].append((iteration, value.detach().to("cpu").clone()))

    def series(self, name: str) -> List[float]:
        return [value for _, value in self.scalars.get(name, [])]

    def last_tensor(self, name: str) -> Optional[torch.Tensor]:
        entries = self.tensors.get(name)
        return entries[-1][1] if entries else None

    def close(self) -> None:
        pass


class TextDumpSink:
    """Write human-readable dumps under ``outdir``.

    Scalar streams append one line per iteration to ``<name>.txt``. Tensors
    are written to ``<name>_iter<iteration>.txt`` with a one-line header
    followed by the values flattened to ``(shape[0], -1)`` rows.
    """

    def __init__(self, outdir: str | Path):
        self.outdir = Path(outdir)
        self.failures = 0
        self._started: set[str] = set()
        try:
            self.outdir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._report(f"cannot create {self.outdir}", exc)

    def _report(self, what: str, exc: Exception) -> None:
        self.failures += 1
        print(f"[warn] diagnostics: {what}: {exc}", file=sys.stderr)

    def emit(self, name: str, iteration: int, value: Value) -> None:
        if _is_scalar(value):
            self._append_scalar(name, float(value))
        else:
            self._write_tensor(name, iteration, value)

    def _append_scalar(self, name: str, value: float) -> None:
        path = self.outdir / f"{name}.txt"
        mode = "a" if name in self._started else "w"
        try:
            with path.open(mode, encoding="utf-8") as f:
                f.write(f"{value!r}\n")
        except OSError as exc:
            self._report(f"cannot write {path}", exc)
            return
        self._started.add(name)

    def _write_tensor(self, name: str, iteration: int, value: torch.Tensor) -> None:
        path = self.outdir / f"{name}_iter{iteration}.txt"
        array = _to_numpy(value)
        rows = array.reshape(array.shape[0], -1) if array.ndim > 0 else array.reshape(1, 1)
        shape = "x".join(str(dim) for dim in array.shape)
        try:
            np.savetxt(path, rows, fmt="%.9g", header=f"{name} iteration={iteration} shape={shape}")
        except OSError as exc:
            self._report(f"cannot write {path}", exc)

    def close(self) -> None:
        pass


def read_tensor_dump(path: str | Path) -> np.ndarray:
    """Load a tensor written by :class:`TextDumpSink` with its original shape."""
    dump_path = Path(path)
    with dump_path.open("r", encoding="utf-8") as f:
        header = f.readline()
    shape_field = [token for token in header.split() if token.startswith("shape=")]
    if not shape_field:
        raise ValueError(f"{dump_path}: missing shape header")
    shape = tuple(int(dim) for dim in shape_field[0][len("shape="):].split("x") if dim)
    return np.loadtxt(dump_path, ndmin=2).reshape(shape)


class FanoutSink:
    """Forward every emission to several sinks."""

    def __init__(self, sinks: Sequence[DiagnosticsSink]):
        self.sinks = list(sinks)

    def emit(self, name: str, iteration: int, value: Value) -> None:
        for sink in self.sinks:
            sink.emit(name, iteration, value)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


__all__ = [
    "DiagnosticsSink",
    "FanoutSink",
    "MemorySink",
    "TextDumpSink",
    "read_tensor_dump",
]
