from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from .core.exceptions import EinloopError
from .core.executor import ExecutionConfig
from .core.kernel import Kernel


def _load_array(path: Path) -> Any:
    suffix = path.suffix.lower()
    try:
        if suffix == ".npy":
            return np.load(path, allow_pickle=False)
        if suffix == ".npz":
            with np.load(path, allow_pickle=False) as data:
                return data[data.files[0]]
        if suffix == ".json":
            return np.asarray(json.loads(path.read_text(encoding="utf-8")))
        return np.loadtxt(path, ndmin=1)
    except FileNotFoundError as exc:  # pragma: no cover
        raise SystemExit(f"Array file not found: {path}") from exc


def _parse_arrays(specs: List[str]) -> Dict[str, Any]:
    arrays: Dict[str, Any] = {}
    for spec in specs:
        name, sep, value = spec.partition("=")
        if not sep or not name:
            raise SystemExit(f"expected NAME=PATH or NAME=JSON, got {spec!r}")
        path = Path(value)
        if path.exists():
            arrays[name] = _load_array(path)
        else:
            arrays[name] = np.asarray(json.loads(value))
    return arrays


def _write_output(path: Path, tensor: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if str(path).lower().endswith(".npz"):
        np.savez(path, np.asarray(tensor))
    elif str(path).lower().endswith(".json"):
        path.write_text(json.dumps(np.asarray(tensor).tolist(), indent=2), encoding="utf-8")
    else:
        np.save(path, np.asarray(tensor))


def _config(args: argparse.Namespace) -> ExecutionConfig:
    mode = "threads" if args.threads else "sequential"
    return ExecutionConfig(mode=mode, workers=args.workers)


def _run(args: argparse.Namespace) -> None:
    kernel = Kernel(args.expression, config=_config(args))
    result = kernel(**_parse_arrays(args.array))
    if args.out is None:
        np.set_printoptions(suppress=True)
        print(f"# {kernel.output or 'result'}")
        print(np.asarray(result))
        return
    _write_output(args.out, result)


def _explain(args: argparse.Namespace) -> None:
    kernel = Kernel(args.expression, config=_config(args))
    print(kernel.explain())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="einloop command line utilities")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log compiler passes")
    subparsers = parser.add_subparsers(dest="cmd")

    run_parser = subparsers.add_parser("run", help="Evaluate an index-notation expression")
    run_parser.add_argument("expression", help='e.g. "A[i] := B[i,j] * C[j]"')
    run_parser.add_argument(
        "--array",
        action="append",
        default=[],
        metavar="NAME=PATH",
        help="Bind an array from .npy/.npz/.json/text file, or an inline JSON list",
    )
    run_parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Optional output path (.npy/.npz/.json). If omitted, prints the result",
    )

    explain_parser = subparsers.add_parser("explain", help="Print the loop plan of an expression")
    explain_parser.add_argument("expression")

    for sub in (run_parser, explain_parser):
        sub.add_argument("--threads", action="store_true", help="Split the outer loop across workers")
        sub.add_argument("--workers", type=int, default=None, help="Worker count (default: CPU count)")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "run":
            _run(args)
            return
        if args.cmd == "explain":
            _explain(args)
            return
    except EinloopError as exc:
        raise SystemExit(f"error: {exc}") from exc

    parser.print_help()


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
