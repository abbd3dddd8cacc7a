#!/usr/bin/env python3
"""Command-line interface for the NCS control flow analyser."""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from ncsdisasm import ActionTable, ListingRenderer, NCSFile, ScriptParseError


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("input", type=Path, help="Compiled script (.ncs) to analyse")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Override the default <input>.cfg.txt output path",
    )
    parser.add_argument(
        "--actions",
        type=Path,
        default=Path("knowledge/actions.json"),
        help="JSON table describing the engine functions called through ACTION",
    )
    parser.add_argument(
        "--analyze-stack",
        action="store_true",
        help="Run the symbolic stack analysis and include its results",
    )
    parser.add_argument(
        "--hide-dead-edges",
        action="store_true",
        help="Do not list edges that can never be taken",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Verbosity of diagnostic messages",
    )
    return parser.parse_args()


def main() -> None:
    start_time = time.perf_counter()
    args = parse_args()
    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

    if not args.input.exists():
        raise SystemExit(f"missing input file: {args.input}")

    try:
        ncs = NCSFile.load(args.input)
    except ScriptParseError as exc:
        raise SystemExit(f"failed to parse {args.input}: {exc}") from None

    if args.analyze_stack:
        analysis = ncs.analyze_stack(ActionTable.load(args.actions))
        if not analysis.success:
            print(f"stack analysis failed: {analysis.error}")

    output_path = args.output or args.input.with_suffix(".cfg.txt")
    ListingRenderer(show_dead_edges=not args.hide_dead_edges).write(ncs, output_path)
    print(f"listing written to {output_path}")

    total_time = time.perf_counter() - start_time
    print(f"total execution time: {total_time:.2f}s")


if __name__ == "__main__":
    main()
