"""Command line entry point: optimize a stack machine code file."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from smopt.codegen import write_code
from smopt.common import Ctx, DataGraphOptimFlags, FlowOptimFlags, ParseError, parse_inst
from smopt.dot import function_graph
from smopt.unit import Unit, UnitOptimFlags

__all__ = ["parse_stack_code", "build_parser", "unit_flags_from_args", "main"]


def parse_stack_code(text: str) -> list[object]:
    """Parse every non-blank line that is not a META line into an instruction."""
    code: list[object] = []
    for line in text.splitlines():
        if not line.strip() or "META" in line:
            continue
        try:
            inst = parse_inst(line)
        except ParseError as error:
            raise ParseError(f"Failed to parse: {line}") from error
        if inst is None:
            raise ParseError(f"Failed to parse: {line}")
        code.append(inst)
    return code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="smopt", description="Optimize stack machine code.")
    parser.add_argument("-V", "--version", action="version", version="%(prog)s 0.1.0")
    parser.add_argument("-s", "--source", type=Path, required=True,
                        help="filepath to stack machine code (.sm)")
    parser.add_argument("-g", "--graphs-dir", type=Path, default=None,
                        help="path to output dir for dot graphs")
    parser.add_argument("-e", "--elim-dead-code", action="store_true", help="eliminate dead code")
    parser.add_argument("--elim-stores", action="store_true", default=True,
                        help="do not generate separate store node in data graph")
    parser.add_argument("--liveliness-analysis", action="store_true", help="delete unused stores")
    parser.add_argument("-c", "--const-prop", action="store_true", help="propagate constants")
    parser.add_argument("-t", "--tag-check-eval", action="store_true",
                        help="replace tag check on known tag with constant")
    parser.add_argument("--tail-call", action="store_true",
                        help="loop function body if an exit node is a recursive call")
    parser.add_argument("--inline-strategy", action="store_true",
                        help="enable automatic inline function detection")
    parser.add_argument("--remove-unused-decls", action="store_true",
                        help="remove unused declarations")
    parser.add_argument("-j", "--jump-on-const", action="store_true",
                        help="replace conditional jump on constant with unconditional jump")
    parser.add_argument("-m", "--merge-blocks", action="store_true",
                        help="merge blocks with unconditional jump between them")
    parser.add_argument("-p", "--passes", type=int, default=1,
                        help="number of flow optimization passes")
    parser.add_argument("--unit-passes", type=int, default=1,
                        help="number of unit optimization passes")
    parser.add_argument("--force-inline", nargs="+", default=None,
                        help="forcefully try to inline the following functions")
    parser.add_argument("-O", "--optim-full", action="store_true",
                        help="set all optimization flags listed above")
    return parser


def unit_flags_from_args(args: argparse.Namespace) -> UnitOptimFlags:
    full = args.optim_full
    data_flags = DataGraphOptimFlags(
        elim_dead_code=args.elim_dead_code or full,
        elim_stores=args.elim_stores or full,
        const_prop=args.const_prop or full,
        tag_eval=args.tag_check_eval or full,
    )
    flow_flags = FlowOptimFlags(
        elim_dead_code=args.elim_dead_code or full,
        jump_on_const=args.jump_on_const or full,
        merge_blocks=args.merge_blocks or full,
        liveliness_analysis=args.liveliness_analysis or full,
        tail_call=args.tail_call or full,
        data_flags=data_flags,
        passes=args.passes,
    )
    force_inline = [name for value in args.force_inline or [] for name in value.split(" ") if name]
    return UnitOptimFlags(
        flow_optim=flow_flags,
        force_inline=force_inline,
        inline_strategy=args.inline_strategy or full,
        remove_unused_decls=args.remove_unused_decls or full,
        passes=args.unit_passes,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    flags = unit_flags_from_args(args)
    try:
        code = parse_stack_code(args.source.read_text())
        ctx = Ctx()
        unit = Unit.analyze(ctx, code)
        unit.optimize(ctx, flags)

        if args.graphs_dir is not None:
            for name, flow in unit.functions.items():
                (args.graphs_dir / name).with_suffix(".dot").write_text(function_graph(flow))

        args.source.with_suffix(".osm").write_text(write_code(unit.compile()))
    except (OSError, ParseError) as error:
        print(f"Error: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())