"""A compilation unit: declarations plus the flow graphs of its functions."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from smopt.codegen import compile_function
from smopt.common import (
    Begin,
    Ctx,
    End,
    FlowOptimFlags,
    Label,
    LabelMode,
    PublicFun,
    is_decl,
)
from smopt.flowgraph import FlowGraph

__all__ = ["UnitOptimFlags", "Unit"]

log = logging.getLogger(__name__)

_INLINE_NODE_LIMIT = 10


@dataclass
class UnitOptimFlags:
    """Switches for whole-unit optimization."""

    flow_optim: FlowOptimFlags
    force_inline: list[str] = field(default_factory=list)
    inline_strategy: bool = False
    remove_unused_decls: bool = False
    passes: int = 1


def _is_entry(name: str) -> bool:
    return "init" in name


@dataclass(eq=False)
class Unit:
    """Functions by name, kept in name order, and the unit's declarations."""

    functions: dict[str, FlowGraph]
    declarations: list[object]

    @classmethod
    def analyze(cls, ctx: Ctx, code: Iterable[object]) -> Unit:
        """Split a program into declarations and per-function flow graphs."""
        declarations: list[object] = []
        body: list[object] = []
        for inst in code:
            if is_decl(inst):
                declarations.append(inst)
            else:
                body.append(inst)

        functions: dict[str, FlowGraph] = {}
        rest = iter(body)
        current = next(rest, None)
        while isinstance(current, Label):
            name = current.name
            function_code: list[object] = []
            for inst in rest:
                function_code.append(inst)
                if isinstance(inst, End):
                    break
            functions[name] = FlowGraph.analyze(ctx, function_code)
            current = next(rest, None)

        return cls(functions=dict(sorted(functions.items())), declarations=declarations)

    def optimize(self, ctx: Ctx, flags: UnitOptimFlags) -> None:
        """Run flow optimizations, inlining, tail calls and pruning for the given passes."""
        for _ in range(flags.passes):
            for flow in self.functions.values():
                flow.optimize(flags.flow_optim)

            candidates = self.find_candidates_for_inlining() if flags.inline_strategy else []

            for call in [*flags.force_inline, *candidates]:
                if call not in self.functions:
                    raise KeyError(f"cannot inline unknown function {call!r}")
                call_graph = self.functions[call].copy()
                for flow in self.functions.values():
                    flow.replace_all_calls(ctx, call, call_graph, 1)
                    flow.optimize(flags.flow_optim)

            if flags.flow_optim.tail_call:
                for name, flow in self.functions.items():
                    flow.strip_empty_output_nodes()
                    flow.replace_tail_call(name)

            if flags.remove_unused_decls:
                self.remove_unused_decls()

    def find_candidates_for_inlining(self) -> list[str]:
        """Small functions that make no calls themselves."""
        return [
            name
            for name, flow in self.functions.items()
            if not flow.has_calls() and flow.graph.node_count() < _INLINE_NODE_LIMIT
        ]

    def find_used_decls(self) -> set[str]:
        """Names reachable from public functions and entry functions."""
        roots: list[str] = []
        for decl in self.declarations:
            match decl:
                case PublicFun(name, _, _):
                    roots.append(name)
        roots.extend(name for name in self.functions if _is_entry(name))

        used = set(roots)
        queue = deque(roots)
        while queue:
            flow = self.functions.get(queue.popleft())
            if flow is None:
                continue
            for decl in flow.find_used_decls():
                if decl not in used:
                    used.add(decl)
                    queue.append(decl)
        return used

    def remove_unused_decls(self) -> None:
        """Drop functions that nothing reachable refers to."""
        used = self.find_used_decls()
        self.functions = {name: flow for name, flow in self.functions.items() if name in used}
        log.debug("actually used decls: %s", sorted(used))

    def compile(self) -> list[object]:
        """Generate the whole program: declarations, then every function, entries first."""
        code: list[object] = list(self.declarations)
        ordered = sorted(self.functions.items(), key=lambda item: not _is_entry(item[0]))
        for name, flow in ordered:
            body, args, locs, clos = compile_function(flow, name)
            code.append(Label(name, LabelMode.RETRIEVE_STACK))
            code.append(Begin(name, args, locs, clos))
            code.extend(body)
            code.append(End())
        return code