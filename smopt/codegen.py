"""Generation of stack machine code from data and flow graphs."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from smopt.common import (
    LDA,
    STA,
    STI,
    Call,
    CallC,
    Drop,
    Jmp,
    JumpMode,
    Label,
    LabelMode,
    Load,
    Store,
    Sym,
    SymKind,
)
from smopt.datagraph import DataGraph, GraphInvariantError, OpResult, StackVar, Symbolic
from smopt.flowgraph import CallCVertex, CallVertex, FlowGraph, STAVertex, STIVertex
from smopt.graph import Direction

__all__ = ["compile_block", "compile_function", "write_code"]

log = logging.getLogger(__name__)


def _holds_own_input(block: DataGraph, sym: Sym, node: int) -> bool:
    vertex = block.dag[node]
    return isinstance(vertex, Symbolic) and vertex.sym == sym


class _BlockCompiler:
    """Emits the instructions of one data graph, saving shared values in locals."""

    def __init__(self, block: DataGraph, free_loc: int) -> None:
        self.block = block
        self.dag = block.dag
        self.free_loc = free_loc
        self.code: list[object] = []
        self.saved: dict[int, int] = {}
        self.stored_nodes = {
            node
            for sym, node in block.symbolics.items()
            if not _holds_own_input(block, sym, node)
        }

    def save(self, node: int) -> None:
        self.code.append(Store(Sym.loc(self.free_loc)))
        log.debug("save loc[%d] for %s", self.free_loc, self.dag[node])
        self.saved[node] = self.free_loc
        self.free_loc += 1

    def emit(self, node: int) -> None:
        if node in self.saved:
            self.code.append(Load(Sym.loc(self.saved[node])))
            return

        deps = sorted(self.dag.edges_directed(node, Direction.INCOMING), key=lambda e: e.weight)
        for edge in reversed(deps):
            self.emit(edge.source)

        vertex = self.dag[node]
        if isinstance(vertex, Symbolic):
            self.code.append(Load(vertex.sym))
        elif isinstance(vertex, OpResult):
            self.code.append(vertex.inst)
        # Stack inputs are loaded from their saved locals before anything else.

        used_many = len(self.dag.edges_directed(node, Direction.OUTGOING)) > 1
        if (used_many or node in self.stored_nodes) and node not in self.saved:
            self.save(node)

    def run(self) -> list[object]:
        block = self.block
        log.debug("start compile linear block: %s", block.start_label)
        result_nodes = list(block.outputs.stack)
        if block.jump_decided_by is not None:
            result_nodes.append(block.jump_decided_by)
        result_set = set(result_nodes)

        stack_inputs = sorted(
            (
                (node, self.dag[node].offset)
                for node in block.inputs
                if isinstance(self.dag[node], StackVar)
            ),
            key=lambda pair: pair[1],
        )
        for node, _ in stack_inputs:
            self.code += [Store(Sym.loc(self.free_loc)), Drop()]
            self.saved[node] = self.free_loc
            self.free_loc += 1

        dead_nodes = [
            node
            for node in self.dag.node_indices()
            if node not in result_set and not self.dag.edges_directed(node, Direction.OUTGOING)
        ]
        for node in dead_nodes:
            log.debug("compile dead node: %s", self.dag[node])
            self.emit(node)
            self.code.append(Drop())

        for node in result_nodes:
            log.debug("compile stack output node: %s", self.dag[node])
            self.emit(node)

        for sym, node in block.symbolics.items():
            if _holds_own_input(block, sym, node):
                continue
            if node not in self.saved:
                raise GraphInvariantError(f"no saved value for {sym} in block {block.start_label}")
            self.code += [Load(Sym.loc(self.saved[node])), Store(sym), Drop()]

        return self.code


def compile_block(block: DataGraph, free_loc: int) -> list[object]:
    """Generate linear code for a block, using locals from ``free_loc`` as temporaries."""
    return _BlockCompiler(block, free_loc).run()


def _compile_vertex(
    flow: FlowGraph, node: int, free_loc: int, label_mode: LabelMode | None
) -> list[object]:
    code: list[object] = []
    if label_mode is not None:
        code.append(Label(flow.get_label(node), label_mode))

    vertex = flow.graph[node]
    if isinstance(vertex, DataGraph):
        code += compile_block(vertex, free_loc)
    elif isinstance(vertex, CallVertex):
        code.append(Call(vertex.name, vertex.args))
    elif isinstance(vertex, STIVertex):
        code.append(STI())
    elif isinstance(vertex, STAVertex):
        code.append(STA())
    elif isinstance(vertex, CallCVertex):
        code.append(CallC(vertex.args))
    return code


def _label_mode(
    flow: FlowGraph, current: int, previous: int | None, compiled: set[int]
) -> LabelMode | None:
    incoming = flow.graph.edges_directed(current, Direction.INCOMING)
    needs_label = any(edge.source != previous for edge in incoming)
    if not needs_label:
        return None
    known_before = any(edge.source in compiled for edge in incoming)
    previous_jumps_here = previous is not None and any(
        edge.target == current for edge in flow.graph.edges_directed(previous, Direction.OUTGOING)
    )
    if known_before or not previous_jumps_here:
        return LabelMode.RETRIEVE_STACK
    return LabelMode.DROP_BARRIER


def compile_function(flow: FlowGraph, name: str) -> tuple[list[object], int, int, int]:
    """Generate a function body; return it with its argument, local and closure counts."""
    log.debug("start compile function: %s", name)
    exit_label = f"{name}_exit"
    free_loc = flow.loc_count()
    code: list[object] = []
    compiled: set[int] = set()

    def walk(start: int) -> None:
        exits: list[bool] = []
        current: int | None = start
        previous: int | None = None
        while current is not None:
            compiled.add(current)
            mode = _label_mode(flow, current, previous, compiled)
            code.extend(_compile_vertex(flow, current, free_loc, mode))

            following: int | None = None
            outs = flow.jmp_outgoings(current)
            if outs is not None:
                if outs.cjmp is not None:
                    jump_mode, target = outs.cjmp
                    code.append(Jmp(jump_mode, flow.get_label(target)))
                if outs.jmp not in compiled:
                    following = outs.jmp
                else:
                    code.append(Jmp(JumpMode.UNCONDITIONAL, flow.get_label(outs.jmp)))

            exits.append(current in flow.outputs)
            previous, current = current, following

        for is_exit in reversed(exits):
            if is_exit:
                code.append(Jmp(JumpMode.UNCONDITIONAL, exit_label))

    for node in [flow.input, *flow.graph.node_indices()]:
        if node not in compiled:
            walk(node)

    actual_locs = max(
        (
            inst.sym.value + 1
            for inst in code
            if isinstance(inst, (Store, Load, LDA)) and inst.sym.kind is SymKind.LOC
        ),
        default=0,
    )
    code.append(Label(exit_label, LabelMode.RETRIEVE_STACK))
    return code, flow.args_count(), actual_locs, flow.clos_count()


def write_code(code: Iterable[object]) -> str:
    """Render instructions one per line, followed by the terminating ``!!`` line."""
    return "".join(f"{inst}\n" for inst in code) + "!!\n"