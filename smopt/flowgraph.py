"""Control flow graphs of functions: analysis and flow-level optimizations."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from smopt.common import (
    STA,
    STI,
    Begin,
    Call,
    CallC,
    Closure,
    Const,
    Ctx,
    Drop,
    End,
    FlowOptimFlags,
    Jmp,
    JumpMode,
    Label,
    Store,
    Sym,
    SymKind,
    is_flow,
    is_linear,
)
from smopt.datagraph import DataGraph, OpResult, Symbolic
from smopt.graph import Direction, StableGraph, add_graph

__all__ = [
    "JumpCondition",
    "CallVertex",
    "STIVertex",
    "STAVertex",
    "CallCVertex",
    "FlowVertex",
    "JmpEdges",
    "FlowGraph",
    "gen_inline_call_prologue",
    "gen_tail_call_prologue",
]

log = logging.getLogger(__name__)


class JumpCondition(Enum):
    UNCONDITIONAL = "Unconditional"
    ZERO = "Zero"
    NONZERO = "NonZero"

    @classmethod
    def from_mode(cls, mode: JumpMode) -> JumpCondition:
        return {
            JumpMode.UNCONDITIONAL: cls.UNCONDITIONAL,
            JumpMode.ZERO: cls.ZERO,
            JumpMode.NONZERO: cls.NONZERO,
        }[mode]

    def will_jump(self, value: int) -> bool:
        """True if the jump is taken when the decision value is ``value``."""
        if self is JumpCondition.UNCONDITIONAL:
            return True
        if self is JumpCondition.ZERO:
            return value == 0
        return value != 0

    def is_conditional(self) -> bool:
        return self is not JumpCondition.UNCONDITIONAL


@dataclass
class CallVertex:
    label: str
    name: str
    args: int


@dataclass
class STIVertex:
    label: str


@dataclass
class STAVertex:
    label: str


@dataclass
class CallCVertex:
    label: str
    args: int


FlowVertex = Union[DataGraph, CallVertex, STIVertex, STAVertex, CallCVertex]


@dataclass(frozen=True)
class JmpEdges:
    """The unconditional successor of a node and its optional conditional jump."""

    jmp: int
    cjmp: tuple[JumpMode, int] | None = None


def _copy_vertex(vertex: FlowVertex) -> FlowVertex:
    if isinstance(vertex, DataGraph):
        return vertex.copy()
    return dataclasses.replace(vertex)


def _swap_remove(items: list[int], index: int) -> int:
    last = items.pop()
    if index < len(items):
        removed, items[index] = items[index], last
        return removed
    return last


@dataclass(eq=False)
class FlowGraph:
    """Blocks and side-effecting instructions of a function, linked by jumps."""

    graph: StableGraph
    input: int
    outputs: list[int] = field(default_factory=list)

    @classmethod
    def analyze(cls, ctx: Ctx, code: Iterable[object]) -> FlowGraph:
        """Build the flow graph of a function body that starts with BEGIN and ends with END."""
        graph: StableGraph = StableGraph()
        pending_jumps: list[tuple[int, str, JumpCondition]] = []
        edge_from_prev: tuple[int, JumpCondition] | None = None
        block: list[object] = []
        labeled: str | None = None
        block_indexes: list[int] = []
        label_to_block: dict[str, int] = {}

        def side_node(vertex: FlowVertex, after: int) -> tuple[int, JumpCondition]:
            node = graph.add_node(vertex)
            graph.add_edge(after, node, JumpCondition.UNCONDITIONAL)
            return node, JumpCondition.UNCONDITIONAL

        for inst in list(code)[1:]:
            if is_linear(inst):
                block.append(inst)
                continue
            if not is_flow(inst):
                continue

            fresh = ctx.fresh_label()
            start_label = labeled if labeled is not None else fresh
            labeled = None
            has_cjmp = isinstance(inst, Jmp) and inst.is_conditional()
            this_block = DataGraph.analyze(start_label, block, has_cjmp)
            block = []

            node = graph.add_node(this_block)
            label_to_block[start_label] = node
            block_indexes.append(node)

            if edge_from_prev is not None:
                prev, cond = edge_from_prev
                graph.add_edge(prev, node, cond)
                edge_from_prev = None

            if isinstance(inst, Jmp):
                pending_jumps.append((node, inst.label, JumpCondition.from_mode(inst.mode)))
                if inst.is_conditional():
                    edge_from_prev = (node, JumpCondition.from_mode(inst.mode.rev()))
            elif isinstance(inst, Label):
                edge_from_prev = (node, JumpCondition.UNCONDITIONAL)
                labeled = inst.name
            elif isinstance(inst, Call):
                edge_from_prev = side_node(CallVertex(ctx.fresh_label(), inst.name, inst.args), node)
            elif isinstance(inst, CallC):
                edge_from_prev = side_node(CallCVertex(ctx.fresh_label(), inst.args), node)
            elif isinstance(inst, STI):
                edge_from_prev = side_node(STIVertex(ctx.fresh_label()), node)
            elif isinstance(inst, STA):
                edge_from_prev = side_node(STAVertex(ctx.fresh_label()), node)
            elif isinstance(inst, Begin):
                continue
            elif isinstance(inst, End):
                break

        for source, label, cond in pending_jumps:
            if label not in label_to_block:
                raise ValueError(f"jump to unknown label {label!r}")
            graph.add_edge(source, label_to_block[label], cond)

        if not block_indexes:
            raise ValueError("function body has no blocks")

        return cls(graph=graph, input=block_indexes[0], outputs=[block_indexes[-1]])

    def copy(self) -> FlowGraph:
        graph = self.graph.copy()
        for node, vertex in graph.node_items():
            graph[node] = _copy_vertex(vertex)
        return FlowGraph(graph=graph, input=self.input, outputs=list(self.outputs))

    def block(self, node: int) -> DataGraph | None:
        vertex = self.graph[node]
        return vertex if isinstance(vertex, DataGraph) else None

    def _blocks(self) -> list[DataGraph]:
        return [v for v in self.graph.node_weights() if isinstance(v, DataGraph)]

    def args_count(self) -> int:
        return max((b.args_count() for b in self._blocks()), default=0)

    def loc_count(self) -> int:
        return max((b.locs_count() for b in self._blocks()), default=0)

    def clos_count(self) -> int:
        return max((b.clos_count() for b in self._blocks()), default=0)

    def get_label(self, node: int) -> str:
        vertex = self.graph[node]
        if isinstance(vertex, DataGraph):
            return vertex.start_label
        return vertex.label

    def jmp_outgoings(self, node: int) -> JmpEdges | None:
        """Recover the jump instructions that leave a node, or None if it has no successor."""
        jmp: int | None = None
        cjmp: tuple[JumpMode, int] | None = None
        for i, edge in enumerate(self.graph.edges_directed(node, Direction.OUTGOING)):
            if i > 0 or edge.weight is JumpCondition.UNCONDITIONAL:
                jmp = edge.target
            elif edge.weight is JumpCondition.ZERO:
                cjmp = (JumpMode.ZERO, edge.target)
            else:
                cjmp = (JumpMode.NONZERO, edge.target)
        if jmp is None:
            return None
        return JmpEdges(jmp, cjmp)

    def has_calls(self) -> bool:
        return any(isinstance(v, (CallVertex, CallCVertex)) for v in self.graph.node_weights())

    def all_symbolics(self) -> set[Sym]:
        return {sym for block in self._blocks() for sym in block.symbolics}

    def _entry_reads(self, node: int, all_symbolics: set[Sym]) -> set[Sym]:
        vertex = self.graph[node]
        if not isinstance(vertex, DataGraph):
            return set(all_symbolics)
        return {
            vertex.dag[v].sym for v in vertex.inputs if isinstance(vertex.dag[v], Symbolic)
        }

    def find_read_symbolics(self) -> dict[int, set[Sym]]:
        """For each node, the symbols that may be read at or after it."""
        all_symbolics = self.all_symbolics()
        globals_ = {sym for sym in all_symbolics if sym.kind is SymKind.GLB}
        read: dict[int, set[Sym]] = {output: set(globals_) for output in self.outputs}

        for root in self.graph.node_indices():
            visited: set[int] = set()

            def enter(node: int) -> list:
                visited.add(node)
                read.setdefault(node, set()).update(self._entry_reads(node, all_symbolics))
                return [node, iter(self.graph.neighbors_directed(node, Direction.OUTGOING)), None]

            stack = [enter(root)]
            while stack:
                frame = stack[-1]
                node, targets, pending = frame
                if pending is not None:
                    read[node].update(read[pending])
                    frame[2] = None
                target = next(targets, None)
                if target is None:
                    stack.pop()
                elif target in visited:
                    read[node].update(read[target])
                else:
                    frame[2] = target
                    stack.append(enter(target))

        return read

    def find_used_decls(self) -> set[str]:
        decls: set[str] = set()
        for vertex in self.graph.node_weights():
            if isinstance(vertex, DataGraph):
                for data in vertex.dag.node_weights():
                    if isinstance(data, OpResult) and isinstance(data.inst, Closure):
                        decls.add(data.inst.name)
            elif isinstance(vertex, CallVertex):
                decls.add(vertex.name)
        return decls

    def eliminate_dead_code(self) -> None:
        """Remove nodes other than the entry that nothing jumps to."""
        while True:
            dead = next(
                (
                    node
                    for node in self.graph.node_indices()
                    if node != self.input
                    and not self.graph.edges_directed(node, Direction.INCOMING)
                ),
                None,
            )
            if dead is None:
                return
            self.graph.remove_node(dead)

    def _const_jump(self) -> tuple[int, int] | None:
        for node, vertex in self.graph.node_items():
            if not isinstance(vertex, DataGraph):
                continue
            if not any(
                e.weight.is_conditional()
                for e in self.graph.edges_directed(node, Direction.OUTGOING)
            ):
                continue
            if vertex.jump_decided_by is None:
                continue
            decision = vertex.dag[vertex.jump_decided_by]
            if isinstance(decision, OpResult) and isinstance(decision.inst, Const):
                return node, decision.inst.value
        return None

    def jump_on_const(self) -> None:
        """Resolve conditional jumps decided by constants."""
        while (found := self._const_jump()) is not None:
            node, value = found
            self.graph[node].remove_jump_decision()
            for edge in self.graph.edges_directed(node, Direction.OUTGOING):
                if edge.weight.will_jump(value):
                    self.graph.set_edge_weight(edge.id, JumpCondition.UNCONDITIONAL)
                else:
                    self.graph.remove_edge(edge.id)

    def _mergeable(self) -> tuple[int, int] | None:
        for to, vertex in self.graph.node_items():
            if to == self.input or not isinstance(vertex, DataGraph):
                continue
            incoming = self.graph.edges_directed(to, Direction.INCOMING)
            if len(incoming) != 1:
                continue
            edge = incoming[0]
            if edge.weight is JumpCondition.UNCONDITIONAL and isinstance(
                self.graph[edge.source], DataGraph
            ):
                return edge.source, to
        return None

    def merge_block_with_unconditional_jump(self) -> None:
        """Fold a block into its only predecessor when that one jumps to it unconditionally."""
        while (found := self._mergeable()) is not None:
            source, to = found
            log.debug("merging blocks: %s -> %s", self.get_label(source), self.get_label(to))
            ext = self.graph[to].copy()
            self.graph[source].extend(ext)

            for edge in self.graph.edges_directed(to, Direction.OUTGOING):
                self.graph.add_edge(source, edge.target, edge.weight)

            if to in self.outputs:
                self.outputs = [out for out in self.outputs if out not in (source, to)]
                self.outputs.append(source)

            self.graph[source].remove_stores()
            self.graph.remove_node(to)

    def optimize(self, flow_optim: FlowOptimFlags) -> None:
        for _ in range(flow_optim.passes):
            for block in self._blocks():
                block.optimize(flow_optim.data_flags)
            if flow_optim.elim_dead_code:
                self.eliminate_dead_code()
            if flow_optim.jump_on_const:
                self.jump_on_const()
                self.eliminate_dead_code()
            if flow_optim.merge_blocks:
                self.merge_block_with_unconditional_jump()
            if flow_optim.liveliness_analysis:
                self.remove_unused_symbolics()

    def replace_node_with_graph(self, node: int, replacement: FlowGraph) -> None:
        """Substitute a node by a whole flow graph wired to its neighbours."""
        if node == self.input:
            raise ValueError("can't replace input node with graph")
        outgoing = self.graph.edges_directed(node, Direction.OUTGOING)
        if any(edge.weight is not JumpCondition.UNCONDITIONAL for edge in outgoing):
            raise ValueError("all jumps from replaced node should be unconditional")

        incomings = [(e.source, e.weight) for e in self.graph.edges_directed(node, Direction.INCOMING)]
        targets = [edge.target for edge in outgoing]

        replacement = replacement.copy()
        mapping = add_graph(self.graph, replacement.graph)

        for source, cond in incomings:
            self.graph.add_edge(source, mapping[replacement.input], cond)

        for out in replacement.outputs:
            for target in targets:
                self.graph.add_edge(mapping[out], target, JumpCondition.UNCONDITIONAL)

        if node in self.outputs:
            _swap_remove(self.outputs, self.outputs.index(node))
            self.outputs.extend(mapping[out] for out in replacement.outputs)

        self.graph.remove_node(node)

    def replace_call_with_graph(self, ctx: Ctx, call: int, replacement: FlowGraph) -> None:
        """Inline ``replacement`` in place of the call node ``call``."""
        replacement = replacement.copy()
        first_free_loc = self.loc_count()
        call_args = replacement.args_count()
        replacement._shift_symbolics_for_inline(first_free_loc)
        replacement._shift_labels_for_inline(ctx)

        prev_input = replacement.input
        prologue = gen_inline_call_prologue(ctx.fresh_label(), call_args, first_free_loc)
        replacement.input = replacement.graph.add_node(prologue)
        replacement.graph.add_edge(replacement.input, prev_input, JumpCondition.UNCONDITIONAL)

        self.replace_node_with_graph(call, replacement)

    def _find_call(self, name: str) -> tuple[int, CallVertex] | None:
        for node, vertex in self.graph.node_items():
            if isinstance(vertex, CallVertex) and vertex.name == name:
                return node, vertex
        return None

    def replace_all_calls(
        self, ctx: Ctx, call: str, replacement: FlowGraph, unfold_limit: int
    ) -> None:
        """Inline calls to ``call`` until none are left or the limit is reached."""
        expect_args = replacement.args_count()
        while (found := self._find_call(call)) is not None:
            node, vertex = found
            if vertex.args != expect_args:
                raise ValueError(f"while inlining {call}, number of arguments mismatch")
            if unfold_limit == 0:
                break
            self.replace_call_with_graph(ctx, node, replacement)
            unfold_limit -= 1

    def _shift_symbolics_for_inline(self, first_free_loc: int) -> None:
        args = self.args_count()
        for block in self._blocks():
            block.shift_symbolics_for_inline(first_free_loc, args)

    def _shift_labels_for_inline(self, ctx: Ctx) -> None:
        for vertex in self.graph.node_weights():
            label = ctx.fresh_label()
            if isinstance(vertex, DataGraph):
                vertex.start_label = label
            else:
                vertex.label = label

    def remove_unused_symbolics(self) -> None:
        """Forget stores to symbols that are never read afterwards."""
        read = self.find_read_symbolics()
        for node, vertex in self.graph.node_items():
            if isinstance(vertex, DataGraph):
                vertex.remove_stores_to_unused_symbolics(read[node])

    def _empty_output(self) -> tuple[int, int] | None:
        for i, node in enumerate(self.outputs):
            vertex = self.graph[node]
            if not (isinstance(vertex, DataGraph) and vertex.dag.node_count() == 0):
                continue
            if all(
                not e.weight.is_conditional()
                for e in self.graph.edges_directed(node, Direction.INCOMING)
            ):
                return i, node
        return None

    def strip_empty_output_nodes(self) -> None:
        """Drop empty exit blocks, making their predecessors the exits."""
        while (found := self._empty_output()) is not None:
            i, node = found
            _swap_remove(self.outputs, i)
            self.outputs.extend(self.graph.neighbors_directed(node, Direction.INCOMING))
            self.graph.remove_node(node)

    def replace_tail_call(self, call: str) -> None:
        """Turn exit calls to ``call`` into argument stores and a jump to the entry."""
        while True:
            found = next(
                (
                    (i, node, self.graph[node])
                    for i, node in enumerate(self.outputs)
                    if isinstance(self.graph[node], CallVertex) and self.graph[node].name == call
                ),
                None,
            )
            if found is None:
                return
            i, node, vertex = found
            self.graph[node] = gen_tail_call_prologue(vertex.label, vertex.args)
            _swap_remove(self.outputs, i)
            self.graph.add_edge(node, self.input, JumpCondition.UNCONDITIONAL)


def gen_inline_call_prologue(label: str, args: int, first_free_loc: int) -> DataGraph:
    """A block moving call arguments from the stack into caller locals."""
    code: list[object] = []
    for i in reversed(range(args)):
        code += [Store(Sym.loc(first_free_loc + i)), Drop()]
    return DataGraph.analyze(label, code, False)


def gen_tail_call_prologue(label: str, args: int) -> DataGraph:
    """A block moving call arguments from the stack into the function's arguments."""
    code: list[object] = []
    for i in reversed(range(args)):
        code += [Store(Sym.arg(i)), Drop()]
    return DataGraph.analyze(label, code, False)