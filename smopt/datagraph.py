"""Data flow graphs of linear blocks: analysis and local optimizations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Union

from smopt.common import (
    BinOp,
    Const,
    DataGraphOptimFlags,
    Drop,
    Dup,
    Load,
    PatKind,
    Patt,
    SExp,
    Store,
    Sym,
    SymKind,
)
from smopt.graph import Direction, StableGraph, add_graph

__all__ = [
    "GraphInvariantError",
    "InlineError",
    "Symbolic",
    "StackVar",
    "OpResult",
    "DataVertex",
    "VirtualStack",
    "DataGraph",
    "sym_shift",
]

log = logging.getLogger(__name__)

_ARITY = {
    "Const": 0,
    "StringLit": 0,
    "LDA": 0,
    "Elem": 2,
    "BinOp": 2,
    "Patt": 1,
}


class GraphInvariantError(RuntimeError):
    """Raised when a data graph breaks one of its structural invariants."""


class InlineError(ValueError):
    """Raised when a symbol cannot be moved into an inlining function."""


@dataclass(frozen=True)
class Symbolic:
    """The value of a variable at the start of the block."""

    sym: Sym

    def __str__(self) -> str:
        return str(self.sym)


@dataclass(frozen=True)
class StackVar:
    """A value that was on the stack before the block, by depth."""

    offset: int

    def __str__(self) -> str:
        return f"StackVar({self.offset})"


@dataclass(frozen=True)
class OpResult:
    """The value produced by an instruction."""

    inst: object

    def __str__(self) -> str:
        return str(self.inst)


DataVertex = Union[Symbolic, StackVar, OpResult]


@dataclass
class VirtualStack:
    """Stack of graph nodes; popping past the bottom yields stack inputs."""

    tail_from: int = 0
    stack: list[int] = field(default_factory=list)

    def push(self, node: int) -> None:
        self.stack.append(node)

    def pop(self) -> int | StackVar:
        """Pop a node, or describe the next input slot below the block's stack."""
        if self.stack:
            return self.stack.pop()
        tail = self.tail_from
        self.tail_from += 1
        return StackVar(tail)

    def peek(self) -> int | StackVar:
        if self.stack:
            return self.stack[-1]
        return StackVar(self.tail_from)


def _is_const(vertex: DataVertex) -> bool:
    return isinstance(vertex, OpResult) and isinstance(vertex.inst, Const)


def _sorted_map(items: Iterable[tuple[Sym, int]]) -> dict[Sym, int]:
    return dict(sorted(items, key=lambda item: item[0]))


@dataclass(eq=False)
class DataGraph:
    """Data dependencies inside one linear block of code."""

    start_label: str
    dag: StableGraph
    inputs: list[int]
    outputs: VirtualStack
    symbolics: dict[Sym, int]
    jump_decided_by: int | None = None

    @classmethod
    def analyze(cls, start_label: str, code: Iterable[object], has_cjmp: bool) -> DataGraph:
        """Build the data graph of a linear block of instructions."""
        dag: StableGraph = StableGraph()
        stack = VirtualStack()
        symbolics: dict[Sym, int] = {}

        def pop_node() -> int:
            popped = stack.pop()
            return dag.add_node(popped) if isinstance(popped, StackVar) else popped

        def reify_top() -> int:
            top = stack.peek()
            if isinstance(top, StackVar):
                node = dag.add_node(top)
                stack.pop()
                stack.push(node)
                return node
            return top

        def n_arity(inst: object, n: int) -> None:
            node = dag.add_node(OpResult(inst))
            for position in range(n):
                dag.add_edge(pop_node(), node, position)
            stack.push(node)

        for inst in code:
            name = type(inst).__name__
            if name in _ARITY:
                n_arity(inst, _ARITY[name])
            elif isinstance(inst, SExp):
                n_arity(inst, inst.args)
            elif name == "Closure":
                n_arity(inst, inst.captures)
            elif name == "Array":
                n_arity(inst, inst.size)
            elif isinstance(inst, Store):
                node = dag.add_node(OpResult(inst))
                dag.add_edge(reify_top(), node, 0)
                symbolics[inst.sym] = node
            elif isinstance(inst, Load):
                if inst.sym not in symbolics:
                    symbolics[inst.sym] = dag.add_node(Symbolic(inst.sym))
                stack.push(symbolics[inst.sym])
            elif isinstance(inst, Dup):
                stack.push(reify_top())
            elif isinstance(inst, Drop):
                pop_node()
            else:
                raise TypeError(f"not a linear instruction: {inst!r}")

        jump_decided_by = pop_node() if has_cjmp else None
        inputs = [
            node
            for node, vertex in dag.node_items()
            if isinstance(vertex, (StackVar, Symbolic))
        ]
        if dag.is_cyclic():
            raise GraphInvariantError("found cycle in data flow graph")

        graph = cls(
            start_label=start_label,
            dag=dag,
            inputs=inputs,
            outputs=stack,
            symbolics=_sorted_map(symbolics.items()),
            jump_decided_by=jump_decided_by,
        )
        graph.remove_stores()
        return graph

    def outputs_nodes(self) -> list[int]:
        return self.outputs.stack

    def info_label(self) -> str:
        return f"{self.start_label}\ninputs: {len(self.inputs)}\noutputs: {len(self.outputs_nodes())}"

    def _count(self, kind: SymKind) -> int:
        return max((sym.value + 1 for sym in self.symbolics if sym.kind is kind), default=0)

    def args_count(self) -> int:
        return self._count(SymKind.ARG)

    def locs_count(self) -> int:
        return self._count(SymKind.LOC)

    def clos_count(self) -> int:
        return self._count(SymKind.ACC)

    def check_invariants(self) -> None:
        if not all(self.dag.contains_node(node) for node in self.inputs):
            raise GraphInvariantError("input node in data graph must be alive")
        if not all(self.dag.contains_node(node) for node in self.outputs.stack):
            raise GraphInvariantError("output node in data graph must be alive")
        if self.jump_decided_by is not None and not self.dag.contains_node(self.jump_decided_by):
            raise GraphInvariantError("jump node in data graph must be alive")
        if self.dag.is_cyclic():
            raise GraphInvariantError("found cycle in data flow graph")

    def copy(self) -> DataGraph:
        return DataGraph(
            start_label=self.start_label,
            dag=self.dag.copy(),
            inputs=list(self.inputs),
            outputs=VirtualStack(self.outputs.tail_from, list(self.outputs.stack)),
            symbolics=dict(self.symbolics),
            jump_decided_by=self.jump_decided_by,
        )

    def extend(self, ext: DataGraph) -> None:
        """Append the block ``ext`` so that it runs right after this one."""
        if self.jump_decided_by is not None:
            raise GraphInvariantError("cannot extend a block that ends with a conditional jump")

        mapping = add_graph(self.dag, ext.dag)
        stack_inputs = sorted(
            (
                (mapping[node], ext.dag[node].offset)
                for node in ext.inputs
                if isinstance(ext.dag[node], StackVar)
            ),
            key=lambda pair: pair[1],
        )

        deleted: dict[int, int] = {}
        for node, _ in stack_inputs:
            popped = self.outputs.pop()
            if isinstance(popped, StackVar):
                output = self.dag.add_node(popped)
                self.inputs.append(output)
            else:
                output = popped
            for edge in self.dag.edges_directed(node, Direction.OUTGOING):
                self.dag.add_edge(output, edge.target, edge.weight)
            deleted[node] = output
            self.dag.remove_node(node)

        def to_source(node: int) -> int:
            mapped = mapping[node]
            return deleted.get(mapped, mapped)

        self.outputs.stack.extend(to_source(node) for node in ext.outputs.stack)

        for node in ext.inputs:
            vertex = ext.dag[node]
            if not isinstance(vertex, Symbolic):
                continue
            source_node = to_source(node)
            known = self.symbolics.get(vertex.sym)
            if known is not None:
                self.dag[source_node] = OpResult(Store(vertex.sym))
                self.dag.add_edge(known, source_node, 0)
            else:
                self.inputs.append(source_node)

        updated = dict(self.symbolics)
        updated.update((sym, to_source(node)) for sym, node in ext.symbolics.items())
        self.symbolics = _sorted_map(updated.items())

        self.jump_decided_by = None if ext.jump_decided_by is None else to_source(ext.jump_decided_by)
        self.check_invariants()

    def remove_jump_decision(self) -> None:
        if self.jump_decided_by is not None:
            jump, self.jump_decided_by = self.jump_decided_by, None
            self.dag.remove_node(jump)

    def _find_store(self) -> int | None:
        for node, vertex in self.dag.node_items():
            if isinstance(vertex, OpResult) and isinstance(vertex.inst, Store):
                return node
        return None

    def remove_stores(self) -> None:
        """Bypass store nodes so that their users read the stored value directly."""
        while (store := self._find_store()) is not None:
            log.debug("found store: %s", store)
            sources = self.dag.neighbors_directed(store, Direction.INCOMING)
            if len(sources) > 1:
                raise GraphInvariantError("store node must have a single source")
            usages = [(e.target, e.weight) for e in self.dag.edges_directed(store, Direction.OUTGOING)]
            for source in sources:
                for target, weight in usages:
                    self.dag.add_edge(source, target, weight)
                self.change_output_state(store, source)
            self.dag.remove_node(store)
        self.check_invariants()

    def eliminate_dead_code(self) -> None:
        """Remove nodes whose values are never used."""
        stack_inputs = {node for node in self.inputs if isinstance(self.dag[node], StackVar)}
        outputs = set(self.outputs_nodes()) | set(self.symbolics.values())
        if self.jump_decided_by is not None:
            outputs.add(self.jump_decided_by)

        def find_sink() -> int | None:
            for node in self.dag.node_indices():
                if node in stack_inputs or node in outputs:
                    continue
                if not self.dag.edges_directed(node, Direction.OUTGOING):
                    return node
            return None

        while (sink := find_sink()) is not None:
            self.dag.remove_node(sink)
            self.inputs = [node for node in self.inputs if node != sink]
        self.check_invariants()

    def change_output_state(self, node: int, new_node: int) -> None:
        """Make every output, jump decision and symbol that refers to ``node`` refer to ``new_node``."""
        self.outputs.stack = [new_node if out == node else out for out in self.outputs.stack]
        if self.jump_decided_by == node:
            self.jump_decided_by = new_node
        self.symbolics = {sym: new_node if target == node else target for sym, target in self.symbolics.items()}
        self.check_invariants()

    def replace_node_for_outgoings(self, node: int, new_vertex: DataVertex) -> int:
        """Replace a node by a new vertex, keeping only its outgoing edges."""
        new_node = self.dag.add_node(new_vertex)
        for edge in self.dag.edges_directed(node, Direction.OUTGOING):
            self.dag.add_edge(new_node, edge.target, edge.weight)
        self.change_output_state(node, new_node)
        self.dag.remove_node(node)
        self.check_invariants()
        return new_node

    def _foldable_binop(self) -> tuple[int, object] | None:
        for node, vertex in self.dag.node_items():
            if not (isinstance(vertex, OpResult) and isinstance(vertex.inst, BinOp)):
                continue
            if all(_is_const(self.dag[v]) for v in self.dag.neighbors_directed(node, Direction.INCOMING)):
                return node, vertex.inst.op
        return None

    def constant_propagation(self) -> None:
        """Fold binary operations on constants into constants."""
        while (found := self._foldable_binop()) is not None:
            node, op = found
            edges = sorted(self.dag.edges_directed(node, Direction.INCOMING), key=lambda e: e.weight)
            values = [
                self.dag[edge.source].inst.value
                for edge in reversed(edges)
                if _is_const(self.dag[edge.source])
            ]
            if len(values) != 2:
                break
            lhs, rhs = values
            self.replace_node_for_outgoings(node, OpResult(Const(op.eval(lhs, rhs))))
        self.check_invariants()

    def _decidable_tag_check(self) -> tuple[int, int] | None:
        for edge in self.dag.edges():
            source, target = self.dag[edge.source], self.dag[edge.target]
            if not (isinstance(source, OpResult) and isinstance(source.inst, SExp)):
                continue
            if not (isinstance(target, OpResult) and isinstance(target.inst, Patt)):
                continue
            pat = target.inst.pat
            if pat.kind is not PatKind.TAG:
                continue
            matches = source.inst.tag == pat.tag and source.inst.args == pat.args
            return edge.target, int(matches)
        return None

    def tag_check_evaluation(self) -> None:
        """Replace tag checks on freshly built S-expressions with their result."""
        while (found := self._decidable_tag_check()) is not None:
            node, value = found
            self.replace_node_for_outgoings(node, OpResult(Const(value)))
        self.check_invariants()

    def optimize(self, flags: DataGraphOptimFlags) -> None:
        if flags.elim_stores:
            self.remove_stores()
        if flags.elim_dead_code:
            self.eliminate_dead_code()
        if flags.const_prop:
            self.constant_propagation()
            self.eliminate_dead_code()
        if flags.tag_eval:
            self.tag_check_evaluation()
            self.eliminate_dead_code()

    def shift_symbolics_for_inline(self, first_free_loc: int, args_count: int) -> None:
        """Move arguments and locals into the caller's free local slots."""
        for node, vertex in self.dag.node_items():
            if isinstance(vertex, Symbolic):
                self.dag[node] = Symbolic(sym_shift(vertex.sym, first_free_loc, args_count))
        self.symbolics = _sorted_map(
            (sym_shift(sym, first_free_loc, args_count), node) for sym, node in self.symbolics.items()
        )

    def remove_stores_to_unused_symbolics(self, read_symbolics: Iterable[Sym]) -> None:
        read = set(read_symbolics)
        self.symbolics = {sym: node for sym, node in self.symbolics.items() if sym in read}


def sym_shift(sym: Sym, first_free_loc: int, args_count: int) -> Sym:
    """Rename a callee's symbol into the caller's frame."""
    match sym.kind:
        case SymKind.ARG:
            return Sym.loc(first_free_loc + sym.value)
        case SymKind.LOC:
            return Sym.loc(first_free_loc + args_count + sym.value)
        case SymKind.GLB:
            return sym
    raise InlineError(f"cannot inline code that uses closure slot {sym}")