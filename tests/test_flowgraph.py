import pytest

from smopt.common import Const, Ctx, FlowOptimFlags, JumpMode, Sym, parse_inst
from smopt.datagraph import DataGraph, OpResult, StackVar
from smopt.flowgraph import (
    CallVertex,
    FlowGraph,
    JmpEdges,
    JumpCondition,
    gen_inline_call_prologue,
    gen_tail_call_prologue,
)


def analyze(*lines, ctx=None):
    ctx = ctx if ctx is not None else Ctx()
    return ctx, FlowGraph.analyze(ctx, [parse_inst(line) for line in lines])


BRANCH = [
    "BEGIN f 1 0 0",
    "LD arg[0]",
    "CJMP z, L1",
    "CONST 1",
    "JMP L2",
    "LABEL L1",
    "CONST 2",
    "LABEL L2",
    "END",
]

CONST_BRANCH = [
    "BEGIN f 0 0 0",
    "CONST 0",
    "CJMP z, L1",
    "CONST 1",
    "JMP L2",
    "LABEL L1",
    "CONST 2",
    "LABEL L2",
    "END",
]


def test_jump_condition_basics():
    assert JumpCondition.from_mode(JumpMode.ZERO) is JumpCondition.ZERO
    assert JumpCondition.from_mode(JumpMode.NONZERO) is JumpCondition.NONZERO
    assert JumpCondition.ZERO.will_jump(0)
    assert not JumpCondition.ZERO.will_jump(3)
    assert JumpCondition.NONZERO.will_jump(3)
    assert JumpCondition.UNCONDITIONAL.will_jump(0)
    assert JumpCondition.ZERO.is_conditional()
    assert not JumpCondition.UNCONDITIONAL.is_conditional()


def test_single_block_function():
    ctx, flow = analyze("BEGIN f 1 0 0", "LD arg[0]", "CONST 1", "BINOP +", "END")
    assert flow.graph.node_count() == 1
    assert flow.outputs == [flow.input]
    assert flow.get_label(flow.input) == "Lfresh_0"
    assert flow.args_count() == 1
    assert flow.jmp_outgoings(flow.input) is None


def test_branch_structure():
    ctx, flow = analyze(*BRANCH)
    assert flow.graph.node_count() == 5
    assert flow.input == 0
    assert flow.outputs == [4]
    assert flow.get_label(3) == "L1"
    assert flow.get_label(4) == "L2"
    assert ctx.free_label == 5
    assert flow.jmp_outgoings(0) == JmpEdges(jmp=1, cjmp=(JumpMode.ZERO, 3))
    assert flow.jmp_outgoings(1) == JmpEdges(jmp=4)


def test_unknown_label_raises():
    with pytest.raises(ValueError):
        analyze("BEGIN f 0 0 0", "JMP nowhere", "END")


def test_eliminate_dead_code_removes_unreachable_block():
    _, flow = analyze(*BRANCH)
    flow.eliminate_dead_code()
    assert not flow.graph.contains_node(2)
    assert flow.graph.node_count() == 4


def test_jump_on_const_resolves_branch():
    _, flow = analyze(*CONST_BRANCH)
    flow.jump_on_const()
    edges = flow.graph.edges_directed(0, flow_direction_out())
    assert [(e.target, e.weight) for e in edges] == [(3, JumpCondition.UNCONDITIONAL)]
    assert flow.block(0).jump_decided_by is None


def flow_direction_out():
    from smopt.graph import Direction

    return Direction.OUTGOING


def test_optimize_merges_to_single_block():
    _, flow = analyze(*CONST_BRANCH)
    flow.optimize(FlowOptimFlags(elim_dead_code=True, jump_on_const=True, merge_blocks=True))
    assert flow.graph.node_count() == 1
    assert flow.outputs == [flow.input]
    block = flow.block(flow.input)
    outs = block.outputs_nodes()
    assert len(outs) == 1
    assert block.dag[outs[0]] == OpResult(Const(2))


def test_copy_is_independent():
    _, flow = analyze(*CONST_BRANCH)
    clone = flow.copy()
    clone.optimize(FlowOptimFlags(elim_dead_code=True, jump_on_const=True, merge_blocks=True))
    assert flow.graph.node_count() == 5
    assert flow.block(0).jump_decided_by is not None
    assert clone.graph.node_count() == 1


def test_call_vertex_and_decls():
    _, flow = analyze("BEGIN f 1 0 0", "LD arg[0]", "CALL g, 1", "END")
    assert flow.has_calls()
    assert flow.find_used_decls() == {"g"}
    assert flow.graph[1] == CallVertex("Lfresh_1", "g", 1)
    assert flow.outputs == [2]


def test_tail_call_replacement():
    _, flow = analyze("BEGIN f 1 0 0", "LD arg[0]", "CALL f, 1", "END")
    flow.strip_empty_output_nodes()
    assert flow.outputs == [1]
    assert not flow.graph.contains_node(2)
    flow.replace_tail_call("f")
    assert flow.outputs == []
    block = flow.block(1)
    assert isinstance(block, DataGraph)
    assert Sym.arg(0) in block.symbolics
    assert flow.jmp_outgoings(1).jmp == flow.input
    assert not flow.has_calls()


def test_tail_call_prologue_order():
    block = gen_tail_call_prologue("L", 2)
    assert set(block.symbolics) == {Sym.arg(0), Sym.arg(1)}
    assert block.dag[block.symbolics[Sym.arg(1)]] == StackVar(0)
    assert block.dag[block.symbolics[Sym.arg(0)]] == StackVar(1)
    assert block.outputs_nodes() == []


def test_inline_call_prologue_uses_free_locals():
    block = gen_inline_call_prologue("L", 2, 3)
    assert set(block.symbolics) == {Sym.loc(3), Sym.loc(4)}
    assert block.locs_count() == 5
    assert block.start_label == "L"


CALLER = ["BEGIN main 0 1 0", "CONST 5", "CALL g, 1", "ST loc[0]", "DROP", "END"]
CALLEE = ["BEGIN g 1 0 0", "LD arg[0]", "CONST 1", "BINOP +", "END"]


def test_inline_call():
    ctx, caller = analyze(*CALLER)
    _, callee = analyze(*CALLEE, ctx=ctx)
    before = caller.graph.node_count()
    caller.replace_all_calls(ctx, "g", callee, 1)
    assert not caller.has_calls()
    assert caller.graph.node_count() == before + 1
    assert caller.all_symbolics() == {Sym.loc(0), Sym.loc(1)}
    assert callee.all_symbolics() == {Sym.arg(0)}


def test_inline_limit_zero_keeps_call():
    ctx, caller = analyze(*CALLER)
    _, callee = analyze(*CALLEE, ctx=ctx)
    caller.replace_all_calls(ctx, "g", callee, 0)
    assert caller.has_calls()


def test_inline_argument_mismatch():
    ctx, caller = analyze("BEGIN main 0 0 0", "CONST 1", "CONST 2", "CALL g, 2", "END")
    _, callee = analyze(*CALLEE, ctx=ctx)
    with pytest.raises(ValueError):
        caller.replace_all_calls(ctx, "g", callee, 1)


def test_replace_input_node_rejected():
    ctx, caller = analyze(*CALLER)
    _, callee = analyze(*CALLEE, ctx=ctx)
    with pytest.raises(ValueError):
        caller.replace_node_with_graph(caller.input, callee)


def test_liveliness_drops_unread_stores():
    _, flow = analyze(
        "BEGIN f 0 2 0",
        "CONST 1",
        "ST loc[0]",
        "ST loc[1]",
        "DROP",
        "LABEL L",
        "LD loc[0]",
        "DROP",
        "END",
    )
    read = flow.find_read_symbolics()
    assert read[0] == {Sym.loc(0)}
    assert read[1] == {Sym.loc(0)}
    flow.remove_unused_symbolics()
    assert list(flow.block(0).symbolics) == [Sym.loc(0)]
    assert list(flow.block(1).symbolics) == [Sym.loc(0)]


def test_read_symbolics_around_call_include_everything():
    _, flow = analyze("BEGIN f 0 0 0", "LD x", "CALL h, 1", "LD y", "END")
    read = flow.find_read_symbolics()
    everything = {Sym.glb("x"), Sym.glb("y")}
    assert flow.all_symbolics() == everything
    assert read[1] == everything
    assert read[0] == everything