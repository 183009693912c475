import pytest

from smopt.common import (
    Begin,
    Call,
    Ctx,
    DataGraphOptimFlags,
    FlowOptimFlags,
    Label,
    parse_inst,
)
from smopt.unit import Unit, UnitOptimFlags

PROGRAM = """
GLOBAL x
PUBLIC Fun (main, main, 0)
LABEL main
BEGIN main 0 1 0
CONST 1
ST loc[0]
DROP
LD loc[0]
CALL f 1
DROP
END
LABEL f
BEGIN f 1 0 0
LD arg[0]
CONST 2
BINOP +
END
LABEL g
BEGIN g 0 0 0
CONST 3
END
"""

LOOP = """
LABEL loop
BEGIN loop 1 0 0
LD arg[0]
CALL loop 1
END
"""


def _parse(text):
    return [parse_inst(line) for line in text.splitlines() if line.strip()]


def _analyze(text):
    return Unit.analyze(Ctx(), _parse(text))


def _flags(*, passes=1, tail_call=False, force_inline=(), inline_strategy=False, remove_unused=False):
    data = DataGraphOptimFlags(
        elim_dead_code=False, elim_stores=True, const_prop=False, tag_eval=False
    )
    flow = FlowOptimFlags(
        elim_dead_code=False,
        jump_on_const=False,
        merge_blocks=False,
        liveliness_analysis=False,
        tail_call=tail_call,
        data_flags=data,
        passes=1,
    )
    return UnitOptimFlags(
        flow_optim=flow,
        force_inline=list(force_inline),
        inline_strategy=inline_strategy,
        remove_unused_decls=remove_unused,
        passes=passes,
    )


def test_analyze_collects_functions_in_name_order():
    unit = _analyze(PROGRAM)
    assert list(unit.functions) == ["f", "g", "main"]


def test_analyze_collects_declarations():
    unit = _analyze(PROGRAM)
    assert unit.declarations == [
        parse_inst("GLOBAL x"),
        parse_inst("PUBLIC Fun (main, main, 0)"),
    ]


def test_declarations_between_functions_are_collected():
    text = LOOP + "GLOBAL y\n" + "LABEL h\nBEGIN h 0 0 0\nCONST 1\nEND\n"
    unit = _analyze(text)
    assert unit.declarations == [parse_inst("GLOBAL y")]
    assert list(unit.functions) == ["h", "loop"]


def test_find_candidates_for_inlining_excludes_callers():
    unit = _analyze(PROGRAM)
    assert unit.find_candidates_for_inlining() == ["f", "g"]


def test_find_used_decls_follows_calls_from_public():
    unit = _analyze(PROGRAM)
    assert unit.find_used_decls() == {"main", "f"}


def test_remove_unused_decls_keeps_reachable_functions():
    unit = _analyze(PROGRAM)
    unit.remove_unused_decls()
    assert list(unit.functions) == ["f", "main"]
    assert len(unit.declarations) == 2


def test_entry_functions_count_as_used():
    unit = _analyze("LABEL zeta_init\nBEGIN zeta_init 0 0 0\nCONST 1\nEND\n")
    assert unit.find_used_decls() == {"zeta_init"}


def test_compile_starts_with_declarations():
    unit = _analyze(PROGRAM)
    code = unit.compile()
    assert code[:2] == unit.declarations


def test_compile_puts_entry_functions_first():
    text = (
        "LABEL alpha\nBEGIN alpha 0 0 0\nCONST 1\nEND\n"
        "LABEL zeta_init\nBEGIN zeta_init 0 0 0\nCONST 2\nEND\n"
    )
    code = _analyze(text).compile()
    names = [inst.name for inst in code if isinstance(inst, Label)]
    function_names = [name for name in names if name in ("alpha", "zeta_init")]
    assert function_names == ["zeta_init", "alpha"]


def test_compile_emits_begin_with_argument_count():
    code = _analyze(PROGRAM).compile()
    begins = [str(inst) for inst in code if isinstance(inst, Begin)]
    assert "BEGIN f, 1, 0, 0" in begins
    assert len(begins) == 3


def test_force_inline_removes_calls():
    unit = _analyze(PROGRAM)
    unit.optimize(Ctx(), _flags(force_inline=["f"]))
    assert not unit.functions["main"].has_calls()
    assert not any(isinstance(inst, Call) for inst in unit.compile())


def test_force_inline_of_unknown_function_raises():
    unit = _analyze(PROGRAM)
    with pytest.raises(KeyError):
        unit.optimize(Ctx(), _flags(force_inline=["missing"]))


def test_inline_strategy_inlines_leaf_functions():
    unit = _analyze(PROGRAM)
    unit.optimize(Ctx(), _flags(inline_strategy=True))
    assert not unit.functions["main"].has_calls()


def test_tail_call_replaces_recursive_exit_call():
    unit = _analyze(LOOP)
    assert unit.functions["loop"].has_calls()
    unit.optimize(Ctx(), _flags(tail_call=True))
    assert not unit.functions["loop"].has_calls()


def test_zero_passes_leave_unit_unchanged():
    unit = _analyze(LOOP)
    unit.optimize(Ctx(), _flags(passes=0, tail_call=True))
    assert unit.functions["loop"].has_calls()


def test_optimize_removes_unused_functions_when_asked():
    unit = _analyze(PROGRAM)
    unit.optimize(Ctx(), _flags(remove_unused=True))
    assert "g" not in unit.functions
    assert set(unit.functions) == {"f", "main"}