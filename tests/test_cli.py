import pytest

from smopt.cli import build_parser, main, parse_stack_code, unit_flags_from_args
from smopt.common import Const, Load, ParseError

PROGRAM = """GLOBAL x
LABEL main
BEGIN main, 2, 0, 0

LD arg[0]
LD arg[1]
BINOP +
END
"""


def _write(tmp_path, text):
    path = tmp_path / "prog.sm"
    path.write_text(text)
    return path


def test_parse_stack_code_skips_blank_and_meta_lines():
    code = parse_stack_code("CONST 1\n   \nMETA stuff\n\nLD arg[0]\n")
    assert len(code) == 2
    assert isinstance(code[0], Const)
    assert isinstance(code[1], Load)


def test_parse_stack_code_reports_bad_line():
    with pytest.raises(ParseError):
        parse_stack_code("CONST notanumber\n")


def test_flags_default():
    flags = unit_flags_from_args(build_parser().parse_args(["-s", "a.sm"]))
    assert flags.flow_optim.passes == 1
    assert flags.passes == 1
    assert flags.force_inline == []
    assert flags.flow_optim.data_flags.elim_stores is True
    assert flags.flow_optim.merge_blocks is False
    assert flags.inline_strategy is False


def test_flags_optim_full_sets_everything():
    flags = unit_flags_from_args(build_parser().parse_args(["-s", "a.sm", "-O", "-p", "3"]))
    flow = flags.flow_optim
    assert flow.passes == 3
    assert all([flow.elim_dead_code, flow.jump_on_const, flow.merge_blocks,
                flow.liveliness_analysis, flow.tail_call])
    data = flow.data_flags
    assert all([data.elim_dead_code, data.const_prop, data.tag_eval, data.elim_stores])
    assert flags.inline_strategy and flags.remove_unused_decls


def test_force_inline_values_split_on_spaces():
    args = build_parser().parse_args(["-s", "a.sm", "--force-inline", "f g", "h"])
    assert unit_flags_from_args(args).force_inline == ["f", "g", "h"]


def test_main_writes_optimized_code(tmp_path):
    source = _write(tmp_path, PROGRAM)
    assert main(["-s", str(source)]) == 0
    output = (tmp_path / "prog.osm").read_text()
    assert output.startswith("GLOBAL x\nLABEL main")
    assert output.endswith("!!\n")
    assert "LD arg[0]\nLD arg[1]\nBINOP +" in output
    assert "END" in output


def test_main_output_parses_back(tmp_path):
    source = _write(tmp_path, PROGRAM)
    main(["-s", str(source)])
    lines = (tmp_path / "prog.osm").read_text().splitlines()
    assert lines[-1] == "!!"
    assert len(parse_stack_code("\n".join(lines[:-1]))) == len(lines) - 1


def test_main_const_prop(tmp_path):
    source = _write(tmp_path, "LABEL main\nBEGIN main, 0, 0, 0\nCONST 2\nCONST 3\nBINOP *\nEND\n")
    assert main(["-s", str(source), "-c"]) == 0
    output = (tmp_path / "prog.osm").read_text()
    assert "CONST 6" in output
    assert "BINOP" not in output


def test_main_writes_graphs(tmp_path):
    source = _write(tmp_path, PROGRAM)
    out_dir = tmp_path / "graphs"
    out_dir.mkdir()
    assert main(["-s", str(source), "-g", str(out_dir)]) == 0
    assert (out_dir / "main.dot").read_text().startswith("digraph G {")


def test_main_missing_source_fails(tmp_path):
    assert main(["-s", str(tmp_path / "absent.sm")]) == 1