# smopt

`smopt` optimizes stack machine code (`.sm` files). Each function is split into
linear blocks. Every block becomes a data-flow graph, and the blocks of a function
form a control-flow graph. Optimization passes work on these graphs, and the result
is compiled back into stack machine code.

## Installation

```
pip install .
```

## Command line

```
smopt --source program.sm -O
```

The optimized code is written next to the source with the extension `.osm`
(`program.osm` above), ending with a `!!` line. If the source cannot be read or a
line cannot be parsed, the command prints `Error: ...` to standard error and exits
with status 1.

Options:

- `-s, --source PATH`: the stack machine code to optimize (required)
- `-g, --graphs-dir DIR`: write one Graphviz file `<function>.dot` per function into `DIR`
- `-e, --elim-dead-code`: eliminate dead code in blocks and unreachable blocks
- `--elim-stores`: fold store nodes into the data graph (always on)
- `-c, --const-prop`: fold binary operations on constants
- `-t, --tag-check-eval`: fold tag checks on freshly built S-expressions
- `-j, --jump-on-const`: turn conditional jumps on constants into unconditional ones
- `-m, --merge-blocks`: merge a block into its only predecessor when that one jumps to it unconditionally
- `--liveliness-analysis`: drop stores to symbols that are never read afterwards
- `--tail-call`: turn a function's exit calls to itself into a jump back to its entry
- `--inline-strategy`: inline functions with fewer than 10 flow nodes that make no calls
- `--force-inline NAME [NAME ...]`: inline the named functions once per call site
- `--remove-unused-decls`: drop functions not reachable from public functions or functions whose name contains `init`
- `-p, --passes N`: optimization passes per function (default 1)
- `--unit-passes N`: optimization passes over the whole unit (default 1)
- `-O, --optim-full`: turn on every optimization above
- `-V, --version`: print the version

Lines that are blank or contain `META` are skipped when reading the source.
In the output, functions whose name contains `init` come first.

## Library use

```python
from smopt.cli import parse_stack_code
from smopt.codegen import write_code
from smopt.common import Ctx
from smopt.unit import Unit

with open("program.sm") as fh:
    code = parse_stack_code(fh.read())

ctx = Ctx()
unit = Unit.analyze(ctx, code)
print(write_code(unit.compile()))
```

The pieces:

- `smopt.common`: instruction classes, `parse_inst` for one line of code
  (malformed input raises `ParseError`), `Ctx` for fresh labels, and the option
  types `DataGraphOptimFlags` and `FlowOptimFlags`.
- `smopt.graph`: `StableGraph`, a directed multigraph whose indices survive removals.
- `smopt.datagraph`: `DataGraph`, the data-flow graph of one linear block, with
  store removal, dead code elimination, constant propagation and tag check folding.
- `smopt.flowgraph`: `FlowGraph`, the control-flow graph of one function, with
  jump folding, block merging, inlining and tail call replacement.
- `smopt.codegen`: `compile_block`, `compile_function` and `write_code`, which
  turn graphs back into instructions and instructions into text.
- `smopt.unit`: `Unit` and `UnitOptimFlags`, the whole program and its optimization switches.
- `smopt.dot`: `function_graph`, which renders a flow graph as Graphviz source.

Progress details are logged at debug level through the standard `logging` module.

## What it does not do

`smopt` only rewrites code. It does not run stack machine programs, and it does
not render `.dot` files into images; use Graphviz for that.