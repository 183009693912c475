"""Graphviz rendering of function flow graphs and their data graphs."""

from __future__ import annotations

from collections.abc import Callable

from smopt.datagraph import DataGraph
from smopt.flowgraph import CallCVertex, CallVertex, FlowGraph, STAVertex, STIVertex

__all__ = ["escape_label", "function_graph"]

_ESCAPES = {'"': '\\"', "\\": "\\\\", "\n": "\\l"}


def escape_label(text: str) -> str:
    """Escape text for a quoted dot label; newlines become left-justified breaks."""
    return "".join(_ESCAPES.get(ch, ch) for ch in text)


def _node_color(graph: DataGraph, node: int) -> str:
    is_input = node in graph.inputs
    is_output = node in graph.outputs_nodes()
    if is_input and is_output:
        return "color = yellow"
    if is_input:
        return "color = green"
    if is_output:
        return "color = red"
    if graph.jump_decided_by == node:
        return "color = purple"
    return ""


def _subgraph(label: str, graph: DataGraph) -> list[str]:
    lines = [
        f"subgraph cluster_{label} {{",
        f'label = "{graph.info_label()}";',
        "style = rounded;",
        "color = black;",
        f"sub{label}_input [shape = point style = invis];",
        f"sub{label}_output [shape = point style = invis];",
    ]
    lines += [f"sub{label}_input -> sub{label}{node};" for node in graph.inputs]
    lines += [f"sub{label}{node} -> sub{label}_output;" for node in graph.outputs_nodes()]

    for node in graph.dag.node_indices():
        syms = ", ".join(str(sym) for sym, target in graph.symbolics.items() if target == node)
        text = escape_label(f"{graph.dag[node]}; [{syms}]")
        lines.append(f'sub{label}{node} [label = "{text}" {_node_color(graph, node)}];')

    lines += [
        f'sub{label}{edge.source} -> sub{label}{edge.target} [label = "{edge.weight}"];'
        for edge in graph.dag.edges()
    ]
    lines.append("}")
    return lines


def _single_node_subgraph(label: str, content: str) -> list[str]:
    return [
        f"subgraph cluster_{label} {{",
        f'label = "{content}";',
        f"sub{label}_input [shape = point style = invis];",
        f"sub{label}_output [shape = point style = invis];",
        "}",
    ]


_SINGLE_NODE_TEXT: dict[type, Callable[[object], str]] = {
    CallVertex: lambda v: f"CALL {v.name}, {v.args}",
    STIVertex: lambda v: "STI",
    STAVertex: lambda v: "STA",
    CallCVertex: lambda v: f"CALLC {v.args}",
}


def function_graph(flow: FlowGraph) -> str:
    """Render a flow graph as a dot digraph with one cluster per node."""
    lines = ["digraph G {", "compound = true;", "node [shape=box]"]

    for node, vertex in flow.graph.node_items():
        label = str(node)
        if isinstance(vertex, DataGraph):
            lines += _subgraph(label, vertex)
        else:
            lines += _single_node_subgraph(label, _SINGLE_NODE_TEXT[type(vertex)](vertex))

    lines += [
        f'sub{edge.source}_output -> sub{edge.target}_input [label = "{edge.weight.value}" '
        f"ltail = cluster_{edge.source} lhead=cluster_{edge.target}]"
        for edge in flow.graph.edges()
    ]
    lines.append("}")
    return "".join(f"{line}\n" for line in lines)