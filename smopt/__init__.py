"""Stack machine code optimizer built on data-flow and control-flow graphs."""

__version__ = "0.1.0"