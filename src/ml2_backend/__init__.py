"""ML2 backend - model conversion, code generation and execution pipeline."""

__version__ = "0.1.0"
