"""UI package exports for the CLI and its renderer."""

from tdd_orchestrator.ui.cli import CLIError, build_parser, run_cli
from tdd_orchestrator.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
