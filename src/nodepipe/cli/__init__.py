"""Nodepipe CLI — incremental LLM data pipelines."""

from nodepipe.cli.main import cli, main

__all__ = ["cli", "main"]
