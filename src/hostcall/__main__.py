"""CLI entry point for hostcall."""

from __future__ import annotations

from hostcall.cli import cli

if __name__ == "__main__":
    cli()
