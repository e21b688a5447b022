#!/usr/bin/env python3
"""
Main entry point for the Typer-based replcast CLI.

This delegates to the UI layer in replcast.ui.cli to keep the
console script mapping stable.
"""

from replcast.ui.cli import run_cli as replcast


if __name__ == "__main__":
    replcast()
