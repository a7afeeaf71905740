"""Shipyard CLI — Typer-based command-line interface.

Provides the ``shipyard`` command with subcommands for triggering runs,
inspecting run status and history, and verifying the history hash chain.

All output uses Rich for formatted terminal display.
"""
