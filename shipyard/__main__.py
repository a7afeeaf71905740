"""Allows ``python -m shipyard``."""

from shipyard.cli.app import main

main()
