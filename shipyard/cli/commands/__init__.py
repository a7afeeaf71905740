"""One module per ``shipyard`` subcommand."""
