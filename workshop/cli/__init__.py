"""Workshop command-line interface."""
