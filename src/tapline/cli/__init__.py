"""tapline command-line interface."""
