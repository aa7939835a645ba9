"""Configuration, background workers and the command-line entry point."""
