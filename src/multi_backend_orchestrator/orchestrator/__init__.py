"""Process-level concerns: the command line surface and structured logging."""
