"""Core infrastructure: clock, configuration and logging."""
