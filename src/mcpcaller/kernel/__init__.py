"""Driver, runtime wiring and call log."""
