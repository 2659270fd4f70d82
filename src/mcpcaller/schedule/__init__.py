"""Scheduling: seasonal intervals and weighted target selection."""
