"""Lifecycle scheduler and its workers."""
