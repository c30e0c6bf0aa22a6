"""Automated position-change execution: planning, scheduling, step pipeline and rollback."""
