"""Dispatch state, orchestration, and the pieces they drive."""
