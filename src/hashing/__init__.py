"""Content hashing and the run-scoped duplicate registry."""
