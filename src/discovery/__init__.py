"""Directory traversal and archive classification."""
