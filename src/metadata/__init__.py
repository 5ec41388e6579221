"""Basic and rich file metadata extraction."""
