"""Physical device identification."""
