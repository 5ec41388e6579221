"""Code project detection over a scanned tree."""
