"""Operator prompts and headless decision strategies."""
