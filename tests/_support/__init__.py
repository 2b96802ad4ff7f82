"""Shared helpers for schemaspine tests."""
