"""Shared helpers: structured merge, errors, embedding widths."""
