"""Temporal layer support: key normalization, slice cache, debounced controller."""
