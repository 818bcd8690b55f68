"""
Shared utilities for the fitting pipeline.

Contains lightweight helper functions used across modules,
such as column checks and safe numeric conversion.
"""
