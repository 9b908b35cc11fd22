"""
Shared utilities for Aegis: logging, the wall clock and canonical subject ids.
"""
