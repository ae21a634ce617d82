"""Core sync engine for CasiListo.

CRITICAL: This package must have NO UI dependencies.
"""
