"""Utility helpers for FormHook."""
