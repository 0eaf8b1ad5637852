"""Service layer for FormHook webhook delivery."""
