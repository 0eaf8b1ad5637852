"""FormHook: webhook delivery for conversational form sessions."""
