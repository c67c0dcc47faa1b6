"""In-process event sink."""
