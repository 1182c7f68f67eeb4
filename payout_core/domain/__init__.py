"""Domain models, state machines and errors."""
