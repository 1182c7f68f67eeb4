"""Core money movement services."""
