"""Core configuration, exceptions, events and types."""
