"""Core utilities: exceptions, retry policies, event bus, time helpers."""
