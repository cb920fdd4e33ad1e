"""Core building blocks: exceptions, logging and resilience helpers."""
