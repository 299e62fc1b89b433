"""Turnstile: admission, session memory and resilient invocation in front of an inference service."""

__version__ = "0.1.0"
