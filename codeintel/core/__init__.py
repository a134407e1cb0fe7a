"""
Core application modules.
Contains configuration, errors, logging, metrics, tracing and the
resilience primitives (rate limiter, circuit breaker, cancellation).
"""
