"""
Core modules for ByteSteps Guard.

This package contains the resilient call pipeline: rate limiting,
circuit breaking, retries with backoff, and the audit sink.
"""
