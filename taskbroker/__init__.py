"""
Reliable Task Dispatch

Signed task publishing over AMQP, prefetch-bounded consumers with dead-lettering,
and exponential-backoff retries persisted in a Redis sorted set.
"""

__version__ = "1.0.0"
