"""Beacon: a service registry with heartbeat-based liveness."""

__version__ = '0.1.0'
