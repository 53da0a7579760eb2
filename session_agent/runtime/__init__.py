"""
Runtime concurrency utilities.
"""
from session_agent.runtime.gate import ConcurrencyGate

__all__ = ["ConcurrencyGate"]
