"""
In-memory ledger, clock and oracle for paper mode and tests.
"""
from session_agent.simulation.ledger_sim import InMemoryLedger, SimLedgerEndpoint
from session_agent.simulation.sim_clock import SimClock
from session_agent.simulation.sim_oracle import ScriptedPositionOracle, StaticPositionOracle

__all__ = [
    "InMemoryLedger",
    "SimLedgerEndpoint",
    "SimClock",
    "ScriptedPositionOracle",
    "StaticPositionOracle",
]
