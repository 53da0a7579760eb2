"""
Domain module.

Core value types, the ledger/oracle protocols and push-channel events.
"""
