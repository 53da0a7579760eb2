"""
Orchestration module.

Contains the delegated action workflow, ownership-return polling, the
progress bus, trigger dispatch and the periodic monitor.
"""
