"""Agent layer for the side-by-side vanilla/spinel comparison.

Nothing is imported here: sandbox.pool imports agent.logging, and an
eager import of agent.core from this package would close the cycle
sandbox.pool → agent → agent.core → sandbox.pool.
"""
