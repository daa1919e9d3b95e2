"""Autonomous agent plan executor.

Decomposes a free-form goal into ordered steps, executes them against external
tools, and pauses for human approval before consequential actions.
"""

__version__ = "0.1.0"
