"""
Replay Agent

Replays recorded browser workflows as an agent:
- Rule/loop driven step execution with retries
- Login gating before a run
- Domain scoping of every observed navigation
"""

__version__ = "0.1.0"
