"""
Kindred Ops
===========

Autonomous operations orchestrator: proposals become missions, missions
become steps, agents claim and execute steps, and a periodic heartbeat
evaluates triggers, drains reactions and recovers stale work.
"""

__version__ = "0.1.0"
