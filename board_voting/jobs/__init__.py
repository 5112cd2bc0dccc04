"""
Background Jobs for Board Voting.

- deadline_sweep: Concludes votes whose deadline has passed
- listener_worker: Runs the notification listener standalone
"""

from .deadline_sweep import run_deadline_sweep
from .listener_worker import run_listener_worker

__all__ = ["run_deadline_sweep", "run_listener_worker"]
