"""Task execution orchestrator.

Drives a coding agent through research, planning and build phases against a
git repository, one branch per task.
"""

__version__ = "0.1.0"
