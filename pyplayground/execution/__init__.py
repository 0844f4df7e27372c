"""
Execution host for pyplayground.

Owns run state and drives one isolated context per run.
"""

from .host import ExecutionHost, Run, RunSnapshot, RunStatus

__all__ = ["ExecutionHost", "Run", "RunSnapshot", "RunStatus"]
