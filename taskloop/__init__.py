"""
taskloop - Iterative executor/judge dialogues for Claude Code.

This package runs a bounded dialogue between specialist agent roles until a
task is signalled complete, with persisted task artifacts and telemetry.
"""

__version__ = "0.1.0"
