"""
Core modules for AI Orchestrator.

This package contains the job queue, worker pool, dead-letter handling,
cost monitoring and the shared primitives they are built on.
"""
