"""
SafePing Overdue Check-in Engine
================================

Periodic detection of lone workers who have missed a safety check-in, and
escalation of every overdue episode once its grace period has elapsed.

The engine is a single, idempotent pass: it loads active monitoring
schedules, decides which are in session, works out how overdue each
assigned worker is, records an automatic ``overdue`` check-in for every
newly grace-expired episode, and hands the episode to an escalation
collaborator.
"""

__version__ = "0.1.0"
