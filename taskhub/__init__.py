"""
Task Lifecycle Engine

Core of the agency hub's work-item handling:
- Task lifecycle state machine (todo -> in_progress -> pending_approval -> approved/cancelled)
- Approval workflow: single and two-step sign-off, dependency gating, rejection with rollback
- Time tracking: start/stop timer semantics with clock-skew clamping
- Timer recovery: idempotent, dry-run capable reconciliation of timers left
  running across a terminal transition
- Recurrence scheduler: daily/weekly/monthly rules expanded into concrete tasks

Engine operations are pure: (task snapshot, inputs) -> (new snapshot, instructions).
Persistence and notification delivery are carried out by collaborators.
"""

__version__ = "0.1.0"
