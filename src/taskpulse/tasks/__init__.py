"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskStatus, Priority, User)
- task_store.py: SQLite-backed storage, atomic transitions, timer resolutions
- scoring.py: points and streak rules applied on completion
- alerts.py: due/timer alert evaluation and per-connection dedup cache
- lifecycle.py: status transitions + notifications to connected owners/assignees
- reconciler.py: polling loop that turns evaluations into live events
"""
