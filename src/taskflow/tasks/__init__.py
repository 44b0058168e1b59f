"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskStatus, TaskPriority, Actor, ...)
- task_store.py: SQLite-backed storage + transaction helper
- task_views.py: derived, read-time fields (is_overdue, notification)
- task_schemas.py: request-body validation
- task_service.py: lifecycle, authorization, assignment and stats
"""
