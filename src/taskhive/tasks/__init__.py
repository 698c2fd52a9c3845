"""Task model, role affinity and admission validation."""

from taskhive.tasks.models import Action, Priority, Target, Task, new_task_id
from taskhive.tasks.roles import ACTION_ROLE_AFFINITY, derive_preferred_roles, role_matches
from taskhive.tasks.validator import METADATA_CHECKS, ValidationResult, validate_task

__all__ = [
    "ACTION_ROLE_AFFINITY",
    "METADATA_CHECKS",
    "Action",
    "Priority",
    "Target",
    "Task",
    "ValidationResult",
    "derive_preferred_roles",
    "new_task_id",
    "role_matches",
    "validate_task",
]
