"""
Permission policy.

Pure decisions over a loaded user and the resource in question. Nothing here
touches the database, so grants are always the ones loaded for the current
request.
"""
from typing import Iterable, Optional

ADMIN_ROLE = "admin"

PERMISSION_CATALOG = {
    "manage_users": "Manage users and teams",
    "manage_companies": "Manage companies",
    "manage_projects": "Manage projects",
    "manage_tasks": "Manage all tasks",
    "manage_quotes": "Manage quotes",
    "view_reports": "View reports",
    "manage_settings": "Manage system settings",
    "edit_own_tasks": "Edit own assigned tasks",
    "add_timesheets": "Track time",
    "use_chat": "Use chat",
    "use_files": "Use file sharing",
}


def is_admin(user) -> bool:
    """Check if user has the admin role."""
    return (getattr(user, "role", None) or "").lower() == ADMIN_ROLE


def permission_names(user) -> set:
    return {p.name for p in (getattr(user, "permissions", None) or [])}


def allow(user, permission: str) -> bool:
    """Admins are allowed everything; everyone else needs the named grant."""
    if user is None or not getattr(user, "is_active", False):
        return False
    if is_admin(user):
        return True
    return permission in permission_names(user)


def _same(a, b) -> bool:
    return a is not None and b is not None and str(a) == str(b)


# =====================
# Self-access overrides per resource
# =====================


def can_view_user(user, target_user_id) -> bool:
    return _same(user.id, target_user_id) or allow(user, "manage_users")


def can_view_task(user, task) -> bool:
    """Managers see every task; others see tasks assigned to or created by them."""
    if allow(user, "manage_tasks"):
        return True
    return _same(task.assigned_to, user.id) or _same(task.created_by, user.id)


def can_edit_task(user, task) -> bool:
    """
    - manage_tasks may edit any task
    - edit_own_tasks may edit tasks assigned to the user
    """
    if allow(user, "manage_tasks"):
        return True
    return allow(user, "edit_own_tasks") and _same(task.assigned_to, user.id)


def can_track_time(user, task) -> bool:
    """Timers and manual entries need the task assigned to the user, or manage_tasks."""
    return _same(task.assigned_to, user.id) or allow(user, "manage_tasks")


def can_access_timesheet(user, timesheet) -> bool:
    return _same(timesheet.user_id, user.id) or allow(user, "manage_tasks")


def can_view_project(user, member_ids: Iterable) -> bool:
    if allow(user, "manage_projects"):
        return True
    return any(_same(m, user.id) for m in member_ids)


def can_view_event(user, event, participant_ids: Optional[Iterable] = None) -> bool:
    if _same(event.created_by, user.id):
        return True
    return any(_same(p, user.id) for p in (participant_ids or []))


def can_modify_event(user, event) -> bool:
    """Only the creator mutates a calendar event."""
    return _same(event.created_by, user.id)


def can_delete_chat_message(user, message) -> bool:
    return _same(message.sender_id, user.id) or is_admin(user)


def can_read_notification_settings(user, target_user_id) -> bool:
    return _same(user.id, target_user_id) or allow(user, "manage_settings")
