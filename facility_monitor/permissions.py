"""
Role-based access control for Facility Monitor.

Two static maps are defined here:
1. Table patterns per role and operation, used by the query builder
2. Entity permission levels per role, used by the entity access layer
"""
from enum import Enum
from typing import Dict, List

from facility_monitor.services.error_handler import PermissionDenied


class TableOperation(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class PermissionLevel(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


class EntityType(str, Enum):
    POWER_DATA = "power_data"
    ENVIRONMENTAL_DATA = "environmental_data"
    EQUIPMENT = "equipment"
    SETTINGS = "settings"
    USER = "user"
    AGENT_CONVERSATION = "agent_conversation"
    AGENT_MESSAGE = "agent_message"
    AGENT_TASK = "agent_task"
    AGENT_FUNCTION = "agent_function"
    AGENT_SETTING = "agent_setting"
    SIGNAL_NOTIFICATION = "signal_notification"
    ISSUE = "issue"
    COMMENT = "comment"


ADMIN_ROLE = "admin"

# Stored user roles that share the permissions of another role
ROLE_ALIASES = {
    "viewer": "user",
}

_AGENT_TABLES = [
    "langchain_agent_conversations",
    "langchain_agent_messages",
    "langchain_agent_tasks",
]

ROLE_TABLE_PERMISSIONS: Dict[str, Dict[str, List[str]]] = {
    "admin": {
        "read": ["*"],
        "write": ["*"],
        "delete": ["*"],
    },
    "manager": {
        "read": ["*"],
        "write": ["power_data", "environmental_data", "equipment", "langchain_*"],
        "delete": ["langchain_agent_messages", "langchain_agent_tasks"],
    },
    "user": {
        "read": ["power_data", "environmental_data", "equipment"] + _AGENT_TABLES,
        "write": list(_AGENT_TABLES),
        "delete": ["langchain_agent_messages"],
    },
}

_R = [PermissionLevel.READ]
_RW = [PermissionLevel.READ, PermissionLevel.WRITE]
_RWA = [PermissionLevel.READ, PermissionLevel.WRITE, PermissionLevel.ADMIN]

ENTITY_PERMISSIONS: Dict[str, Dict[EntityType, List[PermissionLevel]]] = {
    "user": {
        EntityType.POWER_DATA: _R,
        EntityType.ENVIRONMENTAL_DATA: _R,
        EntityType.EQUIPMENT: _R,
        EntityType.SETTINGS: _R,
        EntityType.USER: _R,
        EntityType.AGENT_CONVERSATION: _RW,
        EntityType.AGENT_MESSAGE: _RW,
        EntityType.AGENT_TASK: _R,
        EntityType.AGENT_FUNCTION: _R,
        EntityType.AGENT_SETTING: _R,
        EntityType.SIGNAL_NOTIFICATION: _R,
        EntityType.ISSUE: _RW,
        EntityType.COMMENT: _RW,
    },
    "operator": {
        EntityType.POWER_DATA: _R,
        EntityType.ENVIRONMENTAL_DATA: _R,
        EntityType.EQUIPMENT: _RW,
        EntityType.SETTINGS: _RW,
        EntityType.USER: _R,
        EntityType.AGENT_CONVERSATION: _RW,
        EntityType.AGENT_MESSAGE: _RW,
        EntityType.AGENT_TASK: _RW,
        EntityType.AGENT_FUNCTION: _R,
        EntityType.AGENT_SETTING: _RW,
        EntityType.SIGNAL_NOTIFICATION: _RW,
        EntityType.ISSUE: _RW,
        EntityType.COMMENT: _RW,
    },
    "manager": {
        EntityType.POWER_DATA: _R,
        EntityType.ENVIRONMENTAL_DATA: _R,
        EntityType.EQUIPMENT: _RW,
        EntityType.SETTINGS: _RW,
        EntityType.USER: _RW,
        EntityType.AGENT_CONVERSATION: _RW,
        EntityType.AGENT_MESSAGE: _RW,
        EntityType.AGENT_TASK: _RW,
        EntityType.AGENT_FUNCTION: _R,
        EntityType.AGENT_SETTING: _RW,
        EntityType.SIGNAL_NOTIFICATION: _RWA,
        EntityType.ISSUE: _RWA,
        EntityType.COMMENT: _RWA,
    },
}


def normalize_role(role: str) -> str:
    """Lower-case a role name and resolve aliases such as Viewer."""
    key = (role or "").strip().lower()
    return ROLE_ALIASES.get(key, key)


def _value(member) -> str:
    return str(getattr(member, "value", member)).lower()


def _matches(table: str, pattern: str) -> bool:
    if pattern == "*":
        return True
    if pattern == table:
        return True
    if pattern.endswith("*"):
        return table.startswith(pattern[:-1])
    return False


def has_table_permission(table: str, role: str, operation: str) -> bool:
    """
    Check whether a role may perform an operation on a table.

    Args:
        table: Table name
        role: User role (case-insensitive)
        operation: One of read, write, delete

    Returns:
        True if any pattern granted to the role for the operation matches
    """
    role_permissions = ROLE_TABLE_PERMISSIONS.get(normalize_role(role))
    if not role_permissions:
        return False
    patterns = role_permissions.get(_value(operation), [])
    return any(_matches(table, pattern) for pattern in patterns)


def check_table_permission(table: str, role: str, operation: str) -> None:
    """Raise PermissionDenied unless the role may perform the operation on the table."""
    if not has_table_permission(table, role, operation):
        raise PermissionDenied(f"Role '{role}' is not allowed to {_value(operation)} table '{table}'")


def has_permission(role: str, entity: EntityType, level: PermissionLevel) -> bool:
    """Check the entity permission matrix; admin is always allowed."""
    key = normalize_role(role)
    if key == ADMIN_ROLE:
        return True
    try:
        entity_type = EntityType(_value(entity))
    except ValueError:
        return False
    granted = ENTITY_PERMISSIONS.get(key, {}).get(entity_type, [])
    return _value(level) in [g.value for g in granted]


def check_permission(role: str, entity: EntityType, level: PermissionLevel) -> None:
    if not has_permission(role, entity, level):
        raise PermissionDenied(
            f"Permission denied for {role} to {_value(level)} {_value(entity)}"
        )
