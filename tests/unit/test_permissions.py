"""
Unit tests for table and entity permissions.
"""
import pytest

from facility_monitor.permissions import (
    EntityType, PermissionLevel, TableOperation, check_permission, check_table_permission,
    has_permission, has_table_permission, normalize_role,
)
from facility_monitor.services.error_handler import PermissionDenied


def test_normalize_role():
    """Roles are case-insensitive and Viewer maps to user."""
    assert normalize_role("Admin") == "admin"
    assert normalize_role(" Viewer ") == "user"
    assert normalize_role(None) == ""


def test_admin_has_every_table():
    for operation in TableOperation:
        assert has_table_permission("users", "admin", operation)


def test_manager_table_patterns():
    """Managers write langchain_* tables through the prefix pattern."""
    assert has_table_permission("settings", "manager", "read")
    assert has_table_permission("langchain_agent_settings", "manager", "write")
    assert not has_table_permission("users", "manager", "write")
    assert has_table_permission("langchain_agent_tasks", "manager", "delete")
    assert not has_table_permission("power_data", "manager", "delete")


def test_user_table_patterns():
    assert has_table_permission("power_data", "user", TableOperation.READ)
    assert not has_table_permission("power_data", "user", TableOperation.WRITE)
    assert not has_table_permission("users", "user", TableOperation.READ)
    assert has_table_permission("langchain_agent_messages", "user", TableOperation.DELETE)


def test_unknown_role_denied():
    """Roles missing from the table map, including operator, get nothing."""
    assert not has_table_permission("power_data", "operator", "read")
    assert not has_table_permission("power_data", "guest", "read")
    with pytest.raises(PermissionDenied) as exc:
        check_table_permission("power_data", "guest", TableOperation.READ)
    assert "guest" in str(exc.value)
    assert exc.value.status_code == 403


def test_entity_permissions():
    """The entity matrix grants per role and level; admin always passes."""
    assert has_permission("admin", EntityType.USER, PermissionLevel.ADMIN)
    assert has_permission("user", EntityType.POWER_DATA, PermissionLevel.READ)
    assert not has_permission("user", EntityType.POWER_DATA, PermissionLevel.WRITE)
    assert has_permission("operator", EntityType.EQUIPMENT, PermissionLevel.WRITE)
    assert has_permission("manager", EntityType.ISSUE, PermissionLevel.ADMIN)
    assert not has_permission("manager", EntityType.USER, PermissionLevel.ADMIN)
    assert has_permission("Viewer", EntityType.COMMENT, "write")


def test_entity_permission_unknown_values():
    assert not has_permission("user", "spaceship", PermissionLevel.READ)
    assert not has_permission("guest", EntityType.POWER_DATA, PermissionLevel.READ)


def test_check_permission_raises():
    check_permission("operator", EntityType.SETTINGS, PermissionLevel.WRITE)
    with pytest.raises(PermissionDenied) as exc:
        check_permission("user", EntityType.SETTINGS, PermissionLevel.WRITE)
    assert "write settings" in str(exc.value)
