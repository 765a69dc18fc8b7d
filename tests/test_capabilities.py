import pytest

from gearflow.db_models import Role
from gearflow.errors import ForbiddenError
from gearflow.services.capabilities import Actor, Capability, has_capability, require_capability


@pytest.mark.parametrize("role, allowed", [
    (Role.ADMIN, True),
    (Role.STAFF, False),
    (Role.STUDENT, False),
])
def test_only_admins_create_overrides(role, allowed):
    assert has_capability(Actor(id=1, role=role), Capability.CREATE_OVERRIDE) is allowed


def test_staff_can_adjust_stock_but_students_cannot():
    assert has_capability(Actor(1, Role.STAFF), Capability.ADJUST_STOCK)
    assert not has_capability(Actor(1, Role.STUDENT), Capability.ADJUST_STOCK)


def test_require_capability_raises_forbidden_with_message():
    with pytest.raises(ForbiddenError) as exc:
        require_capability(Actor(7, Role.STAFF), Capability.CREATE_OVERRIDE)
    assert exc.value.status_code == 403
    assert exc.value.to_body() == {"error": "Only admins can create overrides"}
