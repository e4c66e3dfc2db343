"""Role capabilities and ownership rules."""

import pytest

from watermeter.models.device import Device
from watermeter.services import access
from watermeter.services.errors import AccessDenied


@pytest.mark.parametrize("role", [access.SUPER_ADMIN, access.ADMIN])
def test_admin_tiers_hold_every_capability(role):
    caps = access.resolve_capabilities(role)
    assert caps == {access.READ, access.WRITE, access.DELETE, access.ISSUE_TOKENS, access.ALL_DEVICES}
    assert access.is_admin(role)


def test_staff_can_issue_but_not_delete():
    caps = access.resolve_capabilities(access.STAFF)
    assert access.ISSUE_TOKENS in caps
    assert access.WRITE in caps
    assert access.DELETE not in caps
    assert not access.is_admin(access.STAFF)


def test_user_is_read_only():
    assert access.resolve_capabilities(access.USER) == {access.READ}
    with pytest.raises(AccessDenied):
        access.require(access.USER, access.WRITE)


def test_unknown_role_has_nothing():
    assert access.resolve_capabilities("GUEST") == frozenset()


def test_ownership():
    device = Device(device_key="D1", user_id="usr_a")
    assert access.is_owner_or_admin("usr_a", access.USER, device)
    assert not access.is_owner_or_admin("usr_b", access.STAFF, device)
    assert access.is_owner_or_admin("usr_b", access.ADMIN, device)
    assert not access.is_owner_or_admin("usr_a", access.ADMIN, None)
