from types import SimpleNamespace

import pytest

from access import identity
from access.service import require_batch_access, require_roles, resolve_access
from errors import AuthenticationMissing, AuthorizationDenied, ValidationFailed


@pytest.fixture
def people(make_student, grant_role, link_parent):
    make_student("s1")
    make_student("s2")
    grant_role("student-login", "student", "s1")
    grant_role("coach-1", "coach")
    grant_role("admin-1", "admin")
    link_parent("parent-1", "s1")


def test_missing_identity_is_authentication_error(people):
    with pytest.raises(AuthenticationMissing):
        resolve_access(None, "s1")
    with pytest.raises(AuthenticationMissing):
        resolve_access("", None)


def test_student_login_maps_to_self(people):
    assert resolve_access("student-login", "s1") == frozenset({"self"})
    with pytest.raises(AuthorizationDenied):
        resolve_access("student-login", "s2")


def test_parent_link_only_covers_linked_student(people):
    assert resolve_access("parent-1", "s1") == frozenset({"parent"})
    with pytest.raises(AuthorizationDenied):
        resolve_access("parent-1", "s2")


def test_staff_roles_apply_to_everyone(people):
    assert resolve_access("coach-1", "s2") == frozenset({"coach"})
    assert resolve_access("admin-1", "s1") == frozenset({"admin"})
    assert resolve_access("admin-1") == frozenset({"admin"})


def test_without_target_unknown_user_gets_empty_roles(people):
    assert resolve_access("stranger") == frozenset()
    with pytest.raises(AuthorizationDenied):
        resolve_access("stranger", "s1")


def test_require_roles_filters_by_allowed_set(people):
    assert require_roles("coach-1", "s1", {"coach", "admin"}) == frozenset({"coach"})
    with pytest.raises(AuthorizationDenied):
        require_roles("parent-1", "s1", {"coach", "admin"})


def test_batch_access_needs_staff_role(people):
    assert require_batch_access("coach-1", ["s1", "s2"], strict=True) == frozenset({"coach"})
    assert require_batch_access("coach-1", ["s1", "s2"], strict=False) == frozenset({"coach"})
    with pytest.raises(AuthorizationDenied):
        require_batch_access("parent-1", ["s1"], strict=True)
    with pytest.raises(ValidationFailed):
        require_batch_access("coach-1", [], strict=True)


def test_batch_access_strict_defaults_from_config(app, people, monkeypatch):
    checked = []

    def recording_require_roles(user_id, target, allowed):
        checked.append(target)
        return frozenset({"coach"})

    monkeypatch.setattr("access.service.require_roles", recording_require_roles)

    require_batch_access("coach-1", ["s1", "s2"])
    assert checked == ["s1", "s2"]

    checked.clear()
    app.config["STRICT_BATCH_ACCESS"] = False
    require_batch_access("coach-1", ["s1", "s2"])
    assert checked == ["s1"]


def test_identity_prefers_session(app):
    with app.test_request_context("/"):
        from flask import session

        session["user_id"] = "admin-1"
        assert identity.current_user_id() == "admin-1"


def test_identity_reads_supabase_bearer_token(app):
    class FakeAuth:
        def get_user(self, token):
            assert token == "jwt-123"
            return SimpleNamespace(user=SimpleNamespace(id="coach-1"))

    app.config["USE_SUPABASE"] = True
    app.config["SUPABASE_CLIENT"] = SimpleNamespace(auth=FakeAuth())

    with app.test_request_context("/", headers={"Authorization": "Bearer jwt-123"}):
        assert identity.current_user_id() == "coach-1"


def test_identity_without_credentials(app):
    with app.test_request_context("/"):
        assert identity.current_user_id() is None
        with pytest.raises(AuthenticationMissing):
            identity.require_user_id()
