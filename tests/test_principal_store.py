import pytest

from admissions_portal.storage.errors import ConstraintViolation
from admissions_portal.storage.memory import PrincipalStore


def test_store_persists_principals_and_credentials(tmp_path):
    store = PrincipalStore(state_dir=str(tmp_path))
    principal = store.create_principal(
        "Persist@College.edu", "Persisted", role="officer", preferences={"theme": "dark"}
    )
    store.save_password(principal.id, "hash-value")

    reloaded = PrincipalStore(state_dir=str(tmp_path))

    restored = reloaded.get_principal(principal.id)
    assert restored
    assert restored.email == "persist@college.edu"
    assert restored.role == "officer"
    assert restored.preferences == {"theme": "dark"}
    assert reloaded.get_password_record(principal.id).password_hash == "hash-value"


def test_duplicate_email_is_a_constraint_violation():
    store = PrincipalStore()
    store.create_principal("dup@college.edu", "First")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_principal(" DUP@college.edu", "Second")
    assert exc_info.value.field == "email"


def test_unknown_role_rejected():
    with pytest.raises(ValueError):
        PrincipalStore().create_principal("x@college.edu", "X", role="registrar")


def test_delete_removes_credentials():
    store = PrincipalStore()
    principal = store.create_principal("gone@college.edu", "Gone")
    store.save_password(principal.id, "hash")

    assert store.delete_principal(principal.id) is True
    assert store.get_principal(principal.id) is None
    assert store.get_password_record(principal.id) is None
    assert store.delete_principal(principal.id) is False


def test_update_profile_merges_preferences():
    store = PrincipalStore()
    principal = store.create_principal("p@college.edu", "P", preferences={"a": 1})
    updated = store.update_profile(principal.id, name="Renamed", preferences={"b": 2})
    assert updated.name == "Renamed"
    assert updated.preferences == {"a": 1, "b": 2}
    assert updated.updated_at is not None


def test_list_principals_filters_by_role():
    store = PrincipalStore()
    store.create_principal("a@college.edu", "A", role="admin")
    store.create_principal("b@college.edu", "B")
    assert [p.email for p in store.list_principals(role="admin")] == ["a@college.edu"]
    assert len(store.list_principals()) == 2


def test_lookup_applies_compatibility_normalization():
    store = PrincipalStore()
    principal = store.create_principal("ＡＤＡ@college.edu", "Ada")
    assert principal.email == "ada@college.edu"
    assert store.get_principal_by_email("ada@college.edu").id == principal.id
    assert store.get_principal_by_email("ａｄａ@College.edu").id == principal.id
