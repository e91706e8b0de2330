from admissions_portal.logging import (
    _add_request_context,
    _scrub_credentials,
    bind_principal,
    mask_email,
    set_correlation_id,
)


def test_credentials_are_dropped():
    event = _scrub_credentials(
        None,
        "info",
        {"event": "x", "password": "hunter22", "authorization": "Bearer abc", "new_token": "t"},
    )
    assert event["password"] == "[redacted]"
    assert event["authorization"] == "[redacted]"
    assert event["new_token"] == "[redacted]"


def test_email_keeps_domain_only():
    event = _scrub_credentials(None, "info", {"email": "ada.lovelace@college.edu"})
    assert event["email"] == "ad***@college.edu"
    assert mask_email("not-an-address") == "***"


def test_hash_fields_pass_through():
    event = _scrub_credentials(None, "info", {"email_hash": "abc123"})
    assert event["email_hash"] == "abc123"


def test_request_context_binds_correlation_and_principal():
    cid = set_correlation_id("req-1")
    bind_principal("p-42")

    event = _add_request_context(None, "info", {"event": "x"})

    assert cid == "req-1"
    assert event["correlation_id"] == "req-1"
    assert event["principal_id"] == "p-42"
    assert event["service"] == "admissions-portal"


def test_new_correlation_id_clears_principal():
    bind_principal("p-42")
    set_correlation_id()
    assert "principal_id" not in _add_request_context(None, "info", {})
