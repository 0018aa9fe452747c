"""Tests for claudesync.auth."""

from __future__ import annotations

import json

import pytest

from claudesync.auth import load_credentials, save_credentials
from claudesync.errors import CredentialMissing
from claudesync.models import CredentialBundle

from .conftest import SESSION_KEY


def test_missing_file(tmp_path):
    with pytest.raises(CredentialMissing) as info:
        load_credentials(tmp_path / "auth.json")
    assert "claudesync init" in info.value.format_message()


def test_round_trip(tmp_path):
    bundle = CredentialBundle(session_key=SESSION_KEY, organization_id="org-1", csrf_token="csrf")
    path = tmp_path / "auth.json"
    save_credentials(bundle, path)

    data = json.loads(path.read_text())
    assert data["sessionKey"] == SESSION_KEY
    assert data["organizationId"] == "org-1"
    assert data["csrfToken"] == "csrf"

    loaded = load_credentials(path)
    assert loaded.session_key.get_secret_value() == SESSION_KEY
    assert loaded.csrf_token.get_secret_value() == "csrf"
    assert loaded.extracted_at == bundle.extracted_at


def test_secrets_hidden_in_repr(credentials):
    assert SESSION_KEY not in repr(credentials)
    assert SESSION_KEY not in str(credentials.model_dump())


def test_invalid_file_does_not_echo_contents(tmp_path):
    path = tmp_path / "auth.json"
    path.write_text(json.dumps({"sessionKey": SESSION_KEY, "organizationId": 12}))
    with pytest.raises(CredentialMissing) as info:
        load_credentials(path)
    assert SESSION_KEY not in info.value.format_message()
