import logging

import pytest

from snaglink.auth import bearer_token, decode_owner_token, issue_owner_token
from snaglink.config import DEFAULT_JWT_SECRET, Settings, validate_settings
from snaglink.errors import Unauthorized

SECRET = "another-test-secret-that-is-long-enough"


def test_sha256_scheme_warns(settings, caplog):
    with caplog.at_level(logging.WARNING, logger="snaglink.config"):
        validate_settings(settings)
    assert any("PIN_HASH_SCHEME=sha256" in r.getMessage() for r in caplog.records)


def test_argon2id_scheme_does_not_warn(settings, caplog):
    with caplog.at_level(logging.WARNING, logger="snaglink.config"):
        validate_settings(settings.with_overrides(pin_hash_scheme="argon2id"))
    assert not any("PIN_HASH_SCHEME" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize("overrides", [
    {"pin_hash_scheme": "md5"},
    {"audit_sink": "syslog"},
    {"audit_sink": "s3_object_lock", "s3_bucket": ""},
    {"pin_max_attempts": 0},
    {"rate_limits": {"token_lookup": (0, 60), "pin_attempt": (5, 300), "api_call": (100, 60)}},
    {"env": "prod", "jwt_secret": DEFAULT_JWT_SECRET},
])
def test_invalid_settings_rejected(settings, overrides):
    with pytest.raises(ValueError):
        validate_settings(settings.with_overrides(**overrides))


def test_settings_are_immutable():
    with pytest.raises(Exception):
        Settings().env = "prod"


def test_owner_token_round_trip():
    token = issue_owner_token("owner-9", SECRET)
    assert decode_owner_token(token, SECRET) == "owner-9"


def test_owner_token_wrong_secret():
    token = issue_owner_token("owner-9", SECRET)
    with pytest.raises(Unauthorized):
        decode_owner_token(token, SECRET + "x")


def test_owner_token_expired():
    token = issue_owner_token("owner-9", SECRET, ttl_minutes=-1)
    with pytest.raises(Unauthorized) as exc:
        decode_owner_token(token, SECRET)
    assert "expired" in exc.value.message


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc.def") == "abc.def"
    assert bearer_token("bearer  abc") == "abc"
    for header in (None, "", "Basic abc", "Bearer "):
        with pytest.raises(Unauthorized):
            bearer_token(header)
