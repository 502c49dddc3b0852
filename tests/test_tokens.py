"""Access token issuance and verification."""

import base64
import json
from dataclasses import replace
from datetime import timedelta

import pytest

from musicez.config import JWTConfig
from musicez.service.errors import ConfigurationError, TokenValidationError
from musicez.service.tokens import (
    get_token_expiration,
    is_token_expired,
    issue_access_token,
    validate_access_token,
)
from musicez.storage.models import Identity


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssueAndValidate:
    def test_round_trip_preserves_identity(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        claims = validate_access_token(token, jwt_config, now=clock)

        assert claims.subject_id == identity.id
        assert claims.email == identity.email
        assert claims.name == "Listener"
        assert claims.issuer == "musicez-api"
        assert claims.audience == "musicez-client"
        assert claims.expires_at - claims.issued_at == timedelta(minutes=15)

    def test_to_identity_rebuilds_input(self, jwt_config, clock):
        identity = Identity(id="u-9", email="dj@example.com", email_verified=True)
        token = issue_access_token(identity, jwt_config, now=clock)

        assert validate_access_token(token, jwt_config, now=clock).to_identity() == identity

    @pytest.mark.parametrize(
        "override",
        [
            {"secret": "another-secret-that-is-long-enough-1234"},
            {"issuer": "someone-else"},
            {"audience": "other-client"},
        ],
    )
    def test_mismatched_config_rejected(self, identity, jwt_config, clock, override):
        token = issue_access_token(identity, jwt_config, now=clock)

        with pytest.raises(TokenValidationError) as exc_info:
            validate_access_token(token, replace(jwt_config, **override), now=clock)

        assert not exc_info.value.expired
        assert exc_info.value.status_code == 401

    def test_expired_after_sixteen_minutes(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        clock.advance(minutes=16)

        with pytest.raises(TokenValidationError) as exc_info:
            validate_access_token(token, jwt_config, now=clock)

        assert exc_info.value.reason == "expired"
        assert exc_info.value.error_code == "token_expired"

    def test_still_valid_just_before_expiry(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        clock.advance(minutes=14, seconds=59)

        assert validate_access_token(token, jwt_config, now=clock).subject_id == "user-1"

    def test_leeway_extends_acceptance(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        clock.advance(minutes=15, seconds=20)

        lenient = replace(jwt_config, leeway_seconds=30)
        assert validate_access_token(token, lenient, now=clock).email == identity.email

    def test_tampered_payload_rejected(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        header, _, signature = token.split(".")
        forged = _b64({"sub": "admin", "email": "x@example.com", "exp": 9999999999,
                       "iss": "musicez-api", "aud": "musicez-client"})

        with pytest.raises(TokenValidationError) as exc_info:
            validate_access_token(f"{header}.{forged}.{signature}", jwt_config, now=clock)

        assert exc_info.value.reason == "bad_signature"

    def test_none_algorithm_rejected(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        _, payload, signature = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenValidationError) as exc_info:
            validate_access_token(f"{header}.{payload}.{signature}", jwt_config, now=clock)

        assert exc_info.value.reason == "malformed"

    @pytest.mark.parametrize(
        "token",
        ["", "not-a-jwt", "a.b", "!!!.???.***", _b64({"alg": "HS256"}) + "." + _b64({"sub": "x"}) + ".sig\u00e9"],
    )
    def test_malformed_tokens(self, jwt_config, token):
        with pytest.raises(TokenValidationError) as exc_info:
            validate_access_token(token, jwt_config)

        assert exc_info.value.reason in {"missing", "malformed"}

    def test_non_ascii_signature_is_malformed(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        header, payload, _ = token.split(".")

        with pytest.raises(TokenValidationError) as exc_info:
            validate_access_token(f"{header}.{payload}.sig\u00e9", jwt_config, now=clock)

        assert exc_info.value.reason == "malformed"
        assert exc_info.value.status_code == 401

    def test_error_message_never_contains_secret(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)
        other = replace(jwt_config, secret="a-completely-different-signing-secret!!")

        with pytest.raises(TokenValidationError) as exc_info:
            validate_access_token(token, other, now=clock)

        assert jwt_config.secret not in str(exc_info.value)
        assert other.secret not in str(exc_info.value)


class TestIssueRequirements:
    def test_missing_email_is_configuration_error(self, jwt_config):
        with pytest.raises(ConfigurationError):
            issue_access_token(Identity(id="u1", email=""), jwt_config)

    def test_missing_id_is_configuration_error(self, jwt_config):
        with pytest.raises(ConfigurationError):
            issue_access_token(Identity(id="", email="a@example.com"), jwt_config)

    def test_missing_secret_is_configuration_error(self, identity):
        with pytest.raises(ConfigurationError):
            issue_access_token(identity, JWTConfig(secret=""))

    def test_validation_without_secret_is_configuration_error(self, identity, jwt_config):
        token = issue_access_token(identity, jwt_config)

        with pytest.raises(ConfigurationError):
            validate_access_token(token, JWTConfig(secret=""))

    def test_bad_expiry_format_is_configuration_error(self, identity):
        with pytest.raises(ConfigurationError):
            issue_access_token(identity, JWTConfig(secret="s" * 40, access_token_expiry="15 minutes"))


class TestExpirationHelpers:
    def test_get_token_expiration(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)

        assert get_token_expiration(token) == clock() + timedelta(minutes=15)

    def test_get_token_expiration_malformed(self):
        with pytest.raises(TokenValidationError):
            get_token_expiration("garbage")

    def test_is_token_expired(self, identity, jwt_config, clock):
        token = issue_access_token(identity, jwt_config, now=clock)

        assert not is_token_expired(token, now=clock)
        clock.advance(minutes=15)
        assert is_token_expired(token, now=clock)

    def test_unreadable_token_counts_as_expired(self):
        assert is_token_expired("not.a.token")
