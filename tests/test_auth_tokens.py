import jwt
import pytest

from services.auth_tokens import AuthTokenError, create_access_token, decode_token, get_token_settings
from web.middleware.auth_context import AuthenticatedUser, bearer_token


def test_access_token_round_trip():
    token, expires_in = create_access_token(user_id="user-1", email="user-1@example.com")

    claims = decode_token(token, scope="access")

    assert expires_in == get_token_settings().access_ttl_seconds
    assert AuthenticatedUser.from_claims(claims) == AuthenticatedUser(id="user-1", email="user-1@example.com", role="user")


def test_expired_token_is_rejected():
    token, _ = create_access_token(user_id="user-1", ttl_seconds=-5)

    with pytest.raises(AuthTokenError) as excinfo:
        decode_token(token)

    assert excinfo.value.code == "auth.token_expired"


def test_wrong_scope_and_foreign_signature_are_rejected():
    settings = get_token_settings()
    token, _ = create_access_token(user_id="user-1")
    forged = jwt.encode(
        {"sub": "user-1", "aud": settings.audience, "iss": settings.issuer, "exp": 4102444800},
        "another-secret-that-is-long-enough-for-hs256",
        algorithm="HS256",
    )

    with pytest.raises(AuthTokenError, match="refresh"):
        decode_token(token, scope="refresh")
    with pytest.raises(AuthTokenError) as excinfo:
        decode_token(forged)
    assert excinfo.value.code == "auth.token_invalid"


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc.def", "abc.def"),
        ("bearer   abc.def  ", "abc.def"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer", None),
        ("", None),
        (None, None),
    ],
)
def test_bearer_token_parsing(header, expected):
    assert bearer_token(header) == expected
