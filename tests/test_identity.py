import pytest
from jose import jwt

from errors import Forbidden, Unauthenticated
from identity import (
    JWT_ALG,
    JWT_SECRET,
    check_password,
    create_token,
    decode_token,
    hash_password,
    optional_identity,
    require_admin,
    verify_token,
)

from conftest import make_identity


def test_token_round_trip():
    token = create_token("64b000000000000000000001", "police", "Officer Dee")
    who = verify_token(f"Bearer {token}")
    assert who.userId == "64b000000000000000000001"
    assert who.role == "police"
    assert who.name == "Officer Dee"
    assert who.is_admin


def test_missing_header():
    with pytest.raises(Unauthenticated):
        verify_token(None)
    assert optional_identity(None) is None


def test_wrong_scheme():
    token = create_token("u1", "citizen")
    with pytest.raises(Unauthenticated):
        verify_token(f"Basic {token}")


def test_expired_token():
    token = create_token("u1", "citizen", expires_minutes=-1)
    with pytest.raises(Unauthenticated):
        decode_token(token)


def test_bad_signature():
    token = jwt.encode({"sub": "u1", "role": "admin"}, "someone-else", algorithm=JWT_ALG)
    with pytest.raises(Unauthenticated):
        decode_token(token)


def test_unknown_role():
    token = jwt.encode({"sub": "u1", "role": "mayor"}, JWT_SECRET, algorithm=JWT_ALG)
    with pytest.raises(Unauthenticated):
        decode_token(token)


@pytest.mark.parametrize("role,allowed", [("citizen", False), ("admin", True), ("police", True), ("advocate", True)])
def test_require_admin(role, allowed):
    who = make_identity(role)
    if allowed:
        assert require_admin(who) is who
    else:
        with pytest.raises(Forbidden):
            require_admin(who)


def test_password_hashing():
    hashed = hash_password("hunter22")
    assert hashed != "hunter22"
    assert check_password("hunter22", hashed)
    assert not check_password("hunter23", hashed)
    assert not check_password("hunter22", "")
