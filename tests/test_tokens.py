import time

from jose import jwt

from medqa_client.core.tokens import is_expiring, token_claims, token_expiry


def test_token_expiry_reads_exp_claim():
    token = jwt.encode({"sub": "user-1", "exp": 1_900_000_000}, "secret", algorithm="HS256")

    assert token_expiry(token) == 1_900_000_000
    assert token_claims(token)["sub"] == "user-1"


def test_opaque_tokens_have_no_claims():
    assert token_claims("not-a-jwt") == {}
    assert token_expiry("not-a-jwt") is None


def test_token_without_exp():
    token = jwt.encode({"sub": "user-1"}, "secret", algorithm="HS256")

    assert token_expiry(token) is None


def test_is_expiring_honours_margin():
    now = time.time()

    assert is_expiring(int(now) + 30, 60, now=now) is True
    assert is_expiring(int(now) + 3600, 60, now=now) is False
    assert is_expiring(None, 60, now=now) is False
