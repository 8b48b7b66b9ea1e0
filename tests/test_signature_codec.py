import base64
import hashlib
import hmac

import pytest

from boxoffice.core.errors import SigningSecretUnavailable
from boxoffice.services import signature_codec
from boxoffice.services.signature_codec import (
    constant_time_equals,
    sign,
    sign_ticket,
    verify,
    verify_ticket,
)

SECRET = "s3cret-for-tests"


@pytest.mark.parametrize("token", ["a", "tok_7f3b2c", "x" * 256, "ünïcødé-token"])
def test_sign_then_verify_accepts(token):
    assert verify(token, sign(token, SECRET), SECRET) is True


def test_signature_is_hmac_sha256_hex():
    expected = hmac.new(SECRET.encode(), b"tok_1", hashlib.sha256).hexdigest()
    assert sign("tok_1", SECRET) == expected


def test_any_other_signature_is_rejected():
    good = sign("tok_1", SECRET)
    flipped = ("0" if good[0] != "0" else "1") + good[1:]

    assert verify("tok_1", flipped, SECRET) is False
    assert verify("tok_1", good[:-1], SECRET) is False
    assert verify("tok_1", good.upper(), SECRET) is False
    assert verify("tok_2", good, SECRET) is False
    assert verify("tok_1", good, "another-secret") is False
    assert verify("tok_1", "", SECRET) is False


@pytest.mark.parametrize("secret", [None, ""])
def test_verify_fails_closed_without_secret(secret):
    good = sign("tok_1", SECRET)
    assert verify("tok_1", good, secret) is False


def test_legacy_base64_scheme_verifies_during_migration():
    mac = hmac.new(SECRET.encode(), b"tok_legacy", hashlib.sha256).digest()
    legacy = base64.b64encode(mac).decode()

    assert sign("tok_legacy", SECRET, signature_codec.SCHEME_BASE64) == legacy
    assert verify("tok_legacy", legacy, SECRET, accept_legacy=True) is True
    assert verify("tok_legacy", legacy, SECRET, accept_legacy=False) is False
    # the current scheme is always accepted
    assert verify("tok_legacy", sign("tok_legacy", SECRET), SECRET, accept_legacy=False) is True


def test_constant_time_equals_rejects_non_strings():
    assert constant_time_equals("abc", "abc") is True
    assert constant_time_equals("abc", "abd") is False
    assert constant_time_equals("abc", None) is False
    assert constant_time_equals(b"abc", "abc") is False


def test_ticket_helpers_read_secret_at_call_time(monkeypatch):
    monkeypatch.setenv("TICKET_SIGNING_SECRET", "first")
    sig = sign_ticket("tok_1")
    assert verify_ticket("tok_1", sig) is True

    monkeypatch.setenv("TICKET_SIGNING_SECRET", "rotated")
    assert verify_ticket("tok_1", sig) is False


def test_ticket_helpers_fail_closed_when_secret_missing(monkeypatch):
    sig = sign_ticket("tok_1")
    monkeypatch.delenv("TICKET_SIGNING_SECRET", raising=False)

    assert verify_ticket("tok_1", sig) is False
    with pytest.raises(SigningSecretUnavailable):
        sign_ticket("tok_1")
