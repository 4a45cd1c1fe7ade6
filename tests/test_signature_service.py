import base64
import hashlib
import hmac

from app.services.signature_service import compute_signature, verify_signature

SECRET = "channel-secret"
BODY = '{"destination":"U0","events":[{"type":"message","message":{"type":"text","text":"こんにちは"}}]}'


def _expected(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


class TestComputeSignature:
    def test_matches_hmac_sha256_base64(self):
        assert compute_signature(BODY.encode("utf-8"), SECRET) == _expected(BODY.encode("utf-8"))

    def test_str_body_is_utf8_encoded(self):
        assert compute_signature(BODY, SECRET) == compute_signature(BODY.encode("utf-8"), SECRET)


class TestVerifySignature:
    def test_valid_signature(self):
        signature = _expected(BODY.encode("utf-8"))
        assert verify_signature(BODY.encode("utf-8"), SECRET, signature) is True

    def test_deterministic_for_same_inputs(self):
        signature = _expected(BODY.encode("utf-8"))
        results = {verify_signature(BODY.encode("utf-8"), SECRET, signature) for _ in range(5)}
        assert results == {True}

    def test_wrong_secret(self):
        signature = _expected(BODY.encode("utf-8"), secret="other")
        assert verify_signature(BODY.encode("utf-8"), SECRET, signature) is False

    def test_tampered_body(self):
        signature = _expected(BODY.encode("utf-8"))
        assert verify_signature(BODY.replace("こんにちは", "hello").encode("utf-8"), SECRET, signature) is False

    def test_reserialized_body_does_not_match(self):
        raw = b'{"destination": "U0",  "events": []}'
        signature = _expected(raw)
        reserialized = b'{"destination":"U0","events":[]}'
        assert verify_signature(raw, SECRET, signature) is True
        assert verify_signature(reserialized, SECRET, signature) is False

    def test_garbage_signature(self):
        assert verify_signature(BODY.encode("utf-8"), SECRET, "not-base64!") is False

    def test_signature_is_compared_as_received(self):
        signature = _expected(BODY.encode("utf-8"))
        assert verify_signature(BODY.encode("utf-8"), SECRET, f" {signature}\n") is False
