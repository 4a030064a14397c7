import base64
import json
import time

from authcore.config import Settings
from authcore.service.access_tokens import AccessTokenCodec


def _codec(**overrides):
    params = dict(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")
    params.update(overrides)
    return AccessTokenCodec(Settings(**params))


def _payload(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestAccessTokens:
    def test_issue_and_decode(self):
        codec = _codec()
        token, expires_at = codec.issue("user-1", ["user"])
        payload = codec.decode(token)
        assert payload["sub"] == "user-1"
        assert payload["roles"] == ["user"]
        assert payload["token_type"] == "access"
        assert payload["exp"] == int(expires_at.timestamp())

    def test_ttl_follows_settings(self):
        token, _ = _codec(access_token_ttl_minutes=5).issue("user-1", [])
        payload = _payload(token)
        assert payload["exp"] - payload["iat"] == 300

    def test_other_secret_rejected(self):
        token, _ = _codec().issue("user-1", [])
        assert _codec(jwt_secret="another-secret-value-that-is-long-enough").decode(token) is None

    def test_other_audience_rejected(self):
        token, _ = _codec().issue("user-1", [])
        assert _codec(jwt_audience="someone-else").decode(token) is None

    def test_expired_beyond_leeway(self, monkeypatch):
        codec = _codec(access_token_ttl_minutes=1)
        token, _ = codec.issue("user-1", [])
        real_time = time.time
        monkeypatch.setattr(time, "time", lambda: real_time() + 60 + 121)
        assert codec.decode(token) is None

    def test_garbage(self):
        codec = _codec()
        assert codec.decode("") is None
        assert codec.decode("a.b") is None
        assert codec.decode("a.b.c") is None
        assert codec.decode("a.b.ü") is None

    def test_extract_bearer(self):
        assert AccessTokenCodec.extract_bearer("Bearer abc") == "abc"
        assert AccessTokenCodec.extract_bearer("bearer  abc ") == "abc"
        assert AccessTokenCodec.extract_bearer("Basic abc") is None
        assert AccessTokenCodec.extract_bearer(None) is None
