"""TOTP generation and verification (RFC 6238, HMAC-SHA1)."""

from urllib.parse import parse_qs, urlparse

import pytest

from authcore.service import otp

# RFC 6238 appendix B seed "12345678901234567890" in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestBase32:
    def test_decode_rfc_seed(self):
        assert otp.base32_decode(RFC_SECRET) == b"12345678901234567890"

    def test_decode_ignores_padding_case_and_spaces(self):
        assert otp.base32_decode("gezd gnbv gy3t qojq====") == otp.base32_decode("GEZDGNBVGY3TQOJQ")

    def test_decode_malformed_never_raises(self):
        assert otp.base32_decode("!!!") == b""
        assert otp.base32_decode("") == b""
        assert otp.base32_decode(None) == b""

    def test_encode_pads_to_multiple_of_eight(self):
        encoded = otp.base32_encode(b"12345678901234567890")
        assert encoded == RFC_SECRET
        assert len(otp.base32_encode(b"abc")) % 8 == 0
        assert otp.base32_encode(b"abc").endswith("=")

    def test_random_secret_is_160_bits(self):
        secret = otp.random_base32_secret()
        assert len(secret) == 32
        assert len(otp.base32_decode(secret)) == 20
        assert secret != otp.random_base32_secret()


class TestGenerate:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_rfc6238_sha1_vectors(self, timestamp, expected):
        assert otp.generate_totp(RFC_SECRET, at=timestamp) == expected

    def test_eight_digit_codes(self):
        assert otp.generate_totp(RFC_SECRET, digits=8, at=59) == "94287082"

    def test_codes_are_zero_padded(self):
        code = otp.generate_totp(RFC_SECRET, at=1234567890)
        assert len(code) == 6
        assert code.startswith("00")

    def test_same_step_same_code(self):
        assert otp.generate_totp(RFC_SECRET, at=60) == otp.generate_totp(RFC_SECRET, at=89)


class TestVerify:
    def test_current_code_verifies(self):
        code = otp.generate_totp(RFC_SECRET, at=1_700_000_000)
        assert otp.verify_totp(RFC_SECRET, code, at=1_700_000_000)

    def test_one_step_skew_tolerated_both_directions(self):
        t0 = 1_700_000_010
        code = otp.generate_totp(RFC_SECRET, at=t0)
        assert otp.verify_totp(RFC_SECRET, code, window=1, at=t0 + 30)
        assert otp.verify_totp(RFC_SECRET, code, window=1, at=t0 - 30)

    def test_code_outside_window_rejected(self):
        t0 = 1_700_000_010
        code = otp.generate_totp(RFC_SECRET, at=t0)
        assert not otp.verify_totp(RFC_SECRET, code, window=1, at=t0 + 2 * 30 + 30)
        assert not otp.verify_totp(RFC_SECRET, code, window=1, at=t0 - 2 * 30 - 30)

    def test_zero_window_only_accepts_current_step(self):
        t0 = 1_700_000_010
        code = otp.generate_totp(RFC_SECRET, at=t0)
        assert otp.verify_totp(RFC_SECRET, code, window=0, at=t0)
        assert not otp.verify_totp(RFC_SECRET, code, window=0, at=t0 + 30)

    @pytest.mark.parametrize("bad", ["", "12345", "abcdef", "0000000", None])
    def test_malformed_codes_never_match(self, bad):
        assert not otp.verify_totp(RFC_SECRET, bad, at=59)

    def test_malformed_secret_does_not_raise(self):
        assert otp.verify_totp("@@@", "123456", at=59) in (True, False)

    def test_surrounding_whitespace_ignored(self):
        assert otp.verify_totp(RFC_SECRET, " 287082 ", at=59)


class TestOtpauthUri:
    def test_uri_carries_parameters(self):
        uri = otp.build_otpauth_uri("JBSWY3DPEHPK3PXP====", "user@example.com", "authcore")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        params = parse_qs(parsed.query)
        assert params["secret"] == ["JBSWY3DPEHPK3PXP"]
        assert params["issuer"] == ["authcore"]
        assert params["algorithm"] == ["SHA1"]
        assert params["digits"] == ["6"]
        assert params["period"] == ["30"]
        assert "authcore%3Auser%40example.com" in parsed.path
