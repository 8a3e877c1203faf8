import unittest

import requests

from elevation.core.errors import (
    ALREADY_ENROLLED, EXPIRED_CHALLENGE, INVALID_CODE, INVALID_CREDENTIALS, NOT_FOUND, PROVIDER_MISCONFIGURED,
    RATE_LIMITED, TRANSIENT, FormatError, ProviderError, RateLimited, classify_error, http_status,
    parse_wait_seconds, user_message,
)


class TestClassifyError(unittest.TestCase):
    def test_structured_codes(self):
        cases = {
            "mfa_verification_failed": INVALID_CODE,
            "mfa_challenge_expired": EXPIRED_CHALLENGE,
            "mfa_factor_not_found": NOT_FOUND,
            "sms_send_failed": PROVIDER_MISCONFIGURED,
            "invalid_credentials": INVALID_CREDENTIALS,
            "mfa_factor_name_conflict": ALREADY_ENROLLED,
        }
        for code, category in cases.items():
            err = classify_error(ProviderError(400, code, "whatever"))
            self.assertEqual(err.category, category, code)

    def test_rate_limit_wait_parsed_from_text(self):
        err = classify_error(ProviderError(429, "over_sms_send_rate_limit",
                                           "For security purposes, you can only request this after 42 seconds."))
        self.assertIsInstance(err, RateLimited)
        self.assertEqual(err.wait_seconds, 42)
        self.assertEqual(err.to_dict()["wait_seconds"], 42)

    def test_rate_limit_from_text_only(self):
        err = classify_error(ProviderError(400, "", "Please wait 1 second before requesting again"))
        self.assertEqual(err.category, RATE_LIMITED)
        self.assertEqual(err.wait_seconds, 1)

    def test_rate_limit_default_wait(self):
        err = classify_error(ProviderError(429, "", "slow down"), default_wait=60)
        self.assertEqual(err.category, RATE_LIMITED)
        self.assertEqual(err.wait_seconds, 60)

    def test_status_fallback(self):
        self.assertEqual(classify_error(ProviderError(404, "", "")).category, NOT_FOUND)
        self.assertEqual(classify_error(ProviderError(500, "", "boom")).category, TRANSIENT)

    def test_expired_access_token_is_not_an_expired_challenge(self):
        for exc in (
            ProviderError(401, "bad_jwt", "invalid JWT: unable to parse or verify signature, token is expired"),
            ProviderError(401, "bad_jwt", "Invalid or expired session"),
            ProviderError(404, "session_not_found", "Session from session_id claim in JWT does not exist"),
            ProviderError(401, "", "Token has expired"),
        ):
            err = classify_error(exc)
            self.assertEqual(err.category, INVALID_CREDENTIALS, exc)
            self.assertIn("sign in again", err.message)

    def test_expired_otp_keeps_challenge_category(self):
        self.assertEqual(classify_error(ProviderError(403, "otp_expired", "Token has expired or is invalid")).category,
                         EXPIRED_CHALLENGE)
        self.assertEqual(classify_error(ProviderError(403, "", "Forbidden")).category, INVALID_CREDENTIALS)

    def test_network_errors_are_transient(self):
        err = classify_error(requests.ConnectionError("refused"))
        self.assertEqual(err.category, TRANSIENT)
        self.assertIn("refused", err.raw)

    def test_message_comes_from_category(self):
        err = classify_error(ProviderError(422, "mfa_verification_failed", "Invalid MFA TOTP code entered"))
        self.assertEqual(err.message, user_message(INVALID_CODE))
        self.assertEqual(err.raw, "Invalid MFA TOTP code entered")
        self.assertEqual(err.to_dict(), {"error": INVALID_CODE, "message": user_message(INVALID_CODE)})

    def test_elevation_errors_pass_through(self):
        err = FormatError("bad")
        self.assertIs(classify_error(err), err)


class TestHelpers(unittest.TestCase):
    def test_parse_wait_seconds(self):
        self.assertEqual(parse_wait_seconds("after 30 seconds."), 30)
        self.assertEqual(parse_wait_seconds("in 1 second"), 1)
        self.assertIsNone(parse_wait_seconds("soon"))

    def test_http_status(self):
        self.assertEqual(http_status(RateLimited(5)), 429)
        self.assertEqual(http_status(FormatError()), 400)
