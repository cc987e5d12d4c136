"""Tests for login response classification."""

import pytest

from authcore.models.enums import LoginClassification
from authcore.services.device_trust import (
    DeviceTrustDetector,
    extract_token_pair,
    extract_user,
    message_requires_verification,
    sanitize_failure_message,
)


@pytest.fixture
def detector(logger):
    return DeviceTrustDetector(logger)


class TestClassify:

    def test_missing_response_is_failed(self, detector):
        assert detector.classify(None) is LoginClassification.FAILED

    def test_backend_failure_is_failed_even_with_tokens(self, detector, make_response):
        response = make_response(401, "Wrong password", access_token="at")
        assert detector.classify(response) is LoginClassification.FAILED

    def test_unverified_wins_over_new_device(self, detector, make_response):
        response = make_response(is_verified=False, is_new_device=True, access_token="at")
        assert detector.classify(response) is LoginClassification.UNVERIFIED

    def test_new_device_flag_blocks_authentication(self, detector, make_response):
        response = make_response(is_new_device=True, access_token="at", refresh_token="rt")
        assert detector.classify(response) is LoginClassification.NEW_DEVICE

    @pytest.mark.parametrize(
        "message",
        [
            "Please verify with OTP sent to your phone",
            "Thiết bị mới, vui lòng xác thực OTP",
            "Verify your OTP to continue",
        ],
    )
    def test_verification_message_is_new_device(self, detector, make_response, message):
        assert detector.classify(make_response(message=message)) is LoginClassification.NEW_DEVICE

    def test_tokens_without_flags_authenticate(self, detector, make_response):
        response = make_response(access_token="at", refresh_token="rt", user={"id": 1})
        assert detector.classify(response) is LoginClassification.AUTHENTICATED

    def test_nested_tokens_are_found(self, detector, make_response):
        response = make_response(data={"access_token": "at"})
        assert detector.classify(response) is LoginClassification.AUTHENTICATED

    def test_success_without_tokens_is_failed(self, detector, make_response):
        assert detector.classify(make_response(message="Login successful")) is LoginClassification.FAILED


class TestHelpers:

    def test_message_heuristic_needs_otp_context(self):
        assert not message_requires_verification("OTP sent")
        assert not message_requires_verification(None)
        assert message_requires_verification("OTP required to verify this device")

    def test_extract_token_pair_without_refresh(self, make_response):
        pair = extract_token_pair(make_response(access_token="at"))
        assert pair.access_token == "at"
        assert pair.refresh_token is None

    def test_extract_user_coerces_numeric_id(self, make_response):
        user = extract_user(make_response(user={"id": 7, "full_name": "A"}))
        assert user.id == "7"

    def test_extract_user_requires_id(self, make_response):
        assert extract_user(make_response(user={"full_name": "A"})) is None

    def test_successful_wording_never_shown_on_failure(self):
        assert sanitize_failure_message("Login successful") == "Login failed"
        assert sanitize_failure_message(None) == "Login failed"
        assert sanitize_failure_message("Wrong password") == "Wrong password"
