"""Tests for JSON log formatting and the audit helper."""

import io
import json
import logging

from authcore.logger import StructuredLogger
from authcore.utils.audit import log_auth_event


def _capture(name):
    stream = io.StringIO()
    logger = StructuredLogger(name=name, stream=stream, log_file="", level=logging.DEBUG)
    return logger, stream


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestJSONFormatter:

    def test_secret_extras_are_redacted(self):
        logger, stream = _capture("authcore.tests.redaction")

        logger.info("Login submitted", extra={"password": "P@ssw0rd", "refresh_token": "r-1", "event": "LOGIN"})

        entry = _lines(stream)[0]
        assert entry["message"] == "Login submitted"
        assert entry["level"] == "INFO"
        assert entry["extra"]["password"] == "***"
        assert entry["extra"]["refresh_token"] == "***"
        assert entry["extra"]["event"] == "LOGIN"
        assert "P@ssw0rd" not in stream.getvalue()

    def test_nested_secrets_are_redacted(self):
        logger, stream = _capture("authcore.tests.nested")

        logger.debug("Refresh response", extra={"body": {"data": {"access_token": "a-1", "id": "42"}}})

        rendered = _lines(stream)[0]["extra"]["body"]
        assert "a-1" not in rendered
        assert "'id': '42'" in rendered

    def test_exception_is_included(self):
        logger, stream = _capture("authcore.tests.exceptions")

        try:
            raise RuntimeError("registrar down")
        except RuntimeError:
            logger.error("Device registration failed", exc_info=True)

        entry = _lines(stream)[0]
        assert "RuntimeError: registrar down" in entry["exception"]

    def test_same_name_does_not_duplicate_handlers(self):
        first, stream = _capture("authcore.tests.handlers")
        StructuredLogger(name="authcore.tests.handlers", log_file="")

        first.warning("once")

        assert len(_lines(stream)) == 1


class TestAuditEvent:

    def test_event_is_tagged_and_serialised(self):
        logger, stream = _capture("authcore.tests.audit")

        log_auth_event(logger, "LOGIN", "********321", {"account_kind": "user"})

        entry = _lines(stream)[0]
        assert entry["extra"]["event"] == "LOGIN"
        payload = json.loads(entry["message"].removeprefix("AUDIT: "))
        assert payload["action"] == "LOGIN"
        assert payload["subject"] == "********321"
        assert payload["details"] == {"account_kind": "user"}
