"""Unit tests for logging setup and secret redaction."""

import json
import logging

import pytest

from tokenkeeper.observability.logging_config import (
    TokenRedactionFilter,
    redact,
    setup_logging,
)


def make_record(msg, args=()):
    return logging.LogRecord(
        name="tokenkeeper.auth.flow",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=args,
        exc_info=None,
    )


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    names = ["tokenkeeper", "tokenkeeper.auth", "tokenkeeper.providers", "httpx", "httpcore"]
    levels = {name: logging.getLogger(name).level for name in names}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, value in levels.items():
        logging.getLogger(name).setLevel(value)


@pytest.mark.unit
class TestRedact:
    def test_bearer_header(self):
        assert redact("Authorization: Bearer sl.ABC-123_xyz") == "Authorization: Bearer ***"

    def test_query_string_values(self):
        message = "GET /callback?code=AUTHCODE&state=s1"
        assert redact(message) == "GET /callback?code=***&state=s1"

    def test_form_body_values(self):
        message = "grant_type=refresh_token&refresh_token=R1&client_id=K1"
        assert redact(message) == "grant_type=refresh_token&refresh_token=***&client_id=K1"

    def test_json_values(self):
        message = '{"access_token": "A1", "token_type": "bearer", "refresh_token": "R1"}'
        assert redact(message) == (
            '{"access_token": "***", "token_type": "bearer", "refresh_token": "***"}'
        )

    def test_plain_message_untouched(self):
        message = "Refreshed token for dropbox/dbid:abc"
        assert redact(message) == message


@pytest.mark.unit
class TestTokenRedactionFilter:
    def test_redacts_formatted_arguments(self):
        record = make_record("Exchanging %s", ("code_verifier=VERIFIER",))

        assert TokenRedactionFilter().filter(record) is True

        assert record.getMessage() == "Exchanging code_verifier=***"
        assert record.args is None

    def test_leaves_clean_records_alone(self):
        record = make_record("Token for %s/%s", ("dropbox", "acct"))

        assert TokenRedactionFilter().filter(record) is True

        assert record.msg == "Token for %s/%s"
        assert record.args == ("dropbox", "acct")


@pytest.mark.unit
class TestSetupLogging:
    def test_json_format(self, capsys, restore_logging):
        setup_logging(log_format="json", log_level="INFO")

        logging.getLogger("tokenkeeper.test").info("refresh_token=R1 stored")

        lines = [line for line in capsys.readouterr().out.splitlines() if line]
        entry = json.loads(lines[-1])
        assert entry["message"] == "refresh_token=*** stored"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "tokenkeeper.test"
        assert "timestamp" in entry

    def test_text_format(self, capsys, restore_logging):
        setup_logging(log_format="text", log_level="DEBUG")

        logging.getLogger("tokenkeeper.test").debug("Bearer abc.def")

        out = capsys.readouterr().out
        assert "DEBUG [" in out
        assert "tokenkeeper.test - Bearer ***" in out
        assert "abc.def" not in out

    def test_http_client_loggers_are_quiet(self, restore_logging):
        setup_logging(log_level="DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING
        assert logging.getLogger("tokenkeeper").level == logging.DEBUG
