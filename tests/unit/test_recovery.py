from __future__ import annotations

import logging

import pytest

from drafts.errors import QuotaExceededError, StorageWriteError
from drafts.recovery import (
    SIGN_IN_PATH,
    ErrorKind,
    ErrorRecoveryController,
    Severity,
    classify,
    severity,
    strategy,
    user_message,
)


class CriticalError(RuntimeError):
    critical = True


def test_invalid_token_is_an_authentication_redirect():
    kind = classify(Exception("Invalid token"))
    assert kind is ErrorKind.AUTHENTICATION
    assert severity(kind) is Severity.CRITICAL
    strat = strategy(kind)
    assert strat.action == "redirect"
    assert strat.auto_retry is False
    assert strat.redirect_target == SIGN_IN_PATH


@pytest.mark.parametrize(
    "error, kind",
    [
        (Exception("unauthorized: invalid credentials"), ErrorKind.AUTHENTICATION),
        (Exception("403 Forbidden"), ErrorKind.AUTHORIZATION),
        (ConnectionError("Connection refused"), ErrorKind.NETWORK),
        (Exception("Failed to fetch"), ErrorKind.NETWORK),
        (ValueError("contactEmail is required"), ErrorKind.VALIDATION),
        (Exception("invalid transition from reporting"), ErrorKind.VALIDATION),
        (Exception("illegal wizard step transition"), ErrorKind.STATE_MACHINE),
        (QuotaExceededError("full"), ErrorKind.STORAGE),
        (Exception("upload rejected"), ErrorKind.FILE_UPLOAD),
        (Exception("Failed to execute 'removeChild' on 'Node'"), ErrorKind.DOM_MANIPULATION),
        (Exception("HTTP 502 from draft API"), ErrorKind.API),
        (Exception("something odd"), ErrorKind.UNKNOWN),
    ],
)
def test_classification_priority(error, kind):
    assert classify(error) is kind


def test_strategies_and_severities():
    assert strategy(ErrorKind.NETWORK).max_retries == 3
    assert strategy(ErrorKind.NETWORK).auto_retry is True
    assert strategy(ErrorKind.VALIDATION).action == "fix"
    assert strategy(ErrorKind.VALIDATION).max_retries == 0
    assert strategy(ErrorKind.STATE_MACHINE).action == "reset"
    assert strategy(ErrorKind.STATE_MACHINE).max_retries == 1
    assert severity(ErrorKind.DOM_MANIPULATION) is Severity.HIGH
    assert severity(ErrorKind.STORAGE) is Severity.LOW
    assert severity(ErrorKind.UNKNOWN) is Severity.MEDIUM


def test_user_messages_only_for_surfaced_kinds():
    assert user_message(ErrorKind.NETWORK) is None
    msg = user_message(ErrorKind.STORAGE)
    assert msg and "QuotaExceededError" not in msg and "SecurityError" not in msg
    assert user_message(ErrorKind.AUTHENTICATION)


def test_handle_logs_context_and_runs_reset_for_recoverable_kinds(caplog):
    calls = []
    ctl = ErrorRecoveryController(url="/proposals/new", clock=lambda: 42.0)

    with caplog.at_level(logging.DEBUG, logger="drafts.recovery"):
        report = ctl.handle(Exception("illegal wizard step transition"), reset=lambda: calls.append(1), component="Wizard")

    assert report.kind is ErrorKind.STATE_MACHINE
    assert report.reset_invoked is True
    assert calls == [1]
    record = caplog.records[-1]
    assert record.component == "Wizard"
    assert record.timestamp == 42.0
    assert record.url == "/proposals/new"


def test_reset_skipped_for_critical_and_non_recoverable_errors():
    calls = []
    ctl = ErrorRecoveryController()

    ctl.handle(CriticalError("wizard step transition failed"), reset=lambda: calls.append("critical"))
    ctl.handle(Exception("Invalid token"), reset=lambda: calls.append("auth"))
    ctl.handle(StorageWriteError("storage quota exceeded"), reset=lambda: calls.append("storage"))

    assert calls == []
    assert [r.kind for r in ctl.history] == [ErrorKind.STATE_MACHINE, ErrorKind.AUTHENTICATION, ErrorKind.STORAGE]


def test_failing_reset_is_logged_not_raised():
    def boom() -> None:
        raise RuntimeError("reset exploded")

    report = ErrorRecoveryController().handle(Exception("something odd"), reset=boom)
    assert report.kind is ErrorKind.UNKNOWN
    assert report.reset_invoked is False
