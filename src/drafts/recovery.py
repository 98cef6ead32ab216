from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple


SIGN_IN_PATH = "/auth/sign-in"

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NETWORK = "network"
    VALIDATION = "validation"
    STATE_MACHINE = "state_machine"
    STORAGE = "storage"
    FILE_UPLOAD = "file_upload"
    DOM_MANIPULATION = "dom_manipulation"
    API = "api"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Checked in order; first kind with a matching keyword wins. Authorization
# precedes authentication so "not authorized" is not read as an auth failure.
_KEYWORDS: Tuple[Tuple[ErrorKind, Tuple[str, ...]], ...] = (
    (ErrorKind.AUTHORIZATION, ("forbidden", "permission", "access denied", "insufficient privileges", "not authorized", "403")),
    (ErrorKind.AUTHENTICATION, ("unauthorized", "unauthenticated", "token", "auth", "login", "session expired", "401")),
    (ErrorKind.NETWORK, ("network", "fetch", "connection", "timeout", "timed out", "transporterror", "offline")),
    (ErrorKind.VALIDATION, ("validation", "invalid", "required", "must be", "format", "typeerror")),
    (ErrorKind.STATE_MACHINE, ("transition", "state machine", "wizard step")),
    (ErrorKind.STORAGE, ("storage", "quota", "persist", "securityerror")),
    (ErrorKind.FILE_UPLOAD, ("file", "upload", "attachment", "too large")),
    (ErrorKind.DOM_MANIPULATION, ("removechild", "appendchild", "insertbefore", "domexception", "dom node")),
    (ErrorKind.API, ("api", "server", "bad request", "500", "502", "503", "400", "404")),
)

_SEVERITY: Dict[ErrorKind, Severity] = {
    ErrorKind.AUTHENTICATION: Severity.CRITICAL,
    ErrorKind.AUTHORIZATION: Severity.CRITICAL,
    ErrorKind.STATE_MACHINE: Severity.HIGH,
    ErrorKind.DOM_MANIPULATION: Severity.HIGH,
    ErrorKind.NETWORK: Severity.MEDIUM,
    ErrorKind.API: Severity.MEDIUM,
    ErrorKind.FILE_UPLOAD: Severity.MEDIUM,
    ErrorKind.VALIDATION: Severity.LOW,
    ErrorKind.STORAGE: Severity.LOW,
}

_LOG_LEVEL: Dict[Severity, int] = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}

RECOVERABLE_KINDS = frozenset(
    {ErrorKind.STATE_MACHINE, ErrorKind.DOM_MANIPULATION, ErrorKind.VALIDATION, ErrorKind.UNKNOWN}
)

_USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.AUTHENTICATION: "Your session has expired. Please sign in again to keep working on your proposal.",
    ErrorKind.AUTHORIZATION: "You do not have permission to perform this action.",
    ErrorKind.STORAGE: "Your progress could not be saved on this device. Keep this page open until you submit.",
}


@dataclass(frozen=True)
class RecoveryStrategy:
    action: str  # retry | redirect | reset | fix | manual
    auto_retry: bool = False
    max_retries: int = 0
    retry_delay: float = 0.0
    redirect_target: Optional[str] = None


_STRATEGIES: Dict[ErrorKind, RecoveryStrategy] = {
    ErrorKind.NETWORK: RecoveryStrategy("retry", auto_retry=True, max_retries=3, retry_delay=1.0),
    ErrorKind.API: RecoveryStrategy("retry", auto_retry=True, max_retries=2, retry_delay=2.0),
    ErrorKind.AUTHENTICATION: RecoveryStrategy("redirect", redirect_target=SIGN_IN_PATH),
    ErrorKind.AUTHORIZATION: RecoveryStrategy("redirect", redirect_target=SIGN_IN_PATH),
    ErrorKind.VALIDATION: RecoveryStrategy("fix"),
    ErrorKind.STATE_MACHINE: RecoveryStrategy("reset", auto_retry=True, max_retries=1),
    ErrorKind.STORAGE: RecoveryStrategy("retry", max_retries=1),
    ErrorKind.FILE_UPLOAD: RecoveryStrategy("fix"),
    ErrorKind.DOM_MANIPULATION: RecoveryStrategy("reset", auto_retry=True, max_retries=1),
    ErrorKind.UNKNOWN: RecoveryStrategy("manual"),
}


def _error_text(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error.lower()
    parts = [str(error), type(error).__name__]
    name = getattr(error, "name", None)
    if isinstance(name, str):
        parts.append(name)
    return " ".join(parts).lower()


def classify(error: BaseException | str) -> ErrorKind:
    text = _error_text(error)
    for kind, keywords in _KEYWORDS:
        if any(k in text for k in keywords):
            return kind
    return ErrorKind.UNKNOWN


def severity(kind: ErrorKind) -> Severity:
    return _SEVERITY.get(kind, Severity.MEDIUM)


def strategy(kind: ErrorKind) -> RecoveryStrategy:
    return _STRATEGIES.get(kind, _STRATEGIES[ErrorKind.UNKNOWN])


def user_message(kind: ErrorKind) -> Optional[str]:
    """Text safe to show the user, or None for kinds handled silently."""
    return _USER_MESSAGES.get(kind)


@dataclass
class ErrorReport:
    kind: ErrorKind
    severity: Severity
    strategy: RecoveryStrategy
    component: str
    timestamp: float
    url: Optional[str] = None
    reset_invoked: bool = False
    user_message: Optional[str] = None


class ErrorRecoveryController:
    """
    Classifies failures and applies the matching recovery strategy.

    A caller-supplied `reset` callback runs only for recoverable kinds, and
    never for errors flagged `critical=True`.
    """

    def __init__(self, *, url: Optional[str] = None, clock: Callable[[], float] = time.time) -> None:
        self.url = url
        self._clock = clock
        self.history: list[ErrorReport] = []

    def handle(
        self,
        error: BaseException | str,
        *,
        reset: Optional[Callable[[], None]] = None,
        component: str = "unknown",
    ) -> ErrorReport:
        kind = classify(error)
        sev = severity(kind)
        report = ErrorReport(
            kind=kind,
            severity=sev,
            strategy=strategy(kind),
            component=component,
            timestamp=self._clock(),
            url=self.url,
            user_message=user_message(kind),
        )
        logger.log(
            _LOG_LEVEL[sev],
            "%s error in %s: %s",
            kind.value,
            component,
            type(error).__name__ if not isinstance(error, str) else "message",
            extra={"component": component, "timestamp": report.timestamp, "url": self.url},
        )

        critical = bool(getattr(error, "critical", False))
        if reset is not None and kind in RECOVERABLE_KINDS and not critical:
            try:
                reset()
                report.reset_invoked = True
            except Exception:
                logger.exception("reset callback failed for %s error in %s", kind.value, component)

        self.history.append(report)
        return report
