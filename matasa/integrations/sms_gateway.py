"""
Outbound SMS gateway (Africa's Talking messaging API).

All outbound SMS goes through this module. Direct `requests` calls in
services or blueprints are not allowed.

  - Retry: max 1 inline retry, 0.5 s backoff; longer retries happen via the queue
  - Timeout: SMS_TIMEOUT_SECONDS per request (default 3 s), cut to the
    caller's deadline when one is given
  - Circuit breaker: >=5 failures in 60 s -> 30 s pause
  - Structured SendResult returned; send() never raises

Testability: pass a mock `session` to AfricasTalkingGateway() in tests
instead of letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

import requests

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5
_CB_WINDOW_SECONDS = 60
_CB_OPEN_DURATION_SECONDS = 30

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 1
_RETRY_BACKOFF_SECONDS = [0.5]

_DEFAULT_TIMEOUT = 3.0


class SendResult:
    """Structured return value from SMS gateway calls.

    Attributes:
        success:     True if the provider accepted the message.
        message_id:  Provider message id, if any.
        error:       Human-readable error message or None.
        duration_ms: Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        success: bool,
        message_id: str | None = None,
        error: str | None = None,
        duration_ms: int = 0,
    ) -> None:
        self.success = success
        self.message_id = message_id
        self.error = error
        self.duration_ms = duration_ms

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    def __repr__(self):
        return f"<SendResult success={self.success} id={self.message_id} error={self.error!r}>"


class LogOnlySmsGateway:
    """Development sink: logs the message instead of sending it."""

    def send(self, phone_number: str, message: str, *, deadline: float | None = None) -> SendResult:
        logger.info("[SMS dev] to=%s chars=%d: %s", phone_number, len(message), message.replace("\n", " | "))
        return SendResult(success=True, message_id=f"dev-{int(time.time() * 1000)}")


class AfricasTalkingGateway:
    """Africa's Talking bulk SMS endpoint with retry and circuit breaker."""

    def __init__(
        self,
        api_key: str,
        username: str,
        *,
        url: str,
        sender_id: str | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api_key = api_key
        self.username = username
        self.url = url
        self.sender_id = sender_id
        self.timeout = timeout
        self._session: requests.Session | None = session
        self.timer = timer

        # Circuit breaker: {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict = {"failures": [], "open_until": None}

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _circuit_closed(self) -> bool:
        state = self._cb_state
        now = datetime.now(timezone.utc)

        if state["open_until"] and now < state["open_until"]:
            return False

        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        state["failures"] = [f for f in state["failures"] if f >= window_start]

        if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
            state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.error(
                "SMS circuit opened: %d failures in %ds window",
                len(state["failures"]), _CB_WINDOW_SECONDS,
            )
            return False
        return True

    def _record_failure(self) -> None:
        self._cb_state["failures"].append(datetime.now(timezone.utc))

    def _record_success(self) -> None:
        self._cb_state["failures"].clear()
        self._cb_state["open_until"] = None

    # ── Send ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _parse_recipient(body: dict) -> tuple[bool, str | None, str | None]:
        recipients = (body.get("SMSMessageData") or {}).get("Recipients") or []
        if not recipients:
            message = (body.get("SMSMessageData") or {}).get("Message") or "No recipients accepted"
            return False, None, message
        first = recipients[0]
        status = str(first.get("status", ""))
        if status.lower() in ("success", "sent", "queued"):
            return True, first.get("messageId"), None
        return False, first.get("messageId"), status or "Rejected by provider"

    def send(self, phone_number: str, message: str, *, deadline: float | None = None) -> SendResult:
        """Send one SMS. Always returns a SendResult; callers check .success.

        ``deadline`` is a ``timer()`` value. Each request's timeout is cut to
        the time left, and the retry is skipped when its backoff would pass it.
        """
        if not self._circuit_closed():
            return SendResult(success=False, error="Circuit breaker is open; SMS temporarily suspended")

        data = {"username": self.username, "to": phone_number, "message": message}
        if self.sender_id:
            data["from"] = self.sender_id
        headers = {"apiKey": self.api_key, "Accept": "application/json"}

        last_error = "Unknown error"
        started = time.perf_counter()
        for attempt in range(_RETRY_MAX + 1):
            timeout = self.timeout
            if deadline is not None:
                timeout = min(timeout, deadline - self.timer())
                if timeout <= 0:
                    last_error = "Delivery time budget exhausted"
                    break
            try:
                resp = self.session.post(self.url, data=data, headers=headers, timeout=timeout)
                if resp.ok:
                    try:
                        body = resp.json()
                    except ValueError:
                        body = {}
                    ok, message_id, error = self._parse_recipient(body)
                    duration_ms = int((time.perf_counter() - started) * 1000)
                    if ok:
                        self._record_success()
                        return SendResult(success=True, message_id=message_id, duration_ms=duration_ms)
                    # Provider rejected the number; retrying will not help.
                    return SendResult(success=False, message_id=message_id, error=error,
                                      duration_ms=duration_ms)

                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                self._record_failure()
                logger.warning("SMS send failed attempt=%d/%d status=%d",
                               attempt + 1, _RETRY_MAX + 1, resp.status_code)

            except requests.Timeout:
                last_error = f"Request timed out after {timeout}s"
                self._record_failure()
                logger.warning("SMS send timed out attempt=%d/%d", attempt + 1, _RETRY_MAX + 1)

            except requests.RequestException as exc:
                last_error = str(exc)[:200]
                self._record_failure()
                logger.warning("SMS network error attempt=%d/%d error=%s",
                               attempt + 1, _RETRY_MAX + 1, last_error)

            if attempt < _RETRY_MAX:
                backoff = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                if deadline is not None and self.timer() + backoff >= deadline:
                    break
                time.sleep(backoff)

        return SendResult(
            success=False,
            error=last_error,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )


def build_sms_gateway(config) -> AfricasTalkingGateway | LogOnlySmsGateway:
    """Pick the real gateway when credentials are configured, else log-only."""
    api_key = config.get("AT_API_KEY")
    if not api_key:
        logger.info("AT_API_KEY not set; SMS will be logged, not sent")
        return LogOnlySmsGateway()
    return AfricasTalkingGateway(
        api_key,
        config.get("AT_USERNAME", "sandbox"),
        url=config.get("AT_SMS_URL"),
        sender_id=config.get("AT_SENDER_ID"),
        timeout=config.get("SMS_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT),
    )
