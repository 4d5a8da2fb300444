"""
USSD Session State Machine.

One inbound turn = one call to ``UssdService.handle_turn``. The turn is
serialised per session id (in-process lock) and the session row carries an
optimistic ``version_id`` for writers in other processes.

Order of work per turn:
    1. load or create the session
    2. terminal session -> end message
    3. idle longer than the timeout -> state ``timeout``, end message
    4. input longer than USSD_MAX_INPUT_LENGTH -> invalid
    5. dispatch on the current state (exhaustive handler map)

Invalid input never changes the state or the draft; the reply is the error
text followed by the current prompt. Confirmation runs incident creation,
escalation and the session link as one transaction; on failure the session
returns to ``main_menu`` with a generic error so the caller can retry.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from matasa.core.exceptions import ConflictError, NotFoundError
from matasa.models.ussd import TERMINAL_USSD_STATES, UssdSession, UssdState
from matasa.services import ussd_menus as menus
from matasa.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

CONTINUE = "continue"
END = "end"


@dataclass
class UssdResponse:
    action: str
    message: str

    @property
    def ends_session(self) -> bool:
        return self.action == END

    def to_text(self) -> str:
        """Africa's Talking wire format."""
        return f"{'END' if self.ends_session else 'CON'} {self.message}"

    def to_dict(self) -> dict:
        return {"action": self.action, "message": self.message}


class KeyedLock:
    """Per-key mutual exclusion; entries are dropped once nobody holds them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


class UssdService:

    def __init__(
        self,
        store,
        ingestion,
        dispatcher,
        alerts,
        *,
        clock: Callable = utcnow,
        timeout_seconds: int = 120,
        max_message_length: int = 182,
        max_input_length: int = 160,
        default_language: str = "hausa",
        locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.ingestion = ingestion
        self.dispatcher = dispatcher
        self.alerts = alerts
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.max_message_length = max_message_length
        self.max_input_length = max_input_length
        self.default_language = default_language
        self.locks = locks or KeyedLock()

        self._handlers = {
            UssdState.IDLE: self._on_idle,
            UssdState.MAIN_MENU: self._on_main_menu,
            UssdState.INCIDENT_CATEGORY: self._on_incident_category,
            UssdState.SEVERITY_SELECTION: self._on_severity,
            UssdState.LOCATION_SELECTION: self._on_location,
            UssdState.DESCRIPTION: self._on_description,
            UssdState.CALLBACK_CONSENT: self._on_callback,
            UssdState.CONFIRMATION: self._on_confirmation,
        }

    @property
    def handled_states(self) -> frozenset:
        return frozenset(self._handlers)

    # ── Response helpers ─────────────────────────────────────────────────

    def _reply(self, action: str, message: str) -> UssdResponse:
        return UssdResponse(action, menus.truncate(message, self.max_message_length))

    def _cont(self, session, key: str, **params) -> UssdResponse:
        return self._reply(CONTINUE, menus.get_prompt(key, session.language, **params))

    def _end(self, session, key: str, **params) -> UssdResponse:
        return self._reply(END, menus.get_prompt(key, session.language, **params))

    def _summary(self, session) -> str:
        description = (session.draft_description or "-")[: menus.SUMMARY_DESCRIPTION_CHARS]
        incident_type = (session.draft_incident_type or "").replace("_", " ")
        return f"Type: {incident_type}\nSeverity: {session.draft_severity}\nDesc: {description}"

    def current_prompt(self, session) -> str:
        state = session.state
        lang = session.language
        if state in (UssdState.IDLE, UssdState.MAIN_MENU):
            return menus.get_prompt("welcome", lang)
        if state == UssdState.INCIDENT_CATEGORY:
            return menus.get_prompt(session.draft_menu or "suspicious_activity", lang)
        if state == UssdState.SEVERITY_SELECTION:
            return menus.get_prompt("severity", lang)
        if state == UssdState.LOCATION_SELECTION:
            key = "village" if session.draft_location_mode == "manual" else "location"
            return menus.get_prompt(key, lang)
        if state == UssdState.DESCRIPTION:
            return menus.get_prompt("description", lang)
        if state == UssdState.CALLBACK_CONSENT:
            return menus.get_prompt("callback", lang)
        if state == UssdState.CONFIRMATION:
            return menus.get_prompt("confirmation", lang, summary=self._summary(session))
        return ""

    def _invalid(self, session) -> UssdResponse:
        message = menus.get_prompt("invalid", session.language) + "\n" + self.current_prompt(session)
        return self._reply(CONTINUE, message)

    def _terminal_response(self, session) -> UssdResponse:
        if session.state == UssdState.COMPLETED:
            return self._end(session, "thank_you", incident_id=session.incident_id)
        if session.state == UssdState.TIMEOUT:
            return self._end(session, "timeout")
        return self._end(session, "session_closed")

    # ── Turn entry point ─────────────────────────────────────────────────

    def handle_turn(
        self,
        session_id: str,
        phone_number: str,
        text: str | None,
        *,
        provider: str = "africastalking",
        language: str | None = None,
        cell_tower_id: str | None = None,
    ) -> UssdResponse:
        with self.locks.hold(session_id):
            try:
                return self._handle(session_id, phone_number, text, provider, language, cell_tower_id)
            except ConflictError:
                self.store.rollback()
                logger.warning("Concurrent update on USSD session %s", session_id,
                               extra={"session_id": session_id, "event_type": "ussd_conflict"})
                lang = language or self.default_language
                return self._reply(END, menus.get_prompt("error", lang))

    def _new_session(self, session_id, phone_number, provider, language, now) -> UssdSession:
        session = UssdSession(
            session_id=session_id,
            phone_number=phone_number,
            provider=provider,
            language=language if language in menus.PROMPTS else self.default_language,
            state=UssdState.IDLE,
            step_count=0,
            started_at=now,
            last_activity_at=now,
        )
        self.store.add(session)
        return session

    def _timed_out(self, session, now) -> bool:
        last = as_utc(session.last_activity_at)
        return last is not None and (now - last).total_seconds() > self.timeout_seconds

    def _handle(self, session_id, phone_number, text, provider, language, cell_tower_id) -> UssdResponse:
        now = self.clock()
        session = self.store.get_ussd_session(session_id)
        if session is None:
            session = self._new_session(session_id, phone_number, provider, language, now)
            logger.info("USSD session %s started", session_id,
                        extra={"session_id": session_id, "event_type": "ussd_start"})
        elif session.state in TERMINAL_USSD_STATES:
            return self._terminal_response(session)
        elif self._timed_out(session, now):
            session.state = UssdState.TIMEOUT
            session.ended_at = now
            self.store.commit()
            logger.info("USSD session %s timed out", session_id,
                        extra={"session_id": session_id, "event_type": "ussd_timeout"})
            return self._end(session, "timeout")

        text = (text or "").strip()
        session.step_count = (session.step_count or 0) + 1
        session.last_activity_at = now

        if len(text) > self.max_input_length:
            response = self._invalid(session)
        else:
            handler = self._handlers[session.state]
            response = handler(session, text, cell_tower_id=cell_tower_id, now=now)

        self.store.commit()
        return response

    # ── State handlers ───────────────────────────────────────────────────

    def _on_idle(self, session, text, **_ctx) -> UssdResponse:
        session.state = UssdState.MAIN_MENU
        return self._cont(session, "welcome")

    def _on_main_menu(self, session, text, *, now, **_ctx) -> UssdResponse:
        if text in ("", menus.MAIN_MENU_REPEAT):
            return self._cont(session, "welcome")

        if text in menus.MAIN_MENU:
            menu = menus.MAIN_MENU[text]
            session.clear_draft()
            session.draft_menu = menu
            if menu == "request_help":
                session.draft_severity = menus.HELP_REQUEST_SEVERITY
            session.state = UssdState.INCIDENT_CATEGORY
            return self._cont(session, menu)

        if text == menus.MAIN_MENU_ALERTS:
            titles = self.alerts.ussd_alert_titles(session.language)
            session.state = UssdState.ABORTED
            session.ended_at = now
            if not titles:
                return self._end(session, "no_alerts")
            header = menus.get_prompt("alerts_header", session.language)
            lines = [f"{i}. {title}" for i, title in enumerate(titles, start=1)]
            return self._reply(END, "\n".join([header] + lines))

        return self._invalid(session)

    def _on_incident_category(self, session, text, **_ctx) -> UssdResponse:
        if session.draft_menu == "request_help":
            choice = menus.HELP_SERVICES.get(text)
            if choice is None:
                return self._invalid(session)
            session.draft_help_service, session.draft_incident_type = choice
        else:
            incident_type = menus.CATEGORY_MENUS.get(session.draft_menu, {}).get(text)
            if incident_type is None:
                return self._invalid(session)
            session.draft_incident_type = incident_type

        session.state = UssdState.SEVERITY_SELECTION
        return self._cont(session, "severity")

    def _on_severity(self, session, text, **_ctx) -> UssdResponse:
        severity = menus.SEVERITY_MENU.get(text)
        if severity is None:
            return self._invalid(session)
        # Help requests keep the severity pinned at the main menu.
        if session.draft_menu != "request_help":
            session.draft_severity = severity
        session.state = UssdState.LOCATION_SELECTION
        return self._cont(session, "location")

    def _on_location(self, session, text, *, cell_tower_id=None, **_ctx) -> UssdResponse:
        if session.draft_location_mode == "manual":
            if not text:
                return self._invalid(session)
            session.draft_location_village = text
            session.state = UssdState.DESCRIPTION
            return self._cont(session, "description")

        if text == menus.LOCATION_NETWORK:
            session.draft_location_mode = "network"
            session.draft_cell_tower_id = cell_tower_id
            session.state = UssdState.DESCRIPTION
            return self._cont(session, "description")

        if text == menus.LOCATION_MANUAL:
            session.draft_location_mode = "manual"
            return self._cont(session, "village")

        return self._invalid(session)

    def _on_description(self, session, text, **_ctx) -> UssdResponse:
        session.draft_description = None if text in ("", menus.SKIP_DESCRIPTION) else text
        session.state = UssdState.CALLBACK_CONSENT
        return self._cont(session, "callback")

    def _on_callback(self, session, text, **_ctx) -> UssdResponse:
        if text not in (menus.YES, menus.NO):
            return self._invalid(session)
        session.draft_callback_consent = text == menus.YES
        session.state = UssdState.CONFIRMATION
        return self._cont(session, "confirmation", summary=self._summary(session))

    def _on_confirmation(self, session, text, *, now, **_ctx) -> UssdResponse:
        if text == menus.SUBMIT:
            return self._submit(session, now)
        if text == menus.CANCEL:
            session.clear_draft()
            session.state = UssdState.MAIN_MENU
            return self._cont(session, "welcome")
        return self._invalid(session)

    # ── Submission ───────────────────────────────────────────────────────

    def _submit(self, session, now) -> UssdResponse:
        session_id = session.session_id
        try:
            result = self.ingestion.create_from_ussd(session, commit=False)
            session.incident_id = result.incident.incident_id
            session.state = UssdState.COMPLETED
            session.ended_at = now
            self.store.commit()
        except Exception:
            logger.exception("USSD submission failed for session %s", session_id,
                             extra={"session_id": session_id, "event_type": "ussd_submit_failed"})
            self.store.rollback()
            recovered = self.store.get_ussd_session(session_id) or self._new_session(
                session_id, session.phone_number, session.provider, session.language, now,
            )
            recovered.clear_draft()
            recovered.state = UssdState.MAIN_MENU
            recovered.last_activity_at = now
            return self._reply(
                CONTINUE,
                menus.get_prompt("submit_failed", recovered.language) + "\n"
                + menus.get_prompt("welcome", recovered.language),
            )

        logger.info(
            "USSD session %s completed with incident %s", session_id, session.incident_id,
            extra={"session_id": session_id, "incident_id": session.incident_id, "event_type": "ussd_completed"},
        )
        self.dispatcher.deliver_within_budget(result.notifications)
        return self._end(session, "thank_you", incident_id=session.incident_id)

    # ── Queries / maintenance ────────────────────────────────────────────

    def get_session(self, session_id: str) -> UssdSession:
        session = self.store.get_ussd_session(session_id)
        if session is None:
            raise NotFoundError(resource="UssdSession", resource_id=session_id)
        return session

    def cleanup_sessions(self, retention_hours: int = 24) -> int:
        """Delete sessions that never completed and were idle past retention."""
        cutoff = self.clock() - timedelta(hours=retention_hours)
        stale = self.store.stale_ussd_sessions(cutoff)
        for session in stale:
            self.store.delete(session)
        if stale:
            self.store.commit()
        logger.info("USSD session cleanup removed %d session(s)", len(stale),
                    extra={"event_type": "ussd_session_cleanup"})
        return len(stale)
