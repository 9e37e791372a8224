"""
LifeSignal HTTP server and background checker.

Single-file server using stdlib http.server. Requests carry a per-user
bearer token; user creation and manual sweeps take the admin token.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import secrets
import signal
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, List, Optional, Pattern, Tuple

from lifesignal import __version__
from lifesignal.clock import SystemClock
from lifesignal.config import SafetyConfig
from lifesignal.coordinator import SafetyCoordinator
from lifesignal.db import Store
from lifesignal.dispatcher import NotificationDispatcher
from lifesignal.errors import InvalidArgument, SafetyError
from lifesignal.models import AlertState, EdgeRecord, Session, UserRecord
from lifesignal.notify import EmailChannel, SMTPConfig
from lifesignal.webhooks import WebhookChannel, WebhookConfig

logger = logging.getLogger(__name__)

HTTP_STATUS = {
    "invalid_argument": 400,
    "not_found": 404,
    "already_exists": 409,
    "permission_denied": 403,
    "conflict": 409,
    "unavailable": 503,
}


@dataclass(frozen=True)
class Config:
    """Server configuration."""
    admin_token: str
    check_every_s: int


def user_dict(user: UserRecord, include_token: bool = False) -> dict:
    d = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "check_in_interval_s": user.check_in_interval,
        "last_check_in": user.last_check_in,
        "expires_at": user.expires_at,
        "reminder_offsets_s": sorted(user.reminder_offsets),
    }
    if include_token:
        d["api_token"] = user.api_token
    return d


def edge_dict(edge: EdgeRecord) -> dict:
    return {
        "owner_id": edge.owner_id,
        "contact_id": edge.contact_id,
        "is_responder": edge.is_responder,
        "is_dependent": edge.is_dependent,
        "incoming_ping": edge.incoming_ping,
        "outgoing_ping": edge.outgoing_ping,
        "manual_alert": edge.manual_alert_mirror,
        "last_updated": edge.last_updated,
    }


def alert_dict(state: AlertState) -> dict:
    return {
        "user_id": state.user_id,
        "phase": state.phase.value,
        "active": state.active,
        "activated_at": state.activated_at,
        "deactivated_at": state.deactivated_at,
        "arm_progress": state.arm_progress,
        "disarm_progress": state.disarm_progress,
    }


def _flag(body: dict, name: str) -> bool:
    value = body.get(name, False)
    if not isinstance(value, bool):
        raise InvalidArgument(f"{name} must be true or false")
    return value


def _number(body: dict, name: str) -> float:
    value = body.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgument(f"{name} must be a number")
    return float(value)


def _offsets(body: dict, name: str) -> List[float]:
    value = body.get(name)
    if not isinstance(value, list) or any(
        isinstance(v, bool) or not isinstance(v, (int, float)) for v in value
    ):
        raise InvalidArgument(f"{name} must be a list of seconds")
    return [float(v) for v in value]


class Handler(BaseHTTPRequestHandler):
    """HTTP request handler for the LifeSignal API."""

    server_version = f"lifesignal/{__version__}"

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s %s", self.address_string(), format % args)

    def _text(self, code: int, s: str) -> None:
        b = s.encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(b)))
        self.end_headers()
        self.wfile.write(b)

    def _json(self, code: int, obj) -> None:
        b = json.dumps(obj).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(b)))
        self.end_headers()
        self.wfile.write(b)

    def _read_json(self) -> dict:
        length = int(self.headers.get("Content-Length", "0") or 0)
        if length == 0:
            return {}
        raw = self.rfile.read(length).decode("utf-8", errors="replace")
        try:
            body = json.loads(raw)
        except ValueError as e:
            raise InvalidArgument(f"request body is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise InvalidArgument("request body must be a JSON object")
        return body

    def _bearer(self) -> str:
        auth = self.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            return ""
        return auth[len("Bearer "):].strip()

    def _auth_admin(self) -> bool:
        tok = self._bearer()
        return bool(tok) and secrets.compare_digest(tok, self.server.cfg.admin_token)

    def _session(self) -> Optional[Session]:
        return self.server.coordinator.session_for_token(self._bearer())

    # === Dispatch ===

    def do_GET(self) -> None:
        if self.path == "/status":
            return self._text(200, "lifesignal ok\n")
        self._route("GET")

    def do_POST(self) -> None:
        self._route("POST")

    def do_DELETE(self) -> None:
        self._route("DELETE")

    def _route(self, method: str) -> None:
        path = self.path.split("?", 1)[0].rstrip("/") or "/"
        for verb, pattern, admin, fn in ROUTES:
            if verb != method:
                continue
            m = pattern.fullmatch(path)
            if m is None:
                continue
            try:
                if admin:
                    if not self._auth_admin():
                        return self._json(401, {"error": "unauthorized", "message": "admin token required"})
                    return fn(self, None, *m.groups())
                session = self._session()
                if session is None:
                    return self._json(401, {"error": "unauthorized", "message": "valid bearer token required"})
                return fn(self, session, *m.groups())
            except SafetyError as e:
                return self._json(HTTP_STATUS.get(e.code, 500), e.to_dict())
        return self._text(404, "not found\n")

    # === Admin ===

    def _handle_create_user(self, _session) -> None:
        body = self._read_json()
        user_id = str(body.get("id") or "").strip()
        if not user_id:
            raise InvalidArgument("need id")
        interval = body.get("interval_s")
        offsets = body.get("reminder_offsets_s")
        user = self.server.coordinator.create_user(
            user_id,
            name=str(body.get("name") or ""),
            email=body.get("email") or None,
            interval=None if interval is None else _number(body, "interval_s"),
            reminder_offsets=None if offsets is None else _offsets(body, "reminder_offsets_s"),
        )
        return self._json(201, user_dict(user, include_token=True))

    def _handle_sweep(self, _session) -> None:
        result = self.server.coordinator.sweep()
        return self._json(200, result.as_dict())

    # === Check-in ===

    def _handle_me(self, session: Session) -> None:
        return self._json(200, user_dict(self.server.coordinator.user(session)))

    def _handle_check_in(self, session: Session) -> None:
        return self._json(200, user_dict(self.server.coordinator.check_in(session)))

    def _handle_interval(self, session: Session) -> None:
        body = self._read_json()
        user = self.server.coordinator.set_interval(session, _number(body, "interval_s"))
        return self._json(200, user_dict(user))

    def _handle_reminders(self, session: Session) -> None:
        body = self._read_json()
        user = self.server.coordinator.set_reminder_offsets(session, _offsets(body, "offsets_s"))
        return self._json(200, user_dict(user))

    # === Contacts ===

    def _handle_contacts(self, session: Session) -> None:
        views = self.server.coordinator.contact_statuses(session)
        return self._json(200, {"contacts": [v.as_dict() for v in views]})

    def _handle_add_contact(self, session: Session) -> None:
        body = self._read_json()
        contact_id = str(body.get("contact_id") or "").strip()
        if not contact_id:
            raise InvalidArgument("need contact_id")
        rel = self.server.coordinator.add_contact(
            session, contact_id, _flag(body, "is_responder"), _flag(body, "is_dependent"),
        )
        return self._json(201, edge_dict(rel.view_of(session.user_id)))

    def _handle_update_roles(self, session: Session, contact_id: str) -> None:
        body = self._read_json()
        rel = self.server.coordinator.update_contact_roles(
            session, contact_id, _flag(body, "is_responder"), _flag(body, "is_dependent"),
        )
        return self._json(200, edge_dict(rel.view_of(session.user_id)))

    def _handle_remove_contact(self, session: Session, contact_id: str) -> None:
        self.server.coordinator.remove_contact(session, contact_id)
        return self._json(200, {"ok": True})

    # === Pings ===

    def _handle_ping(self, session: Session, dependent_id: str) -> None:
        rel = self.server.coordinator.ping(session, dependent_id)
        return self._json(200, edge_dict(rel.view_of(session.user_id)))

    def _handle_respond(self, session: Session, responder_id: str) -> None:
        rel = self.server.coordinator.respond_to_ping(session, responder_id)
        return self._json(200, edge_dict(rel.view_of(session.user_id)))

    def _handle_respond_all(self, session: Session) -> None:
        cleared = self.server.coordinator.respond_to_all_pings(session)
        return self._json(200, {"cleared": cleared})

    def _handle_clear_ping(self, session: Session, dependent_id: str) -> None:
        rel = self.server.coordinator.clear_ping(session, dependent_id)
        return self._json(200, edge_dict(rel.view_of(session.user_id)))

    # === Alert ===

    def _handle_alert(self, session: Session) -> None:
        return self._json(200, alert_dict(self.server.coordinator.alert_state(session)))

    def _alert_action(self, action: Callable[[Session], AlertState], session: Session) -> None:
        return self._json(200, alert_dict(action(session)))

    def _handle_arm(self, session: Session) -> None:
        return self._alert_action(self.server.coordinator.arm_alert, session)

    def _handle_disarm_start(self, session: Session) -> None:
        return self._alert_action(self.server.coordinator.begin_disarm, session)

    def _handle_disarm_release(self, session: Session) -> None:
        return self._alert_action(self.server.coordinator.release_disarm, session)

    # === Notifications ===

    def _handle_notifications(self, session: Session) -> None:
        return self._json(200, {"notifications": self.server.coordinator.notifications(session)})

    def _handle_notifications_read(self, session: Session) -> None:
        marked = self.server.coordinator.mark_notifications_read(session)
        return self._json(200, {"marked": marked})


_ID = r"([A-Za-z0-9_.@-]+)"

Route = Tuple[str, Pattern, bool, Callable]

ROUTES: List[Route] = [
    ("POST", re.compile(r"/admin/users"), True, Handler._handle_create_user),
    ("POST", re.compile(r"/admin/sweep"), True, Handler._handle_sweep),
    ("GET", re.compile(r"/me"), False, Handler._handle_me),
    ("POST", re.compile(r"/checkin"), False, Handler._handle_check_in),
    ("POST", re.compile(r"/me/interval"), False, Handler._handle_interval),
    ("POST", re.compile(r"/me/reminders"), False, Handler._handle_reminders),
    ("GET", re.compile(r"/contacts"), False, Handler._handle_contacts),
    ("POST", re.compile(r"/contacts"), False, Handler._handle_add_contact),
    ("POST", re.compile(r"/contacts/" + _ID + r"/roles"), False, Handler._handle_update_roles),
    ("DELETE", re.compile(r"/contacts/" + _ID), False, Handler._handle_remove_contact),
    ("POST", re.compile(r"/pings/respond-all"), False, Handler._handle_respond_all),
    ("POST", re.compile(r"/pings/" + _ID + r"/respond"), False, Handler._handle_respond),
    ("POST", re.compile(r"/pings/" + _ID), False, Handler._handle_ping),
    ("DELETE", re.compile(r"/pings/" + _ID), False, Handler._handle_clear_ping),
    ("GET", re.compile(r"/alert"), False, Handler._handle_alert),
    ("POST", re.compile(r"/alert/arm"), False, Handler._handle_arm),
    ("POST", re.compile(r"/alert/disarm/start"), False, Handler._handle_disarm_start),
    ("POST", re.compile(r"/alert/disarm/release"), False, Handler._handle_disarm_release),
    ("GET", re.compile(r"/notifications"), False, Handler._handle_notifications),
    ("POST", re.compile(r"/notifications/read"), False, Handler._handle_notifications_read),
]


class LifeSignalHTTP(ThreadingHTTPServer):
    """Threaded HTTP server with attached coordinator."""

    def __init__(
        self,
        addr: tuple,
        handler: type,
        coordinator: SafetyCoordinator,
        cfg: Config,
    ) -> None:
        super().__init__(addr, handler)
        self.coordinator = coordinator
        self.cfg = cfg


class Checker(threading.Thread):
    """Background thread that runs the expiry and reminder sweep periodically."""

    daemon = True

    def __init__(self, httpd: LifeSignalHTTP, stop_evt: threading.Event) -> None:
        super().__init__(name="lifesignal-checker")
        self.httpd = httpd
        self.stop_evt = stop_evt

    def run(self) -> None:
        while not self.stop_evt.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("checker: sweep failed")
            self.stop_evt.wait(self.httpd.cfg.check_every_s)

    def tick(self) -> None:
        self.httpd.coordinator.sweep()


def build_channels(args: argparse.Namespace) -> list:
    channels: list = [EmailChannel(SMTPConfig(
        host=args.smtp_host,
        port=args.smtp_port,
        user=args.smtp_user,
        password=args.smtp_pass,
        from_email=args.from_email,
    ))]
    if args.slack_webhook:
        channels.append(WebhookChannel(WebhookConfig(url=args.slack_webhook, style="slack")))
        logger.info("slack webhook configured")
    for url in args.webhooks:
        channels.append(WebhookChannel(WebhookConfig(url=url)))
        logger.info("webhook configured: %s", url)
    return channels


def main() -> None:
    safety = SafetyConfig.from_env()

    ap = argparse.ArgumentParser(description="LifeSignal safety server")
    ap.add_argument("--db", required=True, help="SQLite database path")
    ap.add_argument("--init-db", action="store_true", help="Initialize database schema")
    ap.add_argument("--listen", default="127.0.0.1", help="Listen address")
    ap.add_argument("--port", type=int, default=8080, help="Listen port")
    ap.add_argument("--admin-token", default="dev-admin-token", help="Admin API token")
    ap.add_argument("--check-every", type=int, default=safety.sweep_interval_s,
                    help="Sweep interval (seconds)")
    ap.add_argument("--smtp-host", default=None, help="SMTP server (None=dev mode)")
    ap.add_argument("--smtp-port", type=int, default=587, help="SMTP port")
    ap.add_argument("--smtp-user", default=None, help="SMTP username")
    ap.add_argument("--smtp-pass", default=None, help="SMTP password")
    ap.add_argument("--from-email", default="lifesignal@localhost", help="From address")
    ap.add_argument("--slack-webhook", default=None, help="Slack incoming webhook URL")
    ap.add_argument("--webhook", action="append", dest="webhooks", default=[],
                    help="Generic webhook URL (can be repeated)")
    ap.add_argument("--log-level", default="INFO", help="Logging level")
    args = ap.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    clock = SystemClock()
    store = Store(args.db, clock=clock)
    if args.init_db:
        store.init_db()
        logger.info("db initialized")

    dispatcher = NotificationDispatcher(
        store, clock, build_channels(args),
        attempts=safety.notify_attempts, store_retry=safety.retry_policy(),
    )
    coordinator = SafetyCoordinator(store, clock, dispatcher, config=safety)
    scheduled = coordinator.restore_reminders()
    logger.info("%d reminder(s) scheduled", scheduled)

    cfg = Config(admin_token=args.admin_token, check_every_s=args.check_every)

    httpd = LifeSignalHTTP((args.listen, args.port), Handler, coordinator, cfg)
    stop_evt = threading.Event()
    checker = Checker(httpd, stop_evt)
    checker.start()

    def _sig(*_):
        stop_evt.set()
        coordinator.shutdown()
        clock.stop()
        threading.Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, _sig)
    signal.signal(signal.SIGTERM, _sig)

    logger.info("lifesignal listening on %s:%d", args.listen, args.port)
    httpd.serve_forever()


if __name__ == "__main__":
    main()
