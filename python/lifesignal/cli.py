"""
LifeSignal CLI: admin and user tool over the HTTP API.
"""

from __future__ import annotations

import argparse
import json
import sys
import urllib.request
from typing import Optional
from urllib.error import HTTPError


def request(method: str, url: str, token: str, data: Optional[dict] = None) -> dict:
    """Make an authenticated JSON request."""
    body = json.dumps(data).encode("utf-8") if data is not None else None
    req = urllib.request.Request(url, data=body, method=method)
    req.add_header("Authorization", f"Bearer {token}")
    if body is not None:
        req.add_header("Content-Type", "application/json")
    with urllib.request.urlopen(req, timeout=20) as r:
        return json.loads(r.read().decode("utf-8"))


def _base(args: argparse.Namespace) -> str:
    return args.base_url.rstrip("/")


def _show(out: dict) -> None:
    print(json.dumps(out, indent=2))


def cmd_new_user(args: argparse.Namespace) -> None:
    """Create a user (admin)."""
    data = {"id": args.id, "name": args.name, "email": args.email}
    if args.interval_s is not None:
        data["interval_s"] = args.interval_s
    if args.reminder is not None:
        data["reminder_offsets_s"] = args.reminder
    out = request("POST", f"{_base(args)}/admin/users", args.token, data)
    _show(out)
    print("\nUse this token for the user's requests:")
    print(f"  lifesignal-ctl --base-url {args.base_url} --token {out['api_token']} check-in")


def cmd_sweep(args: argparse.Namespace) -> None:
    """Run the expiry and reminder sweep now (admin)."""
    _show(request("POST", f"{_base(args)}/admin/sweep", args.token, {}))


def cmd_me(args: argparse.Namespace) -> None:
    _show(request("GET", f"{_base(args)}/me", args.token))


def cmd_check_in(args: argparse.Namespace) -> None:
    _show(request("POST", f"{_base(args)}/checkin", args.token, {}))


def cmd_interval(args: argparse.Namespace) -> None:
    _show(request("POST", f"{_base(args)}/me/interval", args.token, {"interval_s": args.seconds}))


def cmd_reminders(args: argparse.Namespace) -> None:
    _show(request("POST", f"{_base(args)}/me/reminders", args.token, {"offsets_s": args.offsets}))


def cmd_contacts(args: argparse.Namespace) -> None:
    out = request("GET", f"{_base(args)}/contacts", args.token)
    for c in out["contacts"]:
        roles = "/".join(r for r, on in (("responder", c["is_responder"]),
                                         ("dependent", c["is_dependent"])) if on)
        print(f"{c['contact_id']:<20} {roles:<20} {c['status']}")


def cmd_add_contact(args: argparse.Namespace) -> None:
    _show(request("POST", f"{_base(args)}/contacts", args.token, {
        "contact_id": args.contact,
        "is_responder": args.responder,
        "is_dependent": args.dependent,
    }))


def cmd_set_roles(args: argparse.Namespace) -> None:
    _show(request("POST", f"{_base(args)}/contacts/{args.contact}/roles", args.token, {
        "is_responder": args.responder,
        "is_dependent": args.dependent,
    }))


def cmd_remove_contact(args: argparse.Namespace) -> None:
    _show(request("DELETE", f"{_base(args)}/contacts/{args.contact}", args.token))


def cmd_ping(args: argparse.Namespace) -> None:
    _show(request("POST", f"{_base(args)}/pings/{args.dependent}", args.token, {}))


def cmd_respond(args: argparse.Namespace) -> None:
    if args.responder:
        _show(request("POST", f"{_base(args)}/pings/{args.responder}/respond", args.token, {}))
    else:
        _show(request("POST", f"{_base(args)}/pings/respond-all", args.token, {}))


def cmd_clear_ping(args: argparse.Namespace) -> None:
    _show(request("DELETE", f"{_base(args)}/pings/{args.dependent}", args.token))


def cmd_alert(args: argparse.Namespace) -> None:
    paths = {
        "state": ("GET", "/alert"),
        "arm": ("POST", "/alert/arm"),
        "disarm-start": ("POST", "/alert/disarm/start"),
        "disarm-release": ("POST", "/alert/disarm/release"),
    }
    method, path = paths[args.action]
    _show(request(method, f"{_base(args)}{path}", args.token, {} if method == "POST" else None))


def cmd_notifications(args: argparse.Namespace) -> None:
    if args.mark_read:
        _show(request("POST", f"{_base(args)}/notifications/read", args.token, {}))
        return
    out = request("GET", f"{_base(args)}/notifications", args.token)
    for n in out["notifications"]:
        flag = " " if n["is_read"] else "*"
        print(f"{flag} {n['kind']:<22} {n['title']}")


def _add_roles(p: argparse.ArgumentParser) -> None:
    p.add_argument("--responder", action="store_true",
                   help="The contact responds for you")
    p.add_argument("--dependent", action="store_true",
                   help="The contact depends on you")


def main() -> None:
    ap = argparse.ArgumentParser(
        prog="lifesignal-ctl",
        description="LifeSignal command-line client",
    )
    ap.add_argument("--base-url", required=True, help="LifeSignal server URL")
    ap.add_argument("--token", required=True, help="User API token (admin token for admin commands)")

    sub = ap.add_subparsers(dest="cmd", required=True)

    # admin
    s = sub.add_parser("new-user", help="Create a user (admin)")
    s.add_argument("--id", required=True, help="User ID")
    s.add_argument("--name", default="", help="Display name")
    s.add_argument("--email", default=None, help="Email for notifications")
    s.add_argument("--interval-s", type=float, default=None,
                   help="Check-in interval (seconds)")
    s.add_argument("--reminder", type=float, action="append", default=None,
                   help="Reminder offset before expiry (seconds, can be repeated)")
    s.set_defaults(func=cmd_new_user)

    s = sub.add_parser("sweep", help="Run the sweep now (admin)")
    s.set_defaults(func=cmd_sweep)

    # check-in
    sub.add_parser("me", help="Show your check-in state").set_defaults(func=cmd_me)
    sub.add_parser("check-in", help="Check in now").set_defaults(func=cmd_check_in)

    s = sub.add_parser("interval", help="Set your check-in interval")
    s.add_argument("seconds", type=float)
    s.set_defaults(func=cmd_interval)

    s = sub.add_parser("reminders", help="Set reminder offsets (none disables)")
    s.add_argument("offsets", type=float, nargs="*")
    s.set_defaults(func=cmd_reminders)

    # contacts
    sub.add_parser("contacts", help="List contacts and statuses").set_defaults(func=cmd_contacts)

    s = sub.add_parser("add-contact", help="Add a contact")
    s.add_argument("contact")
    _add_roles(s)
    s.set_defaults(func=cmd_add_contact)

    s = sub.add_parser("set-roles", help="Change a contact's roles")
    s.add_argument("contact")
    _add_roles(s)
    s.set_defaults(func=cmd_set_roles)

    s = sub.add_parser("remove-contact", help="Remove a contact")
    s.add_argument("contact")
    s.set_defaults(func=cmd_remove_contact)

    # pings
    s = sub.add_parser("ping", help="Ping a dependent")
    s.add_argument("dependent")
    s.set_defaults(func=cmd_ping)

    s = sub.add_parser("respond", help="Answer one ping, or all of them")
    s.add_argument("responder", nargs="?", default=None)
    s.set_defaults(func=cmd_respond)

    s = sub.add_parser("clear-ping", help="Withdraw a ping")
    s.add_argument("dependent")
    s.set_defaults(func=cmd_clear_ping)

    # alert
    s = sub.add_parser("alert", help="Manual alert")
    s.add_argument("action", choices=["state", "arm", "disarm-start", "disarm-release"])
    s.set_defaults(func=cmd_alert)

    # notifications
    s = sub.add_parser("notifications", help="Show notification history")
    s.add_argument("--mark-read", action="store_true", help="Mark all as read")
    s.set_defaults(func=cmd_notifications)

    args = ap.parse_args()
    try:
        args.func(args)
    except HTTPError as e:
        detail = e.read().decode("utf-8", errors="replace")
        print(f"error {e.code}: {detail}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
