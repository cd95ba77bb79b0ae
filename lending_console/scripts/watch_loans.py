#!/usr/bin/env python3
from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
import threading
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.lending_api import AuthApi, LendingApi, LendingApiError, SessionExpiredError
from services.loan_poller import LoanPoller, get_poll_interval_seconds
from services.login_service import LoginError, perform_login
from services.report_service import days_until_due, loan_status_counts
from services.session_store import SessionStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sign in to the lending API and print the loan list on a fixed interval.",
    )
    parser.add_argument("--email", default=os.environ.get("LENDING_CONSOLE_EMAIL", "").strip(), help="Account email")
    parser.add_argument(
        "--password",
        default=os.environ.get("LENDING_CONSOLE_PASSWORD"),
        help="Account password; prompted for when omitted.",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Lending API base URL; defaults to LENDING_API_BASE_URL.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=get_poll_interval_seconds(),
        help="Seconds between refreshes (default 30 or LOAN_POLL_INTERVAL_SECONDS).",
    )
    parser.add_argument("--once", action="store_true", help="Fetch and print a single time, then exit.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser


def _print_loans(loans: list) -> None:
    summary = loan_status_counts(loans)
    counts = ", ".join(f"{row['status']}={row['count']}" for row in summary["rows"])
    print(f"\n{summary['total']} loan(s): {counts}")
    for loan in loans:
        due = days_until_due(loan)
        due_text = ""
        if due:
            due_text = f"overdue {-due['days']}d" if due["level"] == "overdue" else f"{due['days']}d left"
        print(
            f"  #{loan.id:<5} {loan.status:<9} {loan.equipment.name[:30]:<30} "
            f"due {loan.scheduledReturnDate:%Y-%m-%d %H:%M} {due_text}"
        )
    sys.stdout.flush()


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if not args.email:
        parser.error("Missing email. Set LENDING_CONSOLE_EMAIL or pass --email.")
    if args.interval <= 0:
        parser.error("--interval must be > 0")
    password = args.password if args.password is not None else getpass.getpass("Password: ")

    store = SessionStore({})
    try:
        resolved = perform_login(AuthApi(args.base_url), store, args.email, password)
    except (LoginError, LendingApiError) as exc:
        print(f"Login failed: {exc}", file=sys.stderr)
        return 1
    print(f"Signed in as {resolved.user.name} <{resolved.user.email}> ({resolved.user.role})")

    api = LendingApi(store, args.base_url)
    if args.once:
        try:
            _print_loans(api.loans.list_for(resolved.user))
        except (LendingApiError, SessionExpiredError) as exc:
            print(f"Could not load loans: {exc}", file=sys.stderr)
            return 1
        return 0

    finished = threading.Event()
    exit_code = {"value": 0}

    def _on_expired(exc: SessionExpiredError) -> None:
        print(str(exc), file=sys.stderr)
        exit_code["value"] = 2
        finished.set()

    poller = LoanPoller(
        lambda: api.loans.list_for(resolved.user),
        _print_loans,
        interval_seconds=args.interval,
        on_error=lambda exc: print(f"Refresh failed: {exc}", file=sys.stderr),
        on_session_expired=_on_expired,
    )
    poller.start()
    try:
        finished.wait()
    except KeyboardInterrupt:
        pass
    finally:
        poller.stop()
    return exit_code["value"]


if __name__ == "__main__":
    raise SystemExit(main())
