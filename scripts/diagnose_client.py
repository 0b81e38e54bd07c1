#!/usr/bin/env python3
"""Command-line client for the diagnosis relay.

Streams a diagnosis to stdout as it arrives and prints the user id the
server filed it under, so it can be passed back with ``--user-id``.
"""
from __future__ import annotations

import argparse
import os
import re
import sys

import httpx

_TRAILER_RE = re.compile(r"\n\n--- USER_ID: (\S+) ---$")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send symptoms to the diagnosis relay.")
    parser.add_argument("symptoms", nargs="?", help="Symptoms to report")
    parser.add_argument("--health-history", default=None, help="Additional health context")
    parser.add_argument("--user-id", default=None, help="Existing user id to continue a history")
    parser.add_argument(
        "--server",
        default=os.getenv("SERVER_URL", "http://localhost:3001"),
        help="Server base URL (default: $SERVER_URL or http://localhost:3001)",
    )
    parser.add_argument(
        "--payment",
        default=None,
        help="Pre-built X-PAYMENT header; uses the paid /diagnose endpoint when set",
    )
    parser.add_argument("--history", action="store_true", help="Print the stored history for --user-id")
    parser.add_argument("--timeout", type=float, default=120.0)
    return parser.parse_args(argv)


def stream_diagnosis(
    client: httpx.Client,
    *,
    symptoms: str,
    health_history: str | None,
    user_id: str | None,
    payment: str | None,
) -> str | None:
    body = {"symptoms": symptoms}
    if health_history:
        body["healthHistory"] = health_history
    if user_id:
        body["userId"] = user_id
    path = "/diagnose" if payment else "/diagnose-test"
    headers = {"X-PAYMENT": payment} if payment else {}

    received: list[str] = []
    with client.stream("POST", path, json=body, headers=headers) as response:
        if response.status_code >= 400:
            response.read()
            print(f"Request failed ({response.status_code}): {response.text}", file=sys.stderr)
            return None
        for chunk in response.iter_text():
            received.append(chunk)
            sys.stdout.write(chunk)
            sys.stdout.flush()
    print()

    match = _TRAILER_RE.search("".join(received))
    return match.group(1) if match else None


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    timeout = httpx.Timeout(args.timeout, connect=8.0)
    with httpx.Client(base_url=args.server.rstrip("/"), timeout=timeout) as client:
        if args.history:
            if not args.user_id:
                print("--history requires --user-id", file=sys.stderr)
                return 2
            response = client.get(f"/history/{args.user_id}")
            print(response.text)
            return 0 if response.status_code == 200 else 1

        if not args.symptoms:
            print("symptoms are required", file=sys.stderr)
            return 2
        try:
            user_id = stream_diagnosis(
                client,
                symptoms=args.symptoms,
                health_history=args.health_history,
                user_id=args.user_id,
                payment=args.payment,
            )
        except httpx.HTTPError as exc:
            print(f"Request failed: {exc}", file=sys.stderr)
            return 1

    if not user_id:
        print("No USER_ID trailer received; the session was not recorded.", file=sys.stderr)
        return 1
    print(f"Saved under user id: {user_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
