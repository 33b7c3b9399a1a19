import argparse
import json
import sys
import time
from typing import Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:4000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def parse_accept(values: List[str]) -> Dict[str, dict]:
    """Parse ROLE=ACCOUNT[:PRICE] items into the nested bid approval form."""
    accepted: Dict[str, dict] = {}
    for item in values:
        role, sep, rest = item.partition("=")
        if not sep or not role or not rest:
            raise ValueError(f"Expected ROLE=ACCOUNT[:PRICE], got {item!r}")
        account, _, price = rest.partition(":")
        entry: dict = {"account": account}
        if price:
            entry["price"] = float(price)
        accepted[role.strip()] = entry
    return accepted


def parse_reviews(approve: List[str], reject: List[str], feedback: List[str]) -> Dict[str, dict]:
    """Build the nested review form from ROLE[:SCORE] and ROLE=TEXT items."""
    reviews: Dict[str, dict] = {}
    for items, approved in ((approve, True), (reject, False)):
        for item in items:
            role, _, score = item.partition(":")
            reviews[role.strip()] = {
                "approved": approved,
                "score": float(score) if score else (100.0 if approved else 0.0),
                "feedback": "",
            }
    for item in feedback:
        role, sep, text = item.partition("=")
        if not sep:
            raise ValueError(f"Expected ROLE=TEXT, got {item!r}")
        reviews.setdefault(role.strip(), {"approved": False, "score": 0.0})["feedback"] = text
    return reviews


def _print_status(status: dict) -> None:
    state = status.get("state") or "IDLE"
    request_id = status.get("request_id")
    print(f"{state}" + (f" ({request_id})" if request_id else ""))
    awaiting = [name for name, flag in (status.get("awaiting") or {}).items() if flag]
    if awaiting:
        print(f"Awaiting: {', '.join(awaiting)}")
    escrow = status.get("escrow")
    if escrow:
        print(f"Escrow: locked {escrow.get('locked')} released {escrow.get('released')} remaining {escrow.get('remaining')}")
    if status.get("error"):
        print(f"Error: {status['error']}")


def _post(base: str, path: str, payload: dict) -> Optional[dict]:
    with httpx.Client() as client:
        resp = client.post(_join_url(base, path), json=payload, timeout=10)
        if resp.status_code >= 400:
            print(f"Request to {path} failed: HTTP {resp.status_code} {resp.text}")
            return None
        return resp.json()


def run_trigger(args: argparse.Namespace) -> int:
    payload = {"task_ref": args.task_ref, "budget": args.budget}
    if args.description:
        payload["description"] = args.description
    data = _post(args.base_url, "/api/marketplace/trigger", payload)
    if data is None:
        return 1
    print(f"Started {data.get('request_id')}")
    return 0


def run_status(args: argparse.Namespace) -> int:
    start = time.time()
    with httpx.Client() as client:
        while True:
            resp = client.get(_join_url(args.base_url, "/api/status"), timeout=10)
            if resp.status_code >= 400:
                print(f"Failed to fetch status: HTTP {resp.status_code}")
                return 1
            status = resp.json()
            if not args.wait_for or status.get("state") in args.wait_for:
                _print_status(status)
                return 0
            if time.time() - start >= args.timeout:
                _print_status(status)
                print("Timed out waiting for state.")
                return 1
            time.sleep(2)


def run_reset(args: argparse.Namespace) -> int:
    data = _post(args.base_url, "/api/marketplace/reset", {})
    if data is None:
        return 1
    print("Session aborted." if data.get("aborted") else "No session was running.")
    return 0


def run_approve(args: argparse.Namespace) -> int:
    try:
        accepted = parse_accept(args.accept)
    except ValueError as exc:
        print(str(exc))
        return 2
    data = _post(args.base_url, "/api/marketplace/bid-approval", {"accepted": accepted})
    if data is None:
        return 1
    print("Approval accepted." if data.get("accepted") else "No bid approval was pending.")
    return 0


def run_review(args: argparse.Namespace) -> int:
    try:
        reviews = parse_reviews(args.approve or [], args.reject or [], args.feedback or [])
    except ValueError as exc:
        print(str(exc))
        return 2
    data = _post(args.base_url, "/api/marketplace/review", {"reviews": reviews})
    if data is None:
        return 1
    print("Review accepted." if data.get("accepted") else "No review was pending.")
    return 0


def run_post(args: argparse.Namespace) -> int:
    if args.raw is not None:
        body = {"raw": args.raw}
    else:
        try:
            body = {"payload": json.loads(args.json)}
        except ValueError as exc:
            print(f"Invalid JSON: {exc}")
            return 2
    data = _post(args.base_url, "/api/log", body)
    if data is None:
        return 1
    print(f"Appended #{data.get('sequence_number')}")
    return 0


def run_log(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(
            _join_url(args.base_url, "/api/log"), params={"after_seq": args.after, "limit": args.limit}, timeout=10
        )
        if resp.status_code >= 400:
            print(f"Failed to read log: HTTP {resp.status_code}")
            return 1
        for msg in resp.json().get("messages") or []:
            parsed = msg.get("parsed") or {}
            label = parsed.get("type") or "(unparsed)"
            role = parsed.get("role")
            print(f"#{msg.get('sequence_number')} {label}" + (f" [{role}]" if role else "") + f" {msg.get('raw')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Task marketplace CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    trigger = subparsers.add_parser("trigger", help="Start a marketplace session")
    trigger.add_argument("task_ref", help="Paper URL or task reference")
    trigger.add_argument("--budget", type=float, required=True, help="Tokens to lock in escrow")
    trigger.add_argument("--description", help="Free-text task description")
    trigger.set_defaults(func=run_trigger)

    status = subparsers.add_parser("status", help="Show the active session")
    status.add_argument("--wait-for", nargs="*", help="Poll until the session reaches one of these states")
    status.add_argument("--timeout", type=int, default=600, help="Max wait seconds")
    status.set_defaults(func=run_status)

    reset = subparsers.add_parser("reset", help="Abort the active session")
    reset.set_defaults(func=run_reset)

    approve = subparsers.add_parser("approve", help="Approve bids")
    approve.add_argument("accept", nargs="+", help="ROLE=ACCOUNT[:PRICE]")
    approve.set_defaults(func=run_approve)

    review = subparsers.add_parser("review", help="Review deliverables")
    review.add_argument("--approve", action="append", help="ROLE[:SCORE]")
    review.add_argument("--reject", action="append", help="ROLE[:SCORE]")
    review.add_argument("--feedback", action="append", help="ROLE=TEXT")
    review.set_defaults(func=run_review)

    post = subparsers.add_parser("post", help="Append a message to the log")
    group = post.add_mutually_exclusive_group(required=True)
    group.add_argument("--json", help="JSON object payload")
    group.add_argument("--raw", help="Raw text (not parsed)")
    post.set_defaults(func=run_post)

    log = subparsers.add_parser("log", help="Print log messages")
    log.add_argument("--after", type=int, default=0, help="Only messages after this sequence number")
    log.add_argument("--limit", type=int, default=200, help="Max messages")
    log.set_defaults(func=run_log)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 1
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
