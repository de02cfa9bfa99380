from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _describe(status: dict) -> str:
    primary = status.get("primary")
    lines = [
        f"scope:    {status['scope']} ({status['state']})",
        f"leader:   {status.get('leader') or '-'}",
        f"primary:  {primary['id'] + ' ' + primary['host'] if primary else '-'}",
        f"replicas: {len(status.get('replicas') or [])}",
    ]
    for r in status.get("replicas") or []:
        lines.append(f"  - {r['id']} {r['host']}")
    lines.append(f"haproxy:  pid {status.get('pid') or '-'}, {status.get('restarts', 0)} restart(s)")
    lines.append(f"applied:  {status.get('applies', 0)} time(s), last at {status.get('last_applied_at') or '-'}")
    if status.get("last_error"):
        lines.append(f"error:    {status['last_error']}")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="patroni-lb status CLI")
    p.add_argument("--api", default="http://localhost:8008", help="Status API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_status = sub.add_parser("status", help="Show reconciler status")
    s_status.add_argument("--json", action="store_true", help="Print the raw JSON document")

    sub.add_parser("config", help="Print the config currently applied to HAProxy")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "status":
        r = requests.get(f"{base}/status", timeout=10)
        if not r.ok:
            _print(r.json())
            return 1
        if args.json:
            _print(r.json())
        else:
            print(_describe(r.json()))
        return 0

    if args.cmd == "config":
        r = requests.get(f"{base}/config", timeout=10)
        if not r.ok:
            print(r.json().get("detail", r.text), file=sys.stderr)
            return 1
        print(r.text, end="")
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
