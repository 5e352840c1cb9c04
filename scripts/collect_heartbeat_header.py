#!/usr/bin/env python3
from __future__ import annotations

import argparse

import httpx

from heartbeat_info.report import HeartBeatEncodingError, decode_heartbeats_header


def collect_header(client: httpx.Client, base_url: str, persistence_key: str, *, record: bool) -> str:
    apps_url = f"{base_url.rstrip('/')}/api/v1/apps/{persistence_key}"
    if record:
        client.post(f"{apps_url}/heartbeats").raise_for_status()
    response = client.get(f"{apps_url}/heartbeats/header")
    response.raise_for_status()
    return response.json()["header"]


def main() -> int:
    parser = argparse.ArgumentParser(description="Fetch and decode a heartbeat header")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Heartbeat service base URL (default: http://localhost:8000)",
    )
    parser.add_argument("--persistence-key", default="default", help="Application persistence key")
    parser.add_argument(
        "--no-record",
        action="store_true",
        help="Only drain; do not record a heartbeat first",
    )
    args = parser.parse_args()

    with httpx.Client(timeout=10) as client:
        try:
            header = collect_header(
                client,
                args.base_url,
                args.persistence_key,
                record=not args.no_record,
            )
        except httpx.HTTPError as exc:
            print(f"request_failed: {exc}")
            return 1

    print(f"header: {header}")
    try:
        results = decode_heartbeats_header(header)
    except HeartBeatEncodingError as exc:
        print(f"decode_failed: {exc}")
        return 1

    if not results:
        print("- no heartbeats recorded")
    for result in results:
        print(f"- {result.user_agent}: {', '.join(result.used_dates)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
