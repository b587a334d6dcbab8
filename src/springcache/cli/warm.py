"""Trigger caching of assets by looking them up on a deployed edge."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

import httpx


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the springcache edge by requesting assets")
    parser.add_argument("--base-url", required=True, help="Edge base URL, e.g. https://files.example.com")
    parser.add_argument("--category", default="map", help="Asset category to request")
    parser.add_argument("--file", type=Path, help="Read springnames from this file, one per line")
    parser.add_argument("--timeout", type=float, default=30.0, help="Per-request timeout in seconds")
    parser.add_argument("springnames", nargs="*", help="Springnames to request")
    args = parser.parse_args(argv)
    if not args.springnames and args.file is None:
        parser.error("give springnames as arguments or with --file")
    return args


def read_names(args: argparse.Namespace) -> list[str]:
    names = list(args.springnames)
    if args.file is not None:
        for line in args.file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                names.append(line)
    return names


async def warm_one(client: httpx.AsyncClient, category: str, springname: str) -> Optional[str]:
    """Return the first mirror of the asset, or None when the lookup failed."""
    try:
        response = await client.get("/find", params={"category": category, "springname": springname})
    except httpx.HTTPError as exc:
        print(f"Fetching {springname} failed: {exc}", file=sys.stderr)
        return None
    if not response.is_success:
        print(f"Fetching {springname} failed {response.status_code}", file=sys.stderr)
        return None
    try:
        return response.json()[0]["mirrors"][0]
    except (ValueError, LookupError, TypeError):
        print(f"Fetching {springname} returned an unexpected body", file=sys.stderr)
        return None


async def run(argv: Optional[Sequence[str]] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    args = parse_args(argv)
    failures = 0
    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout, transport=transport) as client:
        for springname in read_names(args):
            mirror = await warm_one(client, args.category, springname)
            if mirror is None:
                failures += 1
            else:
                print(mirror)
    return 1 if failures else 0


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
