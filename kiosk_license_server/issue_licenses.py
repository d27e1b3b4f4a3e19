from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from .errors import KeyAllocationError, StoreError
from .server import create_app
from .store import LicenseMetadata
from .models import STATUS_ACTIVE, STATUS_PENDING, STATUS_REVOKED, to_iso


def issue(engine, args: argparse.Namespace) -> int:
    metadata = LicenseMetadata(
        kiosk_name=args.kiosk_name.strip(),
        restaurant=args.restaurant,
        country=args.location_country,
        region=args.region,
    )
    for _ in range(args.count):
        result = engine.issue(metadata, validity_days=args.days, country=args.country)
        if not result.ok:
            print(f"[FAIL] {result.error.message}", file=sys.stderr)
            return 1
        lic = result.value
        print(f"[OK] issued: {lic.license_key}  (kiosk={lic.kiosk_name}, expires={to_iso(lic.expires_at)})")
    return 0


def list_licenses(engine, args: argparse.Namespace) -> int:
    licenses = engine.list_licenses(status=args.status, country=args.location_country, limit=args.limit)
    if not licenses:
        print("No licenses found.")
        return 0

    for lic in licenses:
        activated = to_iso(lic.activated_at) or "no"
        print(f"{lic.license_key}  status={lic.status}  kiosk={lic.kiosk_name}  "
              f"expires={to_iso(lic.expires_at)}  activated={activated}")
    print(f"Total: {len(licenses)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m kiosk_license_server.issue_licenses",
        description="Issue and list kiosk licenses against the configured DATABASE_URL.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_issue = sub.add_parser("issue", help="issue new pending licenses")
    p_issue.add_argument("--kiosk-name", required=True)
    p_issue.add_argument("--restaurant")
    p_issue.add_argument("--location-country", help="descriptive country stored with the kiosk")
    p_issue.add_argument("--region")
    p_issue.add_argument("--country", help="country code embedded in the license key")
    p_issue.add_argument("--days", type=int, help="validity in days (default: LICENSE_VALIDITY_DAYS)")
    p_issue.add_argument("--count", type=int, default=1)

    p_list = sub.add_parser("list", help="list licenses, newest first")
    p_list.add_argument("--status", choices=[STATUS_PENDING, STATUS_ACTIVE, STATUS_REVOKED])
    p_list.add_argument("--location-country")
    p_list.add_argument("--limit", type=int, default=100)
    return parser


def main(argv: Optional[List[str]] = None, app=None) -> int:
    args = build_parser().parse_args(argv)

    app = app or create_app()
    engine = app.extensions["license_engine"]
    with app.app_context():
        try:
            if args.command == "issue":
                return issue(engine, args)
            return list_licenses(engine, args)
        except (StoreError, KeyAllocationError) as e:
            print(f"[ERROR] {e}", file=sys.stderr)
            return 2


if __name__ == "__main__":
    sys.exit(main())
