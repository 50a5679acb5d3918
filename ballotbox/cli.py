#!/usr/bin/env python3
"""
Admin command line for a running ballotbox API.

Issues voter codes in batches and changes event status.
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from ballotbox.shared.models import MAX_CREDENTIAL_BATCH, EventStatus

DEFAULT_API_URL = os.getenv('BALLOTBOX_API_URL', 'http://localhost:8000/api/v1')


class AdminError(Exception):
    """The API rejected an admin request."""


def _raise_for_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        detail = response.json().get('detail', response.text)
    except ValueError:
        detail = response.text
    raise AdminError(f"HTTP {response.status_code}: {detail}")


def issue_credentials(client: httpx.Client, event_id: str, count: int) -> List[str]:
    """Issue `count` codes, in batches the API accepts."""
    codes: List[str] = []
    remaining = count
    while remaining > 0:
        batch = min(remaining, MAX_CREDENTIAL_BATCH)
        response = client.post(f"/events/{event_id}/credentials", json={"count": batch})
        _raise_for_error(response)
        codes.extend(response.json()['codes'])
        remaining -= batch
    return codes


def set_status(client: httpx.Client, event_id: str, target: str) -> dict:
    response = client.put(f"/events/{event_id}/status", json={"status": target})
    _raise_for_error(response)
    return response.json()


def save_codes(codes: List[str], event_id: str, output: str) -> Path:
    """Write codes to a JSON file for printing or mail merge."""
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump({"event_id": event_id, "count": len(codes), "codes": codes}, f, indent=2)
    return path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ballotbox-admin',
        description='Administer voting events on a ballotbox API',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Issue 250 voter codes and save them
  ballotbox-admin issue-credentials --event 3f1c9a52-... --count 250 --output codes.json

  # Open the event for voting
  ballotbox-admin set-status --event 3f1c9a52-... --status active
        """
    )
    parser.add_argument(
        '--api-url',
        type=str,
        default=DEFAULT_API_URL,
        help=f'API base URL (default: {DEFAULT_API_URL})'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    issue = subparsers.add_parser('issue-credentials', help='Issue single-use voter codes')
    issue.add_argument('--event', type=str, required=True, help='Event id')
    issue.add_argument('--count', type=int, required=True, help='Number of codes to issue')
    issue.add_argument('--output', type=str, help='Write codes to this JSON file instead of stdout')

    status = subparsers.add_parser('set-status', help='Change event status')
    status.add_argument('--event', type=str, required=True, help='Event id')
    status.add_argument(
        '--status',
        type=str,
        required=True,
        choices=[s.value for s in EventStatus if s != EventStatus.DRAFT],
        help='Target status'
    )
    return parser


def main(argv: Optional[List[str]] = None, client: Optional[httpx.Client] = None) -> int:
    """Main entry point for the admin CLI"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'issue-credentials' and args.count <= 0:
        parser.error("Count must be a positive number")

    client = client or httpx.Client(base_url=args.api_url, timeout=30.0)
    try:
        if args.command == 'issue-credentials':
            codes = issue_credentials(client, args.event, args.count)
            if args.output:
                path = save_codes(codes, args.event, args.output)
                print(f"Issued {len(codes):,} voter codes for event {args.event}")
                print(f"Saved to {path.absolute()}")
            else:
                for code in codes:
                    print(code)
        else:
            event = set_status(client, args.event, args.status)
            print(f"Event {event['id']} ({event['name']}) is now {event['status']}")
    except (AdminError, httpx.HTTPError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()

    return 0


if __name__ == '__main__':
    sys.exit(main())
