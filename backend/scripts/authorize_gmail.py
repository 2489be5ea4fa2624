#!/usr/bin/env python3
"""
Sign in to Gmail once, interactively, and store the token for background runs.

Opens a browser for Google consent (read-only scope) and writes TOKEN_PATH. Scheduled
and manual syncs never open a browser; they fail with an authorization error until
this has been run.

Usage (from backend directory):
  python scripts/authorize_gmail.py
"""
import os
import sys

_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from mailsync.gmail_service import get_gmail_service, _resolve_path
from mailsync.config import settings


def main() -> int:
    try:
        service = get_gmail_service(allow_interactive_oauth=True)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    profile = service.users().getProfile(userId="me").execute()
    print(f"Authorized {profile.get('emailAddress')}; token saved to {_resolve_path(settings.token_path)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
