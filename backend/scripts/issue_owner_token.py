#!/usr/bin/env python3
"""
Owner Token Script
Issues a management API bearer token for a link owner. Tokens are normally
minted by the identity service; this is for local setups and operators.

Usage:
    python -m scripts.issue_owner_token <owner_id> [hours]

Example:
    python -m scripts.issue_owner_token 6f1c2a9e-0d4b-4c1e-9a57-3b8d2f0e7c11 72
"""
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cloaker.auth import create_access_token, ACCESS_TOKEN_EXPIRE_HOURS


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    owner_id = sys.argv[1]
    hours = int(sys.argv[2]) if len(sys.argv) > 2 else ACCESS_TOKEN_EXPIRE_HOURS

    token = create_access_token(owner_id, expires_hours=hours)
    print(f"Owner:   {owner_id}")
    print(f"Expires: {hours}h")
    print(token)


if __name__ == "__main__":
    main()
