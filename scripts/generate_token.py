#!/usr/bin/env python3
"""
Generate or check service tokens for the dispatch API.

Usage:
    python scripts/generate_token.py              # One 32-byte token
    python scripts/generate_token.py 48           # One 48-byte token
    python scripts/generate_token.py --env        # DISPATCH_API_TOKEN / METRICS_TOKEN lines for .env
    python scripts/generate_token.py --check TOK  # Report weaknesses of an existing token
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from vamo.transport.security import generate_secure_token, validate_token_strength  # noqa: E402


def main() -> int:
    args = sys.argv[1:]
    if "--help" in args or "-h" in args:
        print(__doc__)
        return 0

    if args and args[0] == "--check":
        if len(args) < 2:
            print("--check needs a token", file=sys.stderr)
            return 2
        warnings = validate_token_strength(args[1])
        for warning in warnings:
            print(f"WARNING: {warning}")
        if not warnings:
            print("Token looks strong")
        return 1 if warnings else 0

    length = next((int(a) for a in args if a.isdigit()), 32)
    if "--env" in args:
        print(f"DISPATCH_API_TOKEN={generate_secure_token(length)}")
        print(f"METRICS_TOKEN={generate_secure_token(length)}")
    else:
        print(generate_secure_token(length))
    return 0


if __name__ == "__main__":
    sys.exit(main())
