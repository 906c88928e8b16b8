#!/usr/bin/env python3
"""
Auth Demo -- email/password authentication service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py serve --reload
  python main.py purge

Environment variables (see core/config.py for the full list):
  DATABASE_URL          SQLAlchemy URL of the durable store (default: SQLite file)
  SECRET_KEY            Required unless DEBUG=true. At least 32 characters.
  ALLOWED_ORIGINS       JSON list of frontend origins, e.g. '["http://localhost:3000"]'
  PORT                  Listen port for `serve` (default 8000)
  SESSION_TTL_SECONDS   Session lifetime (default 7 days)
  BCRYPT_ROUNDS         Password hashing cost factor (default 12)
"""

import argparse
import sys

from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
    )
    return 0


def _purge(args: argparse.Namespace) -> int:
    from auth.errors import StoreUnavailable
    from auth.sessions import SessionManager
    from auth.store import AuthStore

    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        removed = SessionManager(store, settings).purge_expired()
    except StoreUnavailable:
        print("  [!] Database unavailable. Check DATABASE_URL and try again.")
        return 1
    finally:
        store.close()
    print(f"  Removed {removed['sessions']} expired session(s), {removed['verification_tokens']} verification token(s).")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="auth-demo",
        description="Email/password authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve
  DEBUG=true python main.py serve --reload
  PORT=9000 python main.py serve
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default=None, help="Bind address (default: HOST setting)")
    serve.add_argument("--port", type=int, default=None, help="Listen port (default: PORT setting)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    serve.set_defaults(func=_serve)

    purge = sub.add_parser("purge", help="Delete expired sessions and verification tokens once")
    purge.set_defaults(func=_purge)

    args = parser.parse_args()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
