#!/usr/bin/env python3
"""
Portal - mountable web front-end (accounts, OAuth sign-in, provider API examples).
"""

import argparse
import sys


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run the portal web front-end",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve on the default port
  python main.py serve

  # Mount under /app (every route, redirect and CSRF exemption follows)
  APP_NAMESPACE=app SESSION_SECRET=... python main.py serve --port 3000
        """,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=8080, help="Listen port (default: 8080)")

    sub.add_parser("init-db", help="Create the user tables in POSTGRES_DSN (idempotent)")

    args = parser.parse_args()

    try:
        if args.command == "serve":
            from portal.api.webapp import run

            run(host=args.host, port=args.port)
            return

        if args.command == "init-db":
            from portal.auth.users import PostgresUserStore
            from portal.config import load_config

            cfg = load_config()
            if not cfg.postgres_dsn:
                print("POSTGRES_DSN is not set", file=sys.stderr)
                sys.exit(2)
            PostgresUserStore(cfg.postgres_dsn).ensure_schema()
            print("User schema is up to date")
            return

        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
