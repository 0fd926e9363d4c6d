import argparse
import sys

from subsentry.config import settings
from subsentry.logging import configure_logging


def cmd_init_db(args):
    from subsentry.db import init_db

    init_db()
    print({"init_db": "ok", "database_url": settings.DATABASE_URL})


def _report(report):
    print(
        {
            "job": report.job,
            "users": report.users,
            "succeeded": report.succeeded,
            "failed": report.failed,
            "totals": report.totals,
        }
    )
    return 1 if report.failed else 0


def cmd_generate_alerts(args):
    from subsentry.services.jobs import run_alert_generation
    from subsentry.services.wiring import sql_services

    return _report(
        run_alert_generation(sql_services(), user_ids=args.user or None, max_workers=args.workers)
    )


def cmd_advance(args):
    from subsentry.services.jobs import run_maintenance
    from subsentry.services.wiring import sql_services

    return _report(run_maintenance(sql_services(), user_ids=args.user or None, max_workers=args.workers))


def main(argv=None):
    p = argparse.ArgumentParser(prog="subsentry.cli")
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("init-db", help="Create tables (dev/test; production uses alembic)").set_defaults(
        fn=cmd_init_db
    )

    g = sub.add_parser("generate-alerts", help="Daily alert pass")
    g.add_argument("--user", action="append", help="Limit to user id (repeatable); default all users")
    g.add_argument("--workers", type=int, default=None)
    g.set_defaults(fn=cmd_generate_alerts)

    a = sub.add_parser("advance", help="Daily renewal-date advance / trial conversion")
    a.add_argument("--user", action="append", help="Limit to user id (repeatable); default all users")
    a.add_argument("--workers", type=int, default=None)
    a.set_defaults(fn=cmd_advance)

    args = p.parse_args(argv)
    if not getattr(args, "cmd", None):
        p.print_help()
        return 1
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    return args.fn(args) or 0


if __name__ == "__main__":
    sys.exit(main())
