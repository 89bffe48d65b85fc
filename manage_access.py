from __future__ import annotations

import argparse
from datetime import datetime

from reportgate import access_store, report_store
from reportgate.access_policy import AccessControlPolicy
from reportgate.access_service import AccessControlService
from reportgate.errors import ReportGateError


def _fmt_time(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value else "-"


def print_report(report: dict[str, object]) -> None:
    print(
        f"{report['id']:>4} {report['title']:<32} {report['owner_email']:<28} "
        f"{report['building_address'] or '-'}"
    )


def print_policy(report_id: int, policy: AccessControlPolicy | None) -> None:
    if policy is None:
        print(f"Report #{report_id}: no access controls (open link)")
        return
    quota = "-" if policy.max_access_count is None else f"{policy.current_access_count}/{policy.max_access_count}"
    emails = ", ".join(sorted(policy.allowed_emails)) or "-"
    print(f"Report #{report_id}")
    print(f"  public:        {'yes' if policy.is_public else 'no'}")
    print(f"  expires:       {_fmt_time(policy.expires_at)}")
    print(f"  password:      {'set' if policy.has_password else '-'}")
    print(f"  allowed:       {emails}")
    print(f"  views:         {policy.current_access_count} (quota {quota})")
    print(f"  last accessed: {_fmt_time(policy.last_accessed_at)}")


def cmd_report_add(ns: argparse.Namespace) -> None:
    record = report_store.create_report(
        title=ns.title,
        owner_email=ns.owner,
        building_address=ns.address or "",
    )
    print("Created report:")
    print_report(record)


def cmd_report_list(ns: argparse.Namespace) -> None:
    reports = report_store.list_reports(owner_email=ns.owner)
    if not reports:
        print("(no reports)")
        return
    for report in reports:
        print_report(report)


def cmd_show(ns: argparse.Namespace) -> None:
    service = AccessControlService()
    print_policy(ns.report_id, service.store.load(ns.report_id))


def cmd_set(ns: argparse.Namespace) -> None:
    settings: dict[str, object] = {
        "is_public": ns.public,
        "expires_at": ns.expires,
        "access_password": ns.password,
        "allowed_emails": ns.allow or None,
        "max_access_count": ns.max_views,
    }
    policy = AccessControlService().set_policy(ns.report_id, settings)
    print("Access controls updated")
    print_policy(ns.report_id, policy)


def cmd_remove(ns: argparse.Namespace) -> None:
    outcome = AccessControlService().remove_policy(ns.report_id)
    print("Access controls removed" if outcome.removed else "Report had no access controls")


def cmd_check(ns: argparse.Namespace) -> None:
    decision = AccessControlService().check_access(ns.report_id, ns.email, ns.password)
    if decision.allowed:
        remaining = "unlimited" if decision.remaining_access is None else decision.remaining_access
        print(f"ALLOWED (remaining views: {remaining})")
    else:
        print(f"DENIED {decision.reason.value}: {decision.message}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage shared report access controls")
    sub = parser.add_subparsers(dest="command", required=True)

    p_add = sub.add_parser("report-add", help="Register a report")
    p_add.add_argument("title")
    p_add.add_argument("--owner", required=True)
    p_add.add_argument("--address", default="")
    p_add.set_defaults(func=cmd_report_add)

    p_list = sub.add_parser("report-list", help="List reports")
    p_list.add_argument("--owner")
    p_list.set_defaults(func=cmd_report_list, owner=None)

    p_show = sub.add_parser("show", help="Show a report's access controls")
    p_show.add_argument("report_id", type=int)
    p_show.set_defaults(func=cmd_show)

    p_set = sub.add_parser("set", help="Replace a report's access controls")
    p_set.add_argument("report_id", type=int)
    p_set.add_argument("--public", dest="public", action="store_true")
    p_set.add_argument("--private", dest="public", action="store_false")
    p_set.add_argument("--expires", help="ISO-8601 expiry, e.g. 2026-12-31T23:59:00Z")
    p_set.add_argument("--password")
    p_set.add_argument("--allow", action="append", metavar="EMAIL", help="Allowed email (repeatable)")
    p_set.add_argument("--max-views", dest="max_views", type=int)
    p_set.set_defaults(func=cmd_set, public=False)

    p_remove = sub.add_parser("remove", help="Remove a report's access controls")
    p_remove.add_argument("report_id", type=int)
    p_remove.set_defaults(func=cmd_remove)

    p_check = sub.add_parser("check", help="Evaluate access without recording a view")
    p_check.add_argument("report_id", type=int)
    p_check.add_argument("--email")
    p_check.add_argument("--password")
    p_check.set_defaults(func=cmd_check)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    report_store.init_db()
    access_store.init_db()
    try:
        args.func(args)
    except ValueError as exc:
        raise SystemExit(f"Invalid input: {exc}") from exc
    except ReportGateError as exc:
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
