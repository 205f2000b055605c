"""
Command-line entry point for the finance tracker.

Commands:
    init-db             Create database tables
    create-key          Provision a user's encryption key
    process-recurring   Post recurring transactions that are due
    list-accounts       Show a user's decrypted accounts
    stats               Show a user's dashboard statistics
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from tabulate import tabulate

from config_manager import load_config
from exceptions import DuplicateKeyError, FinanceAppError
from financial_app import FinanceApp, create_app
from utils import resolve_log_path

# Configure module-level logger
logger = logging.getLogger(__name__)


def setup_logging(config: dict) -> None:
    """
    Configure logging based on config settings.

    Args:
        config: Configuration dictionary with logging settings
    """
    log_config = config.get("logging", {})
    level_name = str(log_config.get("level", "INFO")).upper()
    log_level = getattr(logging, level_name, None)
    invalid_level = not isinstance(log_level, int)
    if invalid_level:
        log_level = logging.INFO
    log_format = log_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    log_file = log_config.get("file")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(resolve_log_path(log_file)))

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True
    )
    if invalid_level:
        logger.warning("Invalid log level '%s'; defaulting to INFO", level_name)


def handle_create_key(app: FinanceApp, args: argparse.Namespace) -> int:
    try:
        app.key_store.create_user_key(args.user)
    except DuplicateKeyError:
        print(f"User {args.user} already has an encryption key")
        return 0
    print(f"Created encryption key for user {args.user}")
    return 0


def handle_process_recurring(app: FinanceApp, args: argparse.Namespace) -> int:
    today = datetime.strptime(args.date, "%Y-%m-%d").date() if args.date else None
    results = app.recurring.process_due(today=today, user_id=args.user)
    if not results:
        print("No recurring transactions due")
        return 0
    print(tabulate(
        [[r["id"], r["status"], r.get("error", "")] for r in results],
        headers=["ID", "Status", "Error"],
        tablefmt="grid"
    ))
    return 1 if any(r["status"] == "error" for r in results) else 0


def handle_list_accounts(app: FinanceApp, args: argparse.Namespace) -> int:
    accounts = app.accounts.list_accounts(args.user)
    if not accounts:
        print(f"No accounts found for user {args.user}")
        return 0
    print(tabulate(
        [[a["id"], a["name"], a["type"], f"{a['balance']:,.2f}"] for a in accounts],
        headers=["ID", "Name", "Type", "Balance"],
        tablefmt="grid",
        disable_numparse=True,
    ))
    return 0


def handle_stats(app: FinanceApp, args: argparse.Namespace) -> int:
    stats = app.dashboard.get_dashboard_stats(args.user)
    rows = [[key, value] for key, value in stats.items() if key != "expenses_by_category"]
    print(tabulate(rows, headers=["Metric", "Value"], tablefmt="grid"))
    if stats["expenses_by_category"]:
        print(tabulate(
            sorted(stats["expenses_by_category"].items()),
            headers=["Category", "Spent this month"],
            tablefmt="grid"
        ))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Personal finance tracker with per-user encryption")
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create database tables")

    key_parser = subparsers.add_parser("create-key", help="Provision a user's encryption key")
    key_parser.add_argument("--user", required=True, help="User ID")

    recurring_parser = subparsers.add_parser("process-recurring", help="Post due recurring transactions")
    recurring_parser.add_argument("--date", type=str, help="Processing date (YYYY-MM-DD, default today)")
    recurring_parser.add_argument("--user", type=str, help="Only process this user")

    list_parser = subparsers.add_parser("list-accounts", help="List a user's accounts")
    list_parser.add_argument("--user", required=True, help="User ID")

    stats_parser = subparsers.add_parser("stats", help="Show dashboard statistics")
    stats_parser.add_argument("--user", required=True, help="User ID")

    return parser


HANDLERS = {
    "create-key": handle_create_key,
    "process-recurring": handle_process_recurring,
    "list-accounts": handle_list_accounts,
    "stats": handle_stats,
}


def main(argv=None) -> int:
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(Path(args.config))
    except FinanceAppError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    try:
        setup_logging(config)
    except FinanceAppError as e:
        print(f"Error configuring logging: {e}", file=sys.stderr)
        return 1

    try:
        app = create_app(config)
    except FinanceAppError as e:
        logger.error("Failed to initialize database: %s", e)
        return 1

    try:
        if args.command == "init-db":
            print("Database tables created/verified")
            return 0
        return HANDLERS[args.command](app, args)
    except FinanceAppError as e:
        logger.error("Command '%s' failed: %s", args.command, e)
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
