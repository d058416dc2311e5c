import argparse
import getpass
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.database import Database, resolve_database_path
from portal.errors import PortalError
from portal.lifecycle import UserManager


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a community portal staff account")
    parser.add_argument("name", help="Login name for the account")
    parser.add_argument(
        "--role",
        choices=["owner", "admin", "staff"],
        default="owner",
        help="Role for the account (default: owner, for bootstrapping a fresh install)",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to PORTAL_DB_PATH or data/portal.sqlite3)",
    )
    return parser.parse_args(argv)


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < 12:
            print("Password must be at least 12 characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main(argv=None) -> int:
    args = parse_args(argv)
    password = prompt_for_password()

    db_env = args.db_path or os.getenv("PORTAL_DB_PATH")
    database = Database(resolve_database_path(db_env))
    database.initialize()

    try:
        account = UserManager(database).save(name=args.name, password=password, role=args.role)
    except PortalError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    print(f"Created user #{account.id}: {account.name} ({account.role.value})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
