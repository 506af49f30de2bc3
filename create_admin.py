"""
Create an administrator account.

Usage:
    importmobile-create-admin [--phone PHONE] [--password PASSWORD]

Missing values are prompted for. Uses the same DATABASE_URL / DATABASE_NAME
as the API.
"""
import logging

import click
from pydantic import ValidationError

import config
import database
from auth import register_account
from errors import Conflict
from schemas import RegisterRequest

logger = logging.getLogger("create_admin")


def create_admin(db, phone: str, password: str) -> dict:
    """Validate input and store an admin account; raises on bad input or duplicates."""
    payload = RegisterRequest(phone=phone, password=password)
    database.ensure_indexes(db)
    return register_account(db, payload, admin=True)


@click.command(help="Create an ImportMobile admin account.")
@click.option("--phone", prompt="Phone number", help="Admin phone number (login).")
@click.option(
    "--password",
    prompt=f"Password (min {config.PASSWORD_MIN_LENGTH} characters)",
    hide_input=True,
    help=f"Admin password (min {config.PASSWORD_MIN_LENGTH} characters).",
)
def main(phone: str, password: str) -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(levelname)s %(message)s")

    db = database.db
    if db is None:
        raise click.ClickException("DATABASE_URL and DATABASE_NAME must be set")

    if len(password) < config.PASSWORD_MIN_LENGTH:
        raise click.ClickException(f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters")

    try:
        account = create_admin(db, phone.strip(), password)
    except ValidationError as e:
        raise click.ClickException(f"Invalid input: {e.errors()[0].get('msg')}")
    except Conflict as e:
        raise click.ClickException(e.message)

    click.echo(f"Admin account created: {account['phone']} ({account['_id']})")


if __name__ == "__main__":
    main()
