"""Flask CLI commands for schema bootstrap, staff records and quick lookups."""

from __future__ import annotations

from pathlib import Path

import click
from flask import current_app
from flask.cli import AppGroup, with_appcontext

from clinic_ops.services.appointments import list_for_staff
from clinic_ops.services.availability import load_staff_availability, normalize_date
from clinic_ops.services.bootstrap import ensure_base_tables
from clinic_ops.services.errors import SchedulingError
from clinic_ops.services.session_counter import capacity_threshold, current_session_count
from clinic_ops.services.slots import generate_slots
from clinic_ops.services.staff import add_staff, get_staff, rename_staff


def register_cli(app) -> None:
    db_group = AppGroup("db")

    @db_group.command("init")
    @with_appcontext
    def init() -> None:
        ensure_base_tables(Path(current_app.config["CLINIC_DB"]))
        click.echo(f"Schema ready at {current_app.config['CLINIC_DB']}")

    app.cli.add_command(db_group)

    staff_group = AppGroup("staff")

    @staff_group.command("add")
    @click.argument("name")
    @click.option("--role", default="ClinicalTeam", show_default=True)
    @click.option("--id", "staff_id", default=None, help="Stable id (generated when omitted)")
    @with_appcontext
    def add(name: str, role: str, staff_id: str | None) -> None:
        try:
            member = add_staff(name, role=role, staff_id=staff_id)
        except SchedulingError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"{member['id']}\t{member['display_name']}\t{member['role']}")

    @staff_group.command("rename")
    @click.argument("staff_id")
    @click.argument("name")
    @with_appcontext
    def rename(staff_id: str, name: str) -> None:
        """Change a display name; existing bookings pick up the new label."""
        try:
            member = rename_staff(staff_id, name)
        except SchedulingError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"{member['id']}\t{member['display_name']}\t{member['role']}")

    @staff_group.command("show")
    @click.argument("staff_id")
    @with_appcontext
    def show_staff(staff_id: str) -> None:
        try:
            member = get_staff(staff_id)
        except SchedulingError as exc:
            raise click.ClickException(str(exc)) from exc
        state = "active" if member["is_active"] else "inactive"
        click.echo(f"{member['id']}\t{member['display_name']}\t{member['role']}\t{state}")

    app.cli.add_command(staff_group)

    counter_group = AppGroup("counter")

    @counter_group.command("show")
    @click.argument("program_key")
    @click.argument("year", type=int)
    @with_appcontext
    def show(program_key: str, year: int) -> None:
        count = current_session_count(program_key, year)
        threshold = capacity_threshold()
        click.echo(f"{program_key} {year}: {count} session(s), {max(threshold - count, 0)} free remaining")

    app.cli.add_command(counter_group)

    @app.cli.command("slots")
    @click.argument("staff_id")
    @click.argument("day")
    @with_appcontext
    def slots(staff_id: str, day: str) -> None:
        try:
            target = normalize_date(day)
            staff = load_staff_availability(staff_id)
            offered = generate_slots(staff, target, list_for_staff(staff_id))
        except SchedulingError as exc:
            raise click.ClickException(str(exc)) from exc
        if not offered:
            click.echo("No slots available.")
            return
        for slot in offered:
            click.echo(slot.time)
