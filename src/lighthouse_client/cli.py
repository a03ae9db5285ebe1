"""
Command-line interface to the Lighthouse API.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from . import utils
from .client import Lighthouse
from .exceptions import LighthouseError
from .export import Exporter, default_export_filename
from .models import Bin, Changeset, Comment, Message, Milestone, Model, Project, Ticket
from .utils import setup_logging

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger: logging.Logger = logging.getLogger(__name__)

GET_KINDS = ("project", "ticket", "milestone", "message", "bin", "changeset", "user", "profile", "token", "plan")
LIST_KINDS = ("projects", "tickets", "milestones", "messages", "bins", "changesets", "memberships")
CREATE_KINDS = ("project", "ticket", "milestone", "message", "bin", "changeset", "comment")
UPDATE_KINDS = ("project", "ticket", "milestone", "message", "bin", "user", "profile")
DELETE_KINDS = ("project", "ticket", "milestone", "message", "bin", "changeset")

# client factory of each kind of record living under a project
_PROJECT_SERVICES: dict[str, str] = {
    "ticket": "tickets",
    "milestone": "milestones",
    "message": "messages",
    "bin": "bins",
    "changeset": "changesets",
}

_MODELS: dict[str, type[Model]] = {
    "project": Project,
    "ticket": Ticket,
    "milestone": Milestone,
    "message": Message,
    "bin": Bin,
    "changeset": Changeset,
}


class UsageError(Exception):
    """Raised when the command line lacks something a command needs."""


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog="lh", description="Work with the Lighthouse issue tracker API")

    _ = parser.add_argument("--account", help="Lighthouse account name (env: LH_ACCOUNT)")
    _ = parser.add_argument("--token", help="API token (env: LH_TOKEN)")
    _ = parser.add_argument("--token-pass-path", help="Path for the API token in pass utility")
    _ = parser.add_argument("--email", help="Email for basic authentication (env: LH_EMAIL)")
    _ = parser.add_argument("--password", help="Password for basic authentication (env: LH_PASSWORD)")
    _ = parser.add_argument("--project", "-p", help="Project ID or name")
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    commands = parser.add_subparsers(dest="command", required=True)

    get = commands.add_parser("get", help="Show a single record")
    _ = get.add_argument("kind", choices=GET_KINDS)
    _ = get.add_argument("id", nargs="?", help="ID, name, title, ticket number, revision or token")

    list_ = commands.add_parser("list", help="List records")
    _ = list_.add_argument("kind", choices=LIST_KINDS)
    _ = list_.add_argument("--query", "-q", default="", help="Ticket search query")
    _ = list_.add_argument("--limit", type=int, default=0, help="Tickets per page (max 100)")
    _ = list_.add_argument("--page", type=int, default=0, help="Page number")
    _ = list_.add_argument("--all", action="store_true", help="Fetch every page")

    create = commands.add_parser("create", help="Create a record from key=value fields")
    _ = create.add_argument("kind", choices=CREATE_KINDS)
    _ = create.add_argument(
        "fields", nargs="*", metavar="key=value", help="Fields; a comment also needs message=ID of its message"
    )

    update = commands.add_parser("update", help="Change fields of a record")
    _ = update.add_argument("kind", choices=UPDATE_KINDS)
    _ = update.add_argument("fields", nargs="*", metavar="ID key=value", help="ID (except for profile), then fields")

    delete = commands.add_parser("delete", help="Delete a record")
    _ = delete.add_argument("kind", choices=DELETE_KINDS)
    _ = delete.add_argument("id")

    for name in ("close-milestone", "open-milestone"):
        milestone = commands.add_parser(name, help=f"{name.split('-')[0].capitalize()} a milestone")
        _ = milestone.add_argument("id", help="Milestone ID or title")

    bulk_edit = commands.add_parser("bulk-edit", help="Apply keyword commands to matching tickets")
    _ = bulk_edit.add_argument("--query", required=True, help="Ticket search query, 'all' or a ticket number")
    _ = bulk_edit.add_argument("--command", dest="edit_command", required=True, help='E.g. "state:resolved"')
    _ = bulk_edit.add_argument("--migration-token", help="Token for the destination of a project/account move")

    attach = commands.add_parser("attach", help="Attach a file to a ticket")
    _ = attach.add_argument("ticket", help="Ticket number")
    _ = attach.add_argument("file", type=Path)

    export = commands.add_parser("export", help="Export the whole account to a tar.gz archive")
    _ = export.add_argument("--attachments", action="store_true", help="Also download ticket attachments")
    _ = export.add_argument("--output", "-o", type=Path, help="Archive path (default: ACCOUNT_YYYY-MM-DD.tar.gz)")

    return parser.parse_args(argv)


def parse_fields(pairs: Sequence[str]) -> dict[str, Any]:
    """Parse key=value arguments; values are JSON when they parse as such, strings otherwise."""
    fields: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            msg = f"Expected key=value, got {pair!r}"
            raise UsageError(msg)
        try:
            fields[key] = json.loads(raw)
        except ValueError:
            fields[key] = raw
    return fields


def build_client(args: argparse.Namespace) -> Lighthouse:
    account = args.account or os.environ.get("LH_ACCOUNT")
    if not account:
        msg = "No Lighthouse account given; use --account or LH_ACCOUNT"
        raise UsageError(msg)

    token = utils.get_secret(args.token, env_var="LH_TOKEN", pass_path=args.token_pass_path)
    email = args.email or os.environ.get("LH_EMAIL")
    password = utils.get_secret(args.password, env_var="LH_PASSWORD")
    if not token and not (email and password):
        logger.warning("No Lighthouse credentials given; only public data will be visible")

    return Lighthouse(account, token=token, email=email, password=password)


def _project_id(client: Lighthouse, args: argparse.Namespace) -> int:
    if not args.project:
        msg = "This command needs a project; use --project"
        raise UsageError(msg)
    return int(client.projects.resolve_key(args.project))


def _service(client: Lighthouse, args: argparse.Namespace, kind: str) -> Any:
    if kind == "project":
        return client.projects
    return getattr(client, _PROJECT_SERVICES[kind])(_project_id(client, args))


def _require_id(args: argparse.Namespace) -> str:
    if not args.id:
        msg = f"get {args.kind} needs an ID"
        raise UsageError(msg)
    return str(args.id)


def cmd_get(client: Lighthouse, args: argparse.Namespace) -> Any:
    if args.kind == "plan":
        return client.plan()
    if args.kind == "profile":
        return client.profiles.get()
    if args.kind == "user":
        return client.users.get(_require_id(args))
    if args.kind == "token":
        return client.tokens.get(_require_id(args))
    return _service(client, args, args.kind).get(_require_id(args))


def cmd_list(client: Lighthouse, args: argparse.Namespace) -> Any:
    if args.kind == "projects":
        return client.projects.list()
    if args.kind == "memberships":
        return client.projects.memberships(_project_id(client, args))
    if args.kind == "tickets":
        tickets = client.tickets(_project_id(client, args))
        if args.all:
            return tickets.list_all(query=args.query, limit=args.limit)
        return tickets.list(query=args.query, limit=args.limit, page=args.page)
    if args.kind == "milestones":
        return client.milestones(_project_id(client, args)).list_all()
    return _service(client, args, args.kind.removesuffix("s")).list()


def cmd_create(client: Lighthouse, args: argparse.Namespace) -> Any:
    fields = parse_fields(args.fields)
    if args.kind == "comment":
        message = fields.pop("message", None)
        if message is None:
            msg = "create comment needs message=ID"
            raise UsageError(msg)
        return client.messages(_project_id(client, args)).create_comment(message, Comment.from_dict(fields))
    entity = _MODELS[args.kind].from_dict(fields)
    return _service(client, args, args.kind).create(entity)


def cmd_update(client: Lighthouse, args: argparse.Namespace) -> Any:
    items = list(args.fields)
    if args.kind == "profile":
        profile = client.profiles.get()
        profile.update_from_dict(parse_fields(items))
        client.profiles.update(profile)
        return profile

    if not items:
        msg = f"update {args.kind} needs an ID"
        raise UsageError(msg)
    record_id, fields = items[0], parse_fields(items[1:])

    if args.kind == "user":
        user = client.users.get(record_id)
        user.update_from_dict(fields)
        client.users.update(user)
        return user

    service = _service(client, args, args.kind)
    entity = service.get(record_id)
    entity.update_from_dict(fields)
    service.update(entity)
    return entity


def cmd_delete(client: Lighthouse, args: argparse.Namespace) -> Any:
    _service(client, args, args.kind).delete(args.id)
    return None


def cmd_close_milestone(client: Lighthouse, args: argparse.Namespace) -> Any:
    client.milestones(_project_id(client, args)).close(args.id)
    return None


def cmd_open_milestone(client: Lighthouse, args: argparse.Namespace) -> Any:
    client.milestones(_project_id(client, args)).open(args.id)
    return None


def cmd_bulk_edit(client: Lighthouse, args: argparse.Namespace) -> Any:
    client.tickets(_project_id(client, args)).bulk_edit(args.query, args.edit_command, args.migration_token)
    return None


def cmd_attach(client: Lighthouse, args: argparse.Namespace) -> Any:
    tickets = client.tickets(_project_id(client, args))
    ticket = tickets.get(args.ticket)
    tickets.add_attachment(ticket, args.file.name, args.file.read_bytes())
    return None


def cmd_export(client: Lighthouse, args: argparse.Namespace) -> Any:
    output = args.output or Path(default_export_filename(client.account))
    stats = Exporter(client, include_attachments=args.attachments).export_to_file(output)
    print(f"Exported {stats.projects} projects and {stats.tickets} tickets to {output}")
    return None


COMMANDS: dict[str, Callable[[Lighthouse, argparse.Namespace], Any]] = {
    "get": cmd_get,
    "list": cmd_list,
    "create": cmd_create,
    "update": cmd_update,
    "delete": cmd_delete,
    "close-milestone": cmd_close_milestone,
    "open-milestone": cmd_open_milestone,
    "bulk-edit": cmd_bulk_edit,
    "attach": cmd_attach,
    "export": cmd_export,
}


def to_json(value: Any) -> str:
    if isinstance(value, Model):
        value = value.to_dict()
    elif isinstance(value, list):
        value = [v.to_dict() if isinstance(v, Model) else v for v in value]
    return json.dumps(value, indent=2)


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        client = build_client(args)
        result = COMMANDS[args.command](client, args)
    except (LighthouseError, UsageError, utils.PassError, ValueError, OSError):
        logger.exception(f"lh {args.command} failed")
        sys.exit(1)

    if result is not None:
        print(to_json(result))
