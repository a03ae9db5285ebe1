"""Reading an `lh export` archive back into an in-memory object graph."""

from __future__ import annotations

import contextlib
import json
import logging
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from .exceptions import DecodeError, MigrationError
from .models import Membership, Milestone, Model, Project, Ticket, User

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .models import Attachment

logger: logging.Logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Model)


@dataclass
class ExportedAttachment:
    """An attachment record together with its extracted file."""

    attachment: Attachment
    path: Path


@dataclass
class ExportedTicket:
    ticket: Ticket
    attachments: list[ExportedAttachment] = field(default_factory=list)


@dataclass
class ExportedProject:
    project: Project
    memberships: list[Membership] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    tickets: list[ExportedTicket] = field(default_factory=list)


@dataclass
class ExportedUser:
    user: User
    memberships: list[Membership] = field(default_factory=list)


@dataclass
class Export:
    """Contents of an export archive, sorted by ID (tickets by number)."""

    directory: Path
    plan: dict[str, Any] | None = None
    profile: User | None = None
    projects: list[ExportedProject] = field(default_factory=list)
    users: list[ExportedUser] = field(default_factory=list)


@contextlib.contextmanager
def read_export(path: str | Path) -> Iterator[Export]:
    """Extract an export archive to a temporary directory and load it.

    The temporary directory lives as long as the context; it is removed on
    exit, including on KeyboardInterrupt, so attachment paths in the
    returned graph are only valid inside the with block.

    Raises:
        MigrationError: If the archive cannot be extracted or parsed
    """
    with tempfile.TemporaryDirectory(prefix="lhtogitlab_") as temp_dir:
        directory = Path(temp_dir)
        _extract(Path(path), directory)
        yield load_export(directory)


def _extract(archive: Path, directory: Path) -> None:
    try:
        with tarfile.open(archive, mode="r:gz") as tar:
            tar.extractall(directory, filter="data")
    except (OSError, tarfile.TarError) as e:
        msg = f"Unable to extract export {archive}: {e}"
        raise MigrationError(msg) from e
    logger.debug(f"Extracted {archive} to {directory}")


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        msg = f"Unable to read {path}: {e}"
        raise MigrationError(msg) from e


def _read_record(path: Path, model: type[ModelT]) -> ModelT:
    try:
        return model.from_dict(_read_json(path))
    except DecodeError as e:
        msg = f"Invalid {model.__name__.lower()} in {path}: {e}"
        raise MigrationError(msg) from e


def _read_memberships(path: Path) -> list[Membership]:
    """Read a memberships.json file; a missing file means no memberships."""
    if not path.exists():
        return []
    data = _read_json(path)
    if not isinstance(data, list):
        msg = f"Expected a list of memberships in {path}"
        raise MigrationError(msg)
    try:
        return [Membership.from_dict(m) for m in data]
    except DecodeError as e:
        msg = f"Invalid membership in {path}: {e}"
        raise MigrationError(msg) from e


def _unique_by_user(memberships: list[Membership]) -> list[Membership]:
    seen: set[int] = set()
    unique: list[Membership] = []
    for membership in memberships:
        if membership.user_id in seen:
            continue
        seen.add(membership.user_id)
        unique.append(membership)
    return unique


def load_export(directory: Path) -> Export:
    """Load an already extracted export rooted at directory."""
    export = Export(directory=directory)

    for plan_path in sorted(directory.glob("*/plan.json")):
        export.plan = _read_json(plan_path)
    for profile_path in sorted(directory.glob("*/profile.json")):
        export.profile = _read_record(profile_path, User)

    for user_dir in sorted(p for p in directory.glob("*/users/*") if p.is_dir()):
        export.users.append(
            ExportedUser(
                user=_read_record(user_dir / "user.json", User),
                memberships=_read_memberships(user_dir / "memberships.json"),
            )
        )
    export.users.sort(key=lambda u: u.user.id)

    for project_dir in sorted(p for p in directory.glob("*/projects/*") if p.is_dir()):
        export.projects.append(_load_project(project_dir))
    export.projects.sort(key=lambda p: p.project.id)

    logger.info(f"Loaded export with {len(export.projects)} projects and {len(export.users)} users")
    return export


def _load_project(project_dir: Path) -> ExportedProject:
    exported = ExportedProject(
        project=_read_record(project_dir / "project.json", Project),
        memberships=_unique_by_user(_read_memberships(project_dir / "memberships.json")),
    )

    for milestone_path in sorted((project_dir / "milestones").glob("*.json")):
        exported.milestones.append(_read_record(milestone_path, Milestone))
    exported.milestones.sort(key=lambda m: m.id)

    for ticket_dir in sorted(p for p in (project_dir / "tickets").glob("*") if p.is_dir()):
        exported.tickets.append(_load_ticket(ticket_dir))
    exported.tickets.sort(key=lambda t: t.ticket.number)

    return exported


def _load_ticket(ticket_dir: Path) -> ExportedTicket:
    ticket = _read_record(ticket_dir / "ticket.json", Ticket)
    by_filename = {Path(a.filename).name: a for a in ticket.attachments}

    exported = ExportedTicket(ticket=ticket)
    for path in sorted(ticket_dir.iterdir()):
        if path.name == "ticket.json":
            continue
        attachment = by_filename.get(path.name)
        if attachment is None:
            logger.debug(f"Ignoring unknown file {path} in ticket #{ticket.number}")
            continue
        exported.attachments.append(ExportedAttachment(attachment=attachment, path=path))
    return exported
