"""Export of a whole Lighthouse account to a gzip-compressed tar archive.

Archive layout, rooted at the account name:

    <account>/plan.json
    <account>/profile.json
    <account>/projects/<id-permalink>/project.json
    <account>/projects/<id-permalink>/memberships.json
    <account>/projects/<id-permalink>/bins/<id-name>.json
    <account>/projects/<id-permalink>/changesets/<revision>.json
    <account>/projects/<id-permalink>/messages/<id-permalink>.json
    <account>/projects/<id-permalink>/milestones/<id-permalink>.json
    <account>/projects/<id-permalink>/tickets/<number-permalink>/ticket.json
    <account>/projects/<id-permalink>/tickets/<number-permalink>/<attachment filename>
    <account>/users/<id-name>/user.json
    <account>/users/<id-name>/memberships.json

Every path component derived from user data goes through `safe_name`. Any
failed fetch aborts the export; only the plan and profile are optional,
since only the account owner can read the plan.
"""

from __future__ import annotations

import datetime as dt
import io
import json
import logging
import re
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import IO, TYPE_CHECKING, Any, Final

from .exceptions import LighthouseError
from .models import Model
from .resources import TicketsService

if TYPE_CHECKING:
    from .client import Lighthouse
    from .models import Membership, Project

logger: logging.Logger = logging.getLogger(__name__)

SAFE_NAME_MAX_LENGTH: Final[int] = 20
_UNSAFE_CHARS: Final[re.Pattern[str]] = re.compile(r"[^-a-z0-9_]+")
_REPEATED_SEPARATORS: Final[re.Pattern[str]] = re.compile(r"-+")

DIR_MODE: Final[int] = 0o755
FILE_MODE: Final[int] = 0o644
OWNER_ID: Final[int] = 1000


def safe_name(name: str) -> str:
    """Make a short, filesystem-safe path component out of arbitrary text.

    The text is truncated to 20 characters, lowercased, runs of characters
    other than letters, digits, '-' and '_' become a single '-', and
    trailing '-' are dropped. "Fix login bug!!" becomes "fix-login-bug".
    """
    name = name[:SAFE_NAME_MAX_LENGTH].strip().lower()
    name = _UNSAFE_CHARS.sub("-", name)
    name = _REPEATED_SEPARATORS.sub("-", name)
    return name.rstrip("-")


def default_export_filename(account: str, today: dt.date | None = None) -> str:
    """Return ACCOUNT_YYYY-MM-DD.tar.gz."""
    day = today or dt.date.today()  # noqa: DTZ011
    return f"{account}_{day.isoformat()}.tar.gz"


@dataclass
class ExportStats:
    """Counts collected during an export."""

    projects: int = 0
    tickets: int = 0
    milestones: int = 0
    messages: int = 0
    bins: int = 0
    changesets: int = 0
    users: int = 0
    attachments: int = 0
    files: int = 0


class _ArchiveWriter:
    """Thin wrapper adding directories and in-memory files to a tar stream."""

    def __init__(self, tar: tarfile.TarFile) -> None:
        self._tar = tar
        self._mtime = time.time()
        self.files_written = 0

    def _info(self, name: PurePosixPath, type_: bytes, mode: int) -> tarfile.TarInfo:
        info = tarfile.TarInfo(str(name))
        info.type = type_
        info.mode = mode
        info.uid = OWNER_ID
        info.gid = OWNER_ID
        info.mtime = self._mtime
        return info

    def write_dir(self, name: PurePosixPath) -> None:
        self._tar.addfile(self._info(name, tarfile.DIRTYPE, DIR_MODE))

    def write_file(self, name: PurePosixPath, data: bytes) -> None:
        logger.debug(f"Writing {name}")
        info = self._info(name, tarfile.REGTYPE, FILE_MODE)
        info.size = len(data)
        self._tar.addfile(info, io.BytesIO(data))
        self.files_written += 1

    def write_json(self, name: PurePosixPath, value: Any) -> None:
        self.write_file(name, json.dumps(_jsonable(value), indent=2).encode("utf-8"))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Model):
        return value.to_dict()
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class Exporter:
    """Writes every project and resource of an account into a tar.gz archive."""

    _client: Lighthouse
    include_attachments: bool

    def __init__(self, client: Lighthouse, *, include_attachments: bool = False) -> None:
        self._client = client
        self.include_attachments = include_attachments

    def export(self, fileobj: IO[bytes]) -> ExportStats:
        """Write the archive to an open binary file object.

        Raises:
            LighthouseError: If any project data cannot be fetched
        """
        stats = ExportStats()
        base = PurePosixPath(self._client.account)

        with tarfile.open(fileobj=fileobj, mode="w:gz") as tar:
            writer = _ArchiveWriter(tar)
            writer.write_dir(base)
            self._export_account(writer, base)

            users: dict[int, None] = {}
            projects = self._client.projects.list()
            for project in projects:
                memberships = self._export_project(writer, base, project, stats)
                for membership in memberships:
                    users.setdefault(membership.user_id, None)
                stats.projects += 1

            self._export_users(writer, base, list(users), stats)
            stats.files = writer.files_written

        logger.info(
            f"Exported {stats.projects} projects, {stats.tickets} tickets, "
            f"{stats.milestones} milestones and {stats.attachments} attachments"
        )
        return stats

    def export_to_file(self, path: str | Path) -> ExportStats:
        """Write the archive to path; a partially written file is removed on failure."""
        target = Path(path)
        logger.info(f"Writing export file to {target}")
        try:
            with target.open("wb") as f:
                return self.export(f)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

    def _export_account(self, writer: _ArchiveWriter, base: PurePosixPath) -> None:
        try:
            writer.write_json(base / "plan.json", self._client.plan())
        except LighthouseError as e:
            logger.debug(f"Skipping account plan: {e}")

        try:
            writer.write_json(base / "profile.json", self._client.profiles.get())
        except LighthouseError as e:
            logger.debug(f"Skipping profile: {e}")

    def _export_project(
        self,
        writer: _ArchiveWriter,
        base: PurePosixPath,
        project: Project,
        stats: ExportStats,
    ) -> list[Membership]:
        logger.info(f"Exporting project {project.name}")
        project_base = base / "projects" / safe_name(f"{project.id}-{project.permalink}")
        writer.write_dir(project_base)
        writer.write_json(project_base / "project.json", project)

        memberships = self._client.projects.memberships(project.id)
        writer.write_json(project_base / "memberships.json", memberships)

        bins_base = project_base / "bins"
        writer.write_dir(bins_base)
        for bin_ in self._client.bins(project.id).list():
            writer.write_json(bins_base / f"{safe_name(f'{bin_.id}-{bin_.name}')}.json", bin_)
            stats.bins += 1

        changesets_base = project_base / "changesets"
        writer.write_dir(changesets_base)
        for changeset in self._client.changesets(project.id).list():
            writer.write_json(changesets_base / f"{safe_name(changeset.revision)}.json", changeset)
            stats.changesets += 1

        messages_base = project_base / "messages"
        writer.write_dir(messages_base)
        for message in self._client.messages(project.id).list():
            writer.write_json(messages_base / f"{safe_name(f'{message.id}-{message.permalink}')}.json", message)
            stats.messages += 1

        milestones_base = project_base / "milestones"
        writer.write_dir(milestones_base)
        for milestone in self._client.milestones(project.id).list_all():
            writer.write_json(milestones_base / f"{safe_name(f'{milestone.id}-{milestone.permalink}')}.json", milestone)
            stats.milestones += 1

        self._export_tickets(writer, project_base / "tickets", project, stats)
        return memberships

    def _export_tickets(
        self,
        writer: _ArchiveWriter,
        tickets_base: PurePosixPath,
        project: Project,
        stats: ExportStats,
    ) -> None:
        tickets = self._client.tickets(project.id)
        writer.write_dir(tickets_base)

        # written page by page so a large project never sits in memory whole
        page = 1
        while True:
            batch = tickets.list(limit=TicketsService.MAX_LIMIT, page=page)
            if not batch:
                break
            for ticket in batch:
                ticket_base = tickets_base / safe_name(f"{ticket.number}-{ticket.permalink}")
                writer.write_dir(ticket_base)
                writer.write_json(ticket_base / "ticket.json", ticket)
                stats.tickets += 1

                if not self.include_attachments:
                    continue
                for attachment in ticket.attachments:
                    data = tickets.get_attachment(attachment)
                    writer.write_file(ticket_base / PurePosixPath(attachment.filename).name, data)
                    stats.attachments += 1
            page += 1

    def _export_users(
        self,
        writer: _ArchiveWriter,
        base: PurePosixPath,
        user_ids: list[int],
        stats: ExportStats,
    ) -> None:
        users_base = base / "users"
        writer.write_dir(users_base)
        for user_id in sorted(user_ids):
            user = self._client.users.get(user_id)
            user_base = users_base / safe_name(f"{user.id}-{user.name}")
            writer.write_dir(user_base)
            writer.write_json(user_base / "user.json", user)
            writer.write_json(user_base / "memberships.json", self._client.users.memberships(user_id))
            stats.users += 1
