"""Migration of a Lighthouse export into a GitLab instance.

The export archive is replayed in dependency order:

    users -> groups -> projects -> state labels -> project members
          -> milestones -> tickets (issues) -> watchers, attachments, history

Identifiers differ between the two systems, so every created GitLab object
is recorded in a `MigrationState`, keyed by its Lighthouse ID:

- users: Lighthouse user ID -> GitLab user (also indexed by display name)
- projects / milestones: Lighthouse ID -> GitLab object
- issues: (Lighthouse project ID, ticket number) -> GitLab issue
- groups: project name -> GitLab group the project should be created in

Ticket history
--------------
Each Lighthouse ticket version becomes one issue update (title, assignee,
milestone, labels, state) plus one note holding the version's comment and
any attachments uploaded at the same instant. The version created together
with the ticket carries the ticket's own body, which is already the issue
description, so its comment is not posted again.

Actions are performed as the original author through GitLab's sudo
mechanism whenever the author is mapped to a GitLab user; this needs an
admin token.

Error Handling
--------------
- Per-item failures (a label, a member, an upload...) are logged as
  warnings, recorded in MigrationStats.errors, and the migration continues
- Failures that leave nothing to migrate into (authentication, unreadable
  mapping files) raise MigrationError
"""

from __future__ import annotations

import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, NamedTuple

from gitlab.const import AccessLevel
from gitlab.exceptions import GitlabError, GitlabSubscribeError

from .exceptions import MigrationError
from .markdown import lighthouse_to_gitlab_markdown

if TYPE_CHECKING:
    from gitlab import Gitlab

    from .archive import Export, ExportedProject, ExportedTicket, ExportedUser
    from .models import Membership, Milestone, Project, Ticket, TicketVersion

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_LABEL_COLOR: Final[str] = "#428BCA"
DEFAULT_STATE_KEY: Final[str] = "lh"
DEFAULT_PASSWORD: Final[str] = "changeme"  # noqa: S105
MAINTAINER: Final[int] = int(AccessLevel.MAINTAINER)
HTTP_NOT_MODIFIED: Final[int] = 304

# "open/428BCA # comment" -> name, color, description
_STATE_DEFINITION: Final[re.Pattern[str]] = re.compile(
    r"^\s*(?P<name>[^/]+)/(?P<color>[0-9a-fA-F]+)\s*(#\s*(?P<description>.*)\s*)?$"
)

# Descriptions Lighthouse puts in the default state definitions as inline help
_HELP_DESCRIPTIONS: Final[frozenset[str]] = frozenset(
    {
        "You can add comments here",
        "if you want to.",
        "You can customize colors",
        "with 3 or 6 character hex codes",
        "'A30' expands to 'AA3300'",
    }
)


class Request(NamedTuple):
    """Payload for a python-gitlab call, optionally performed as another user."""

    data: dict[str, Any]
    sudo: int | None = None

    def kwargs(self) -> dict[str, Any]:
        return {"sudo": self.sudo} if self.sudo else {}


@dataclass
class MigrationState:
    """Correspondence between Lighthouse IDs and the GitLab objects created for them."""

    user_mapping: dict[int, dict[str, Any]] = field(default_factory=dict)
    users: dict[int, Any] = field(default_factory=dict)
    users_by_name: dict[str, Any] = field(default_factory=dict)
    projects: dict[int, Any] = field(default_factory=dict)
    milestones: dict[int, Any] = field(default_factory=dict)
    issues: dict[tuple[int, int], Any] = field(default_factory=dict)
    groups: dict[str, Any] = field(default_factory=dict)

    def add_user(self, lh_id: int, lh_name: str, gitlab_user: Any) -> None:
        self.users[lh_id] = gitlab_user
        self.users_by_name[lh_name] = gitlab_user

    def user_by_id(self, lh_id: int) -> Any | None:
        if not lh_id:
            return None
        return self.users.get(lh_id)

    def user_by_name(self, name: str) -> Any | None:
        if not name:
            return None
        return self.users_by_name.get(name)

    def milestone_by_id(self, lh_id: int) -> Any | None:
        if not lh_id:
            return None
        return self.milestones.get(lh_id)

    def sudo_for_id(self, lh_id: int) -> int | None:
        user = self.user_by_id(lh_id)
        return user.id if user is not None else None

    def sudo_for_name(self, name: str) -> int | None:
        user = self.user_by_name(name)
        return user.id if user is not None else None


@dataclass
class MigrationStats:
    """Statistics collected during migration."""

    users_created: int = 0
    groups_created: int = 0
    projects_created: int = 0
    labels_created: int = 0
    members_added: int = 0
    milestones_created: int = 0
    issues_created: int = 0
    notes_created: int = 0
    attachments_uploaded: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class MigrationResult:
    """Result of a migration run."""

    success: bool
    stats: MigrationStats
    state: MigrationState


def sanitize_project_name(name: str) -> str:
    """GitLab rejects apostrophes in project names."""
    return name.replace("'", "")


def load_user_mapping(path: str | Path) -> dict[int, dict[str, Any]]:
    """Load the JSON object mapping Lighthouse user IDs to GitLab user attributes.

    Example:
        {"1234": {"username": "jdoe", "name": "John Doe", "email": "jdoe@example.com"}}

    Raises:
        MigrationError: If the file cannot be read or is not such an object
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        msg = f"Unable to read users file {path}: {e}"
        raise MigrationError(msg) from e

    if not isinstance(data, dict):
        msg = f"Users file {path} must contain a JSON object"
        raise MigrationError(msg)

    try:
        return {int(key): value for key, value in data.items() if isinstance(value, dict)}
    except ValueError as e:
        msg = f"Users file {path} has a non-numeric Lighthouse user ID: {e}"
        raise MigrationError(msg) from e


def load_groups(path: str | Path) -> list[dict[str, Any]]:
    """Load the JSON list of GitLab groups to create.

    Each group has name, path and description, plus the names of the
    Lighthouse projects to create in it ("projects") and the Lighthouse
    names of the users to add as maintainers ("members").

    Raises:
        MigrationError: If the file cannot be read or is not a list of objects
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        msg = f"Unable to read groups file {path}: {e}"
        raise MigrationError(msg) from e

    if not isinstance(data, list) or not all(isinstance(g, dict) for g in data):
        msg = f"Groups file {path} must contain a JSON list of objects"
        raise MigrationError(msg)
    return data


def user_create_data(lh_user_id: int, state: MigrationState, password: str) -> Request | None:
    """Build the user creation payload from the user mapping file, if the user is mapped."""
    mapped = state.user_mapping.get(lh_user_id)
    if mapped is None:
        return None
    return Request(
        data={
            "email": mapped.get("email", ""),
            "password": password,
            "username": mapped.get("username", ""),
            "name": mapped.get("name", ""),
            "projects_limit": mapped.get("projects_limit", 0),
            "admin": mapped.get("is_admin", mapped.get("admin", False)),
            "can_create_group": mapped.get("can_create_group", False),
            "skip_confirmation": True,
            "external": mapped.get("external", False),
        }
    )


def project_create_data(project: Project, state: MigrationState) -> Request:
    name = sanitize_project_name(project.name)
    data: dict[str, Any] = {
        "name": name,
        "description": lighthouse_to_gitlab_markdown(project.description),
        "visibility": "private",
    }
    group = state.groups.get(name)
    if group is not None:
        data["namespace_id"] = group.id
    return Request(data=data)


def _expand_color(color: str) -> str | None:
    if len(color) == 3:
        color = "".join(c * 2 for c in color)
    if len(color) == 6:
        return f"#{color}"
    return None


def state_labels(text: str, state_key: str) -> list[dict[str, str]]:
    """Parse Lighthouse state definitions into scoped label payloads.

    Every line of the form "name/COLOR # description" becomes a label named
    "<state_key>::name". Three-digit colors are expanded, invalid or missing
    colors fall back to DEFAULT_LABEL_COLOR, and Lighthouse's built-in help
    text is not kept as a description. Other lines are ignored.
    """
    labels: list[dict[str, str]] = []
    for line in text.splitlines():
        match = _STATE_DEFINITION.match(line)
        if match is None:
            continue

        description = (match.group("description") or "").strip()
        if description in _HELP_DESCRIPTIONS:
            description = ""

        labels.append(
            {
                "name": f"{state_key}::{match.group('name').strip()}",
                "color": _expand_color(match.group("color")) or DEFAULT_LABEL_COLOR,
                "description": description,
            }
        )
    return labels


def project_labels(project: Project, state_key: str) -> list[dict[str, str]]:
    """Labels for every open and closed state of a project."""
    return state_labels(project.open_states, state_key) + state_labels(project.closed_states, state_key)


def membership_data(membership: Membership, state: MigrationState) -> Request | None:
    user = state.user_by_id(membership.user_id)
    if user is None:
        return None
    return Request(data={"user_id": user.id, "access_level": MAINTAINER})


def milestone_create_data(milestone: Milestone, state: MigrationState) -> Request:
    data: dict[str, Any] = {
        "title": milestone.title,
        "description": lighthouse_to_gitlab_markdown(milestone.goals),
    }
    if milestone.created_at is not None:
        data["start_date"] = milestone.created_at.date().isoformat()
    # GitLab refuses a due date before the start date
    if milestone.due_on is not None and (milestone.created_at is None or milestone.due_on > milestone.created_at):
        data["due_date"] = milestone.due_on.date().isoformat()
    return Request(data=data, sudo=state.sudo_for_name(milestone.user_name))


def milestone_update_data(milestone: Milestone, state: MigrationState) -> Request:
    state_event = "close" if milestone.completed_at is not None else "activate"
    return Request(data={"state_event": state_event}, sudo=state.sudo_for_name(milestone.user_name))


def _scoped_state(state_key: str, lh_state: str) -> list[str]:
    return [f"{state_key}::{lh_state}"] if lh_state else []


def ticket_labels(ticket: Ticket, state_key: str) -> list[str]:
    return [tag.name for tag in ticket.tags] + _scoped_state(state_key, ticket.state)


def version_labels(version: TicketVersion, state_key: str) -> list[str]:
    """Labels from a version's space-separated tag string; quoted tags may hold spaces."""
    try:
        tags = shlex.split(version.tag)
    except ValueError:
        tags = version.tag.split()
    return [t for t in tags if t] + _scoped_state(state_key, version.state)


def _assignee_ids(lh_user_id: int, state: MigrationState) -> list[int] | None:
    # [0] explicitly unassigns; None leaves the assignee untouched
    if lh_user_id == 0:
        return [0]
    user = state.user_by_id(lh_user_id)
    return [user.id] if user is not None else None


def _milestone_id(lh_milestone_id: int, state: MigrationState) -> int | None:
    if lh_milestone_id == 0:
        return 0
    milestone = state.milestone_by_id(lh_milestone_id)
    return milestone.id if milestone is not None else None


def _set_if_not_none(data: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        data[key] = value


def issue_update_data(version: TicketVersion, state: MigrationState, state_key: str) -> Request:
    data: dict[str, Any] = {
        "title": version.title,
        "labels": version_labels(version, state_key),
        "state_event": "close" if version.closed else "reopen",
    }
    _set_if_not_none(data, "assignee_ids", _assignee_ids(version.assigned_user_id, state))
    _set_if_not_none(data, "milestone_id", _milestone_id(version.milestone_id, state))
    if version.updated_at is not None:
        data["updated_at"] = version.updated_at.isoformat()
    return Request(data=data, sudo=state.sudo_for_id(version.user_id))


def issue_create_data(ticket: Ticket, state: MigrationState, state_key: str) -> Request:
    """Build the issue creation payload, keeping the ticket number as the issue IID.

    When the ticket has history, assignee, milestone and labels are taken
    from its first version so that replaying the versions afterwards shows
    each change in the order it happened.
    """
    assignee_ids = _assignee_ids(ticket.assigned_user_id, state)
    milestone_id = _milestone_id(ticket.milestone_id, state)
    labels = ticket_labels(ticket, state_key)

    if ticket.versions:
        first = issue_update_data(ticket.versions[0], state, state_key).data
        assignee_ids = first.get("assignee_ids")
        milestone_id = first.get("milestone_id")
        labels = first["labels"]

    data: dict[str, Any] = {
        "iid": ticket.number,
        "title": ticket.title,
        "description": lighthouse_to_gitlab_markdown(ticket.body),
        "labels": labels,
    }
    _set_if_not_none(data, "assignee_ids", assignee_ids)
    _set_if_not_none(data, "milestone_id", milestone_id)
    if ticket.created_at is not None:
        data["created_at"] = ticket.created_at.isoformat()
    return Request(data=data, sudo=state.sudo_for_id(ticket.creator_id))


def issue_note_data(
    version: TicketVersion,
    state: MigrationState,
    *,
    is_creation_version: bool,
    upload_markdown: list[str],
) -> Request | None:
    """Build the note for one ticket version, or None when it would be empty.

    Args:
        version: Ticket version being replayed
        state: Migration state, used to post as the version's author
        is_creation_version: Whether the version was created with the ticket;
            its body is already the issue description and is not repeated
        upload_markdown: Markdown snippets of files uploaded for this version
    """
    parts: list[str] = []
    if not is_creation_version:
        parts.append(lighthouse_to_gitlab_markdown(version.body))
    parts.extend(upload_markdown)

    body = "\n\n".join(p for p in parts if p)
    if not body.strip():
        return None

    data: dict[str, Any] = {"body": body}
    if version.created_at is not None:
        data["created_at"] = version.created_at.isoformat()
    return Request(data=data, sudo=state.sudo_for_id(version.user_id))


class LighthouseToGitlabMigrator:
    """Replays a Lighthouse export against a GitLab instance.

    Usage:
        gl = gitlab_utils.get_client(base_url, token)
        migrator = LighthouseToGitlabMigrator(gl, user_mapping=load_user_mapping("users.json"))
        with read_export("acme_2024-01-01.tar.gz") as export:
            result = migrator.migrate(export)
    """

    def __init__(
        self,
        gitlab_client: Gitlab,
        *,
        user_mapping: dict[int, dict[str, Any]] | None = None,
        groups: list[dict[str, Any]] | None = None,
        password: str = DEFAULT_PASSWORD,
        state_key: str = DEFAULT_STATE_KEY,
        project_filter: str | None = None,
        milestone_filter: str | None = None,
        number_filter: int = 0,
    ) -> None:
        self.gitlab_client: Gitlab = gitlab_client
        self.groups: list[dict[str, Any]] = groups or []
        self.password: str = password
        self.state_key: str = state_key
        self.project_filter: str | None = project_filter
        self.milestone_filter: str | None = milestone_filter
        self.number_filter: int = number_filter
        self.state: MigrationState = MigrationState(user_mapping=dict(user_mapping or {}))
        self.stats: MigrationStats = MigrationStats()

    def _warn(self, message: str, error: Exception | None = None) -> None:
        text = f"{message}: {error}" if error is not None else message
        logger.warning(text)
        self.stats.errors.append(text)

    def current_username(self) -> str:
        """Authenticate and return the username owning the API token."""
        try:
            self.gitlab_client.auth()
        except GitlabError as e:
            msg = f"GitLab API access failed: {e}"
            raise MigrationError(msg) from e
        user = self.gitlab_client.user
        if user is None:
            msg = "GitLab did not return the current user"
            raise MigrationError(msg)
        return str(user.username)

    def migrate(self, export: Export) -> MigrationResult:
        """Execute the full migration.

        Raises:
            MigrationError: If GitLab cannot be accessed at all
        """
        _ = self.current_username()

        self._migrate_users(export.users)
        self._migrate_groups()

        for exported in export.projects:
            if self.project_filter and exported.project.name.lower() != self.project_filter.lower():
                continue
            self._migrate_project(exported)

        logger.info(
            f"Migrated {self.stats.projects_created} projects, {self.stats.issues_created} issues, "
            f"{self.stats.milestones_created} milestones with {len(self.stats.errors)} errors"
        )
        return MigrationResult(success=not self.stats.errors, stats=self.stats, state=self.state)

    def _migrate_users(self, users: list[ExportedUser]) -> None:
        for exported in users:
            lh_user = exported.user
            request = user_create_data(lh_user.id, self.state, self.password)
            if request is None:
                continue
            logger.info(f"Creating user {request.data['username']}")
            try:
                gitlab_user = self.gitlab_client.users.create(request.data)
            except GitlabError as e:
                self._warn(f"Unable to create user {lh_user.name}", e)
                continue
            self.state.add_user(lh_user.id, lh_user.name, gitlab_user)
            self.stats.users_created += 1

        # users that already existed are matched by display name
        try:
            existing = self.gitlab_client.users.list(get_all=True)
        except GitlabError as e:
            self._warn("Unable to list GitLab users", e)
            return
        by_name = {exported.user.name: exported.user.id for exported in users}
        for gitlab_user in existing:
            lh_id = by_name.get(gitlab_user.name)
            if lh_id is not None:
                self.state.add_user(lh_id, gitlab_user.name, gitlab_user)

    def _migrate_groups(self) -> None:
        for group in self.groups:
            name = group.get("name", "")
            logger.info(f"Creating group {name}")
            try:
                gitlab_group = self.gitlab_client.groups.create(
                    {
                        "name": name,
                        "path": group.get("path", ""),
                        "description": group.get("description", ""),
                        "visibility": "private",
                    }
                )
            except GitlabError as e:
                self._warn(f"Unable to create group {name}", e)
                continue
            self.stats.groups_created += 1

            for project_name in group.get("projects", []):
                self.state.groups[sanitize_project_name(project_name)] = gitlab_group

            for member in group.get("members", []):
                user = self.state.user_by_name(member)
                if user is None:
                    continue
                try:
                    gitlab_group.members.create({"user_id": user.id, "access_level": MAINTAINER})
                except GitlabError as e:
                    self._warn(f"Unable to add {member} to group {name}", e)

    def _migrate_project(self, exported: ExportedProject) -> None:
        lh_project = exported.project
        request = project_create_data(lh_project, self.state)
        logger.info(f"Creating project {request.data['name']}")
        try:
            gitlab_project = self.gitlab_client.projects.create(request.data, **request.kwargs())
        except GitlabError as e:
            self._warn(f"Unable to create project {lh_project.name}", e)
            return
        self.state.projects[lh_project.id] = gitlab_project
        self.stats.projects_created += 1

        for label in project_labels(lh_project, self.state_key):
            try:
                gitlab_project.labels.create(label)
                self.stats.labels_created += 1
            except GitlabError as e:
                self._warn(f"Unable to create label {label['name']} in project {lh_project.name}", e)

        for membership in exported.memberships:
            member_request = membership_data(membership, self.state)
            if member_request is None:
                continue
            try:
                gitlab_project.members.create(member_request.data)
                self.stats.members_added += 1
            except GitlabError as e:
                member_name = membership.user.name if membership.user else membership.user_id
                self._warn(f"Unable to add {member_name} to project {lh_project.name}", e)

        for milestone in exported.milestones:
            if self.milestone_filter and milestone.title.lower() != self.milestone_filter.lower():
                continue
            self._migrate_milestone(gitlab_project, lh_project, milestone)

        for ticket in exported.tickets:
            if self.number_filter and ticket.ticket.number != self.number_filter:
                continue
            self._migrate_ticket(gitlab_project, lh_project, ticket)

    def _migrate_milestone(self, gitlab_project: Any, lh_project: Project, milestone: Milestone) -> None:
        request = milestone_create_data(milestone, self.state)
        logger.info(f"Creating milestone {milestone.title}")
        try:
            gitlab_milestone = gitlab_project.milestones.create(request.data, **request.kwargs())
        except GitlabError as e:
            self._warn(f"Unable to create milestone {milestone.title} in project {lh_project.name}", e)
            return
        self.state.milestones[milestone.id] = gitlab_milestone
        self.stats.milestones_created += 1

        update = milestone_update_data(milestone, self.state)
        try:
            gitlab_project.milestones.update(gitlab_milestone.id, update.data, **update.kwargs())
        except GitlabError as e:
            self._warn(f"Unable to update milestone {milestone.title} in project {lh_project.name}", e)

    def _migrate_ticket(self, gitlab_project: Any, lh_project: Project, exported: ExportedTicket) -> None:
        ticket = exported.ticket
        request = issue_create_data(ticket, self.state, self.state_key)
        logger.info(f"Creating issue {ticket.number}")
        try:
            issue = gitlab_project.issues.create(request.data, **request.kwargs())
        except GitlabError as e:
            self._warn(f"Unable to create issue {ticket.number} in project {lh_project.name}", e)
            return
        self.state.issues[(lh_project.id, ticket.number)] = issue
        self.stats.issues_created += 1

        self._subscribe_watchers(issue, lh_project, ticket)
        for version in ticket.versions:
            self._replay_version(gitlab_project, issue, lh_project, exported, version)

    def _subscribe_watchers(self, issue: Any, lh_project: Project, ticket: Ticket) -> None:
        for watcher_id in ticket.watchers_ids:
            sudo = self.state.sudo_for_id(watcher_id)
            if sudo is None:
                logger.debug(f"Skipping unmapped watcher {watcher_id} of issue {issue.iid}")
                continue
            try:
                issue.subscribe(sudo=sudo)
            except GitlabSubscribeError as e:
                if e.response_code == HTTP_NOT_MODIFIED:
                    # already subscribed, e.g. as the issue's author
                    continue
                self._warn(
                    f"Unable to subscribe user {watcher_id} to issue {issue.iid} in project {lh_project.name}", e
                )
            except GitlabError as e:
                self._warn(
                    f"Unable to subscribe user {watcher_id} to issue {issue.iid} in project {lh_project.name}", e
                )

    def _replay_version(
        self,
        gitlab_project: Any,
        issue: Any,
        lh_project: Project,
        exported: ExportedTicket,
        version: TicketVersion,
    ) -> None:
        update = issue_update_data(version, self.state, self.state_key)
        try:
            gitlab_project.issues.update(issue.iid, update.data, **update.kwargs())
        except GitlabError as e:
            self._warn(f"Unable to update issue {issue.iid} in project {lh_project.name}", e)

        uploads: list[str] = []
        for item in exported.attachments:
            attachment = item.attachment
            if attachment.created_at is None or version.created_at is None or attachment.created_at != version.created_at:
                continue
            sudo = self.state.sudo_for_id(attachment.uploader_id)
            try:
                uploaded = gitlab_project.upload(
                    attachment.filename, filepath=str(item.path), **({"sudo": sudo} if sudo else {})
                )
            except (GitlabError, OSError) as e:
                self._warn(
                    f"Unable to upload file {attachment.filename} for issue {issue.iid} in project {lh_project.name}", e
                )
                continue
            uploads.append(uploaded["markdown"])
            self.stats.attachments_uploaded += 1

        ticket_created = exported.ticket.created_at
        note = issue_note_data(
            version,
            self.state,
            is_creation_version=ticket_created is not None and version.created_at == ticket_created,
            upload_markdown=uploads,
        )
        if note is None:
            return
        try:
            issue.notes.create(note.data, **note.kwargs())
            self.stats.notes_created += 1
        except GitlabError as e:
            self._warn(f"Unable to create issue note for issue {issue.iid} in project {lh_project.name}", e)

    def delete_everything(self) -> None:
        """Delete all groups, projects and users except root and the token owner.

        Meant for resetting a test instance between trial migrations.

        Raises:
            MigrationError: If anything cannot be listed or deleted
        """
        me = self.current_username()
        gl = self.gitlab_client
        try:
            for group in gl.groups.list(get_all=True):
                print(f"deleting group {group.name}")
                gl.groups.delete(group.id)

            for project in gl.projects.list(get_all=True):
                print(f"deleting project {project.name}")
                gl.projects.delete(project.id)

            for user in gl.users.list(get_all=True):
                if user.username in ("root", me):
                    continue
                print(f"deleting user {user.username}")
                gl.users.delete(user.id)
        except GitlabError as e:
            msg = f"Failed to reset GitLab instance: {e}"
            raise MigrationError(msg) from e
