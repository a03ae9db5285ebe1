"""
Tests for the Lighthouse to GitLab migration.
"""

import datetime as dt
import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, Mock

import pytest
from gitlab.exceptions import GitlabAuthenticationError, GitlabCreateError, GitlabSubscribeError

from lighthouse_client.archive import (
    Export,
    ExportedAttachment,
    ExportedProject,
    ExportedTicket,
    ExportedUser,
    read_export,
)
from lighthouse_client.exceptions import MigrationError
from lighthouse_client.export import Exporter
from lighthouse_client.gitlab_migration import (
    DEFAULT_LABEL_COLOR,
    MAINTAINER,
    LighthouseToGitlabMigrator,
    MigrationState,
    Request,
    issue_create_data,
    issue_note_data,
    issue_update_data,
    load_groups,
    load_user_mapping,
    membership_data,
    milestone_create_data,
    milestone_update_data,
    project_create_data,
    project_labels,
    state_labels,
    ticket_labels,
    version_labels,
)
from lighthouse_client.models import Attachment, Membership, Milestone, Project, Tag, Ticket, TicketVersion, User

CREATED = dt.datetime(2020, 1, 1, 9, 0, tzinfo=dt.UTC)
LATER = dt.datetime(2020, 1, 2, 9, 0, tzinfo=dt.UTC)


def make_state() -> MigrationState:
    """Jane (7 -> 70) is mapped, milestone 9 -> 90 exists."""
    state = MigrationState()
    state.add_user(7, "Jane", Mock(id=70))
    state.milestones[9] = Mock(id=90)
    return state


@pytest.mark.unit
class TestStateLabels:
    def test_name_color_and_description(self) -> None:
        labels = state_labels("open/428BCA # comment", "lh")

        assert labels == [{"name": "lh::open", "color": "#428BCA", "description": "comment"}]

    def test_short_color_is_expanded(self) -> None:
        assert state_labels("new/f17", "lh")[0]["color"] == "#ff1177"

    def test_help_text_is_not_a_description(self) -> None:
        labels = state_labels("new/f17 # You can add comments here\nopen/aaa # if you want to.", "lh")

        assert [label["description"] for label in labels] == ["", ""]

    def test_invalid_color_falls_back_to_default(self) -> None:
        assert state_labels("hold/EEEE", "lh")[0]["color"] == DEFAULT_LABEL_COLOR

    def test_other_lines_are_ignored(self) -> None:
        assert state_labels("just some text\n\n", "lh") == []

    def test_custom_key(self) -> None:
        assert state_labels("invalid/aaa", "state")[0]["name"] == "state::invalid"

    def test_project_open_and_closed_states(self) -> None:
        project = Project(open_states="new/f17\nopen/aaa", closed_states="resolved/6A0\ninvalid/aaa")

        names = [label["name"] for label in project_labels(project, "lh")]

        assert names == ["lh::new", "lh::open", "lh::resolved", "lh::invalid"]


@pytest.mark.unit
class TestPayloads:
    def test_request_kwargs(self) -> None:
        assert Request(data={}).kwargs() == {}
        assert Request(data={}, sudo=70).kwargs() == {"sudo": 70}

    def test_project_goes_into_its_group(self) -> None:
        state = MigrationState()
        state.groups["Joes Site"] = Mock(id=5)

        request = project_create_data(Project(name="Joe's Site", description="@@@\ncode\n@@@"), state)

        assert request.data == {
            "name": "Joes Site",
            "description": "```\ncode\n```",
            "visibility": "private",
            "namespace_id": 5,
        }

    def test_membership(self) -> None:
        state = make_state()

        assert membership_data(Membership(user_id=7), state) == Request(data={"user_id": 70, "access_level": MAINTAINER})
        assert membership_data(Membership(user_id=8), state) is None

    def test_milestone_dates(self) -> None:
        milestone = Milestone(title="v1", goals="Ship", created_at=LATER, due_on=CREATED, user_name="Jane")

        request = milestone_create_data(milestone, make_state())

        assert request.data == {"title": "v1", "description": "Ship", "start_date": "2020-01-02"}
        assert request.sudo == 70

    def test_milestone_due_date_after_start(self) -> None:
        request = milestone_create_data(Milestone(title="v1", created_at=CREATED, due_on=LATER), make_state())

        assert request.data["due_date"] == "2020-01-02"
        assert request.sudo is None

    def test_milestone_due_date_entered_without_offset(self) -> None:
        milestone = Milestone.from_dict({"title": "v1", "created_at": "2020-01-01T09:00:00Z", "due_on": "2020-03-01"})

        request = milestone_create_data(milestone, make_state())

        assert request.data["due_date"] == "2020-03-01"

    def test_milestone_state(self) -> None:
        state = make_state()

        assert milestone_update_data(Milestone(completed_at=LATER), state).data == {"state_event": "close"}
        assert milestone_update_data(Milestone(), state).data == {"state_event": "activate"}

    def test_ticket_labels(self) -> None:
        ticket = Ticket(state="open", tags=[Tag(name="bug"), Tag(name="ui")])

        assert ticket_labels(ticket, "lh") == ["bug", "ui", "lh::open"]

    def test_version_labels_keep_quoted_tags(self) -> None:
        version = TicketVersion(tag='bug "needs review"', state="new")

        assert version_labels(version, "lh") == ["bug", "needs review", "lh::new"]

    def test_version_labels_with_unbalanced_quote(self) -> None:
        version = TicketVersion(tag='bug "oops', state="new")

        assert version_labels(version, "lh") == ["bug", '"oops', "lh::new"]


@pytest.mark.unit
class TestIssuePayloads:
    def test_create_without_history(self) -> None:
        ticket = Ticket(
            number=12,
            title="Crash",
            body="See @trace@",
            state="open",
            creator_id=7,
            assigned_user_id=8,
            milestone_id=9,
            created_at=CREATED,
        )

        request = issue_create_data(ticket, make_state(), "lh")

        assert request.data == {
            "iid": 12,
            "title": "Crash",
            "description": "See `trace`",
            "labels": ["lh::open"],
            "milestone_id": 90,
            "created_at": "2020-01-01T09:00:00+00:00",
        }
        assert request.sudo == 70

    def test_first_version_wins(self) -> None:
        ticket = Ticket(
            number=1,
            title="Crash",
            state="resolved",
            assigned_user_id=7,
            milestone_id=9,
            versions=[TicketVersion(state="new", tag="bug", assigned_user_id=0, milestone_id=0)],
        )

        data = issue_create_data(ticket, make_state(), "lh").data

        assert data["assignee_ids"] == [0]
        assert data["milestone_id"] == 0
        assert data["labels"] == ["bug", "lh::new"]

    def test_update(self) -> None:
        version = TicketVersion(
            title="Crash", state="resolved", closed=True, assigned_user_id=7, user_id=7, updated_at=LATER
        )

        request = issue_update_data(version, make_state(), "lh")

        assert request.data == {
            "title": "Crash",
            "labels": ["lh::resolved"],
            "state_event": "close",
            "assignee_ids": [70],
            "milestone_id": 0,
            "updated_at": "2020-01-02T09:00:00+00:00",
        }
        assert request.sudo == 70

    def test_reopen(self) -> None:
        assert issue_update_data(TicketVersion(), make_state(), "lh").data["state_event"] == "reopen"

    def test_creation_note_omits_body(self) -> None:
        version = TicketVersion(body="Original description", user_id=7)

        assert issue_note_data(version, make_state(), is_creation_version=True, upload_markdown=[]) is None

    def test_creation_note_with_uploads(self) -> None:
        version = TicketVersion(body="Original description", created_at=CREATED)

        request = issue_note_data(
            version, make_state(), is_creation_version=True, upload_markdown=["![a](/uploads/a.png)"]
        )

        assert request is not None
        assert request.data == {"body": "![a](/uploads/a.png)", "created_at": "2020-01-01T09:00:00+00:00"}

    def test_comment_note(self) -> None:
        version = TicketVersion(body="Fixed in @abc123@", user_id=7)

        request = issue_note_data(version, make_state(), is_creation_version=False, upload_markdown=["[log](/u/log)"])

        assert request is not None
        assert request.data["body"] == "Fixed in `abc123`\n\n[log](/u/log)"
        assert request.sudo == 70

    def test_empty_comment_makes_no_note(self) -> None:
        version = TicketVersion(body="  ")

        assert issue_note_data(version, make_state(), is_creation_version=False, upload_markdown=[]) is None


@pytest.mark.unit
class TestMappingFiles:
    def test_user_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "users.json"
        path.write_text(json.dumps({"7": {"username": "jane", "email": "jane@example.com"}}))

        assert load_user_mapping(path) == {7: {"username": "jane", "email": "jane@example.com"}}

    def test_user_mapping_must_be_object(self, tmp_path: Path) -> None:
        path = tmp_path / "users.json"
        path.write_text("[]")

        with pytest.raises(MigrationError, match="JSON object"):
            _ = load_user_mapping(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(MigrationError, match="Unable to read"):
            _ = load_user_mapping(tmp_path / "nope.json")

    def test_groups(self, tmp_path: Path) -> None:
        groups = [{"name": "Web", "path": "web", "projects": ["Site"], "members": ["Jane"]}]
        path = tmp_path / "groups.json"
        path.write_text(json.dumps(groups))

        assert load_groups(path) == groups

    def test_groups_must_be_list(self, tmp_path: Path) -> None:
        path = tmp_path / "groups.json"
        path.write_text("{}")

        with pytest.raises(MigrationError):
            _ = load_groups(path)


USER_MAPPING: dict[int, dict[str, Any]] = {7: {"username": "jane", "name": "Jane Doe", "email": "jane@example.com"}}


def make_gitlab() -> tuple[MagicMock, MagicMock, MagicMock]:
    """GitLab double returning one project and one issue for every create call."""
    gl = MagicMock()
    gl.user.username = "admin"
    gl.users.create.return_value = Mock(id=70)
    gl.users.list.return_value = []
    project = MagicMock()
    project.milestones.create.return_value = Mock(id=90)
    project.upload.return_value = {"markdown": "![shot](/uploads/shot.png)"}
    issue = MagicMock(iid=1)
    project.issues.create.return_value = issue
    gl.projects.create.return_value = project
    return gl, project, issue


def make_export(tmp_path: Path) -> Export:
    shot = tmp_path / "shot.png"
    shot.write_bytes(b"png")
    ticket = Ticket(
        number=1,
        title="Crash",
        body="It crashes",
        state="resolved",
        creator_id=7,
        created_at=CREATED,
        watchers_ids=[7, 8],
        versions=[
            TicketVersion(title="Crash", body="It crashes", state="new", user_id=7, created_at=CREATED),
            TicketVersion(title="Crash", body="Fixed", state="resolved", closed=True, user_id=7, created_at=LATER),
        ],
    )
    attachment = Attachment(filename="shot.png", uploader_id=7, created_at=LATER)
    return Export(
        directory=tmp_path,
        users=[ExportedUser(user=User(id=7, name="Jane")), ExportedUser(user=User(id=8, name="Unmapped"))],
        projects=[
            ExportedProject(
                project=Project(id=1, name="Website", open_states="new/f17", closed_states="resolved/6A0"),
                memberships=[Membership(user_id=7), Membership(user_id=8)],
                milestones=[Milestone(id=9, title="v1", created_at=CREATED)],
                tickets=[ExportedTicket(ticket=ticket, attachments=[ExportedAttachment(attachment, shot)])],
            ),
            ExportedProject(project=Project(id=2, name="Backend")),
        ],
    )


@pytest.mark.unit
class TestLighthouseToGitlabMigrator:
    def setup_method(self) -> None:
        self.gl, self.project, self.issue = make_gitlab()
        self.migrator = LighthouseToGitlabMigrator(self.gl, user_mapping=USER_MAPPING)

    def test_replays_everything(self, tmp_path: Path) -> None:
        result = self.migrator.migrate(make_export(tmp_path))

        assert result.success, result.stats.errors
        self.gl.users.create.assert_called_once()
        assert self.gl.users.create.call_args.args[0]["username"] == "jane"
        assert self.gl.projects.create.call_count == 2
        assert self.project.labels.create.call_count == 2
        self.project.members.create.assert_called_once_with({"user_id": 70, "access_level": MAINTAINER})
        self.project.milestones.update.assert_called_once_with(90, {"state_event": "activate"})

        create = self.project.issues.create.call_args
        assert create.args[0]["iid"] == 1
        assert create.kwargs == {"sudo": 70}
        assert result.state.issues[(1, 1)] is self.issue

        self.issue.subscribe.assert_called_once_with(sudo=70)
        assert self.project.issues.update.call_count == 2
        self.project.upload.assert_called_once_with("shot.png", filepath=str(tmp_path / "shot.png"), sudo=70)

        # the creation version has nothing new to say; the second one has a comment and the upload
        self.issue.notes.create.assert_called_once()
        note = self.issue.notes.create.call_args
        assert note.args[0]["body"] == "Fixed\n\n![shot](/uploads/shot.png)"
        assert (result.stats.issues_created, result.stats.notes_created, result.stats.attachments_uploaded) == (1, 1, 1)

    def test_per_item_failures_are_collected(self, tmp_path: Path) -> None:
        self.project.labels.create.side_effect = GitlabCreateError("Label already exists", 409)

        result = self.migrator.migrate(make_export(tmp_path))

        assert not result.success
        assert len(result.stats.errors) == 2
        assert "Unable to create label lh::new in project Website" in result.stats.errors[0]
        assert result.stats.issues_created == 1

    def test_already_subscribed_is_not_an_error(self, tmp_path: Path) -> None:
        self.issue.subscribe.side_effect = GitlabSubscribeError("304 Not Modified", 304)

        result = self.migrator.migrate(make_export(tmp_path))

        assert result.stats.errors == []

    def test_failed_issue_skips_its_history(self, tmp_path: Path) -> None:
        self.project.issues.create.side_effect = GitlabCreateError("Internal error", 500)

        result = self.migrator.migrate(make_export(tmp_path))

        assert len(result.stats.errors) == 1
        self.project.issues.update.assert_not_called()
        self.project.upload.assert_not_called()

    def test_filters(self, tmp_path: Path) -> None:
        migrator = LighthouseToGitlabMigrator(
            self.gl, user_mapping=USER_MAPPING, project_filter="website", milestone_filter="v2", number_filter=5
        )

        _ = migrator.migrate(make_export(tmp_path))

        self.gl.projects.create.assert_called_once()
        self.project.milestones.create.assert_not_called()
        self.project.issues.create.assert_not_called()

    def test_groups_and_existing_users(self, tmp_path: Path) -> None:
        group = MagicMock(id=5)
        self.gl.groups.create.return_value = group
        existing = Mock(id=80)
        existing.name = "Unmapped"
        self.gl.users.list.return_value = [existing]
        migrator = LighthouseToGitlabMigrator(
            self.gl,
            user_mapping=USER_MAPPING,
            groups=[{"name": "Web", "path": "web", "projects": ["Website"], "members": ["Jane", "Unmapped"]}],
        )

        _ = migrator.migrate(make_export(tmp_path))

        assert [c.args[0]["user_id"] for c in group.members.create.call_args_list] == [70, 80]
        assert self.gl.projects.create.call_args_list[0].args[0]["namespace_id"] == 5

    def test_authentication_failure_is_fatal(self, tmp_path: Path) -> None:
        self.gl.auth.side_effect = GitlabAuthenticationError("401 Unauthorized", 401)

        with pytest.raises(MigrationError, match="GitLab API access failed"):
            _ = self.migrator.migrate(make_export(tmp_path))

        self.gl.users.create.assert_not_called()

    def test_delete_everything_keeps_root_and_owner(self) -> None:
        self.gl.groups.list.return_value = [Mock(id=1)]
        self.gl.projects.list.return_value = [Mock(id=2)]
        self.gl.users.list.return_value = [
            Mock(id=3, username="root"),
            Mock(id=4, username="admin"),
            Mock(id=5, username="jane"),
        ]

        self.migrator.delete_everything()

        self.gl.groups.delete.assert_called_once_with(1)
        self.gl.projects.delete.assert_called_once_with(2)
        self.gl.users.delete.assert_called_once_with(5)


@pytest.mark.integration
def test_exported_archive_migrates_without_warnings(tmp_path: Path, account_client: Mock) -> None:
    archive = tmp_path / "acme.tar.gz"
    _ = Exporter(account_client, include_attachments=True).export_to_file(archive)
    gl, project, _issue = make_gitlab()
    mapping = {1: {"username": "owner"}, 7: {"username": "user7"}}

    with read_export(archive) as export:
        result = LighthouseToGitlabMigrator(gl, user_mapping=mapping).migrate(export)

    assert result.success
    assert gl.users.create.call_count == 2
    assert project.issues.create.call_args.args[0]["title"] == "Fix login bug!!"
    assert project.members.create.call_count == 2
