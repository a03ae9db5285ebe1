"""Data models for Lighthouse resources.

Each model mirrors the JSON schema returned by the Lighthouse API, field for
field. The full record is read-only output; what may be sent back to the
server is described by two narrower views per model:

- ``create_fields``: attributes accepted when creating the resource
- ``update_fields``: attributes accepted when updating it

Requests wrap the view in a singular envelope (``{"ticket": {...}}``) and
collection responses wrap every element individually
(``{"tickets": [{"ticket": {...}}, ...]}``); see `wrap` and
`unwrap_collection`.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, ClassVar, Self

from .exceptions import DecodeError


def parse_timestamp(value: Any) -> dt.datetime | None:
    """Parse an ISO 8601 timestamp as sent by Lighthouse ("2010-04-01T12:30:00Z")."""
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    else:
        try:
            parsed = dt.datetime.fromisoformat(str(value))
        except ValueError as e:
            msg = f"Invalid timestamp {value!r}"
            raise DecodeError(msg) from e
    # values without an offset, such as a bare date, are taken as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def format_timestamp(value: dt.datetime | None) -> str | None:
    """Format a timestamp the way Lighthouse does, with a Z suffix for UTC."""
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def wrap(envelope: str, payload: Any) -> dict[str, Any]:
    """Wrap a request payload in its resource envelope."""
    return {envelope: payload}


def unwrap_collection(body: Any, collection: str, envelope: str) -> list[dict[str, Any]]:
    """Flatten a collection response into a list of record dicts.

    Lighthouse returns ``{"tickets": [{"ticket": {...}}, ...]}``: each item has
    its own singular wrapper, which is removed here. Source order is kept.
    """
    if not isinstance(body, dict) or collection not in body:
        msg = f"Response has no {collection!r} collection"
        raise DecodeError(msg)

    items = body[collection] or []
    if not isinstance(items, list):
        msg = f"{collection!r} is not a list"
        raise DecodeError(msg)

    records: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict) or envelope not in item:
            msg = f"{collection!r} item has no {envelope!r} wrapper"
            raise DecodeError(msg)
        records.append(item[envelope])
    return records


@dataclass
class Model:
    """Common decoding/encoding behaviour for all Lighthouse records."""

    envelope: ClassVar[str] = ""
    collection: ClassVar[str] = ""
    create_fields: ClassVar[tuple[str, ...]] = ()
    update_fields: ClassVar[tuple[str, ...]] = ()
    timestamp_fields: ClassVar[frozenset[str]] = frozenset()
    # attribute used for case-insensitive lookups by name
    lookup_field: ClassVar[str] = "name"
    # attribute used in the resource path
    key_field: ClassVar[str] = "id"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Build a record from its JSON dict; unknown keys are ignored."""
        instance = cls()
        instance.update_from_dict(data)
        return instance

    def update_from_dict(self, data: dict[str, Any]) -> None:
        """Overwrite the attributes present in data, leaving the others alone."""
        if not isinstance(data, dict):
            msg = f"Expected a JSON object for {type(self).__name__}, got {type(data).__name__}"
            raise DecodeError(msg)

        for f in fields(self):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is None:
                # null decodes to the zero value, as for an absent field
                value = _default_of(f)
            else:
                value = self._decode_field(f.name, value)
            setattr(self, f.name, value)

    @classmethod
    def _decode_field(cls, name: str, value: Any) -> Any:
        if name in cls.timestamp_fields:
            return parse_timestamp(value)
        return value

    def _encode_field(self, name: str, value: Any) -> Any:  # noqa: ARG002
        if isinstance(value, dt.datetime):
            return format_timestamp(value)
        if isinstance(value, Model):
            return value.to_dict()
        if isinstance(value, list):
            return [v.to_dict() if isinstance(v, Model) else v for v in value]
        return value

    def to_dict(self) -> dict[str, Any]:
        """Encode the full record back to its JSON form."""
        return {f.name: self._encode_field(f.name, getattr(self, f.name)) for f in fields(self)}

    def _view(self, names: tuple[str, ...]) -> dict[str, Any]:
        return {name: self._encode_field(name, getattr(self, name)) for name in names}

    def create_view(self) -> dict[str, Any]:
        """Attributes sent when creating this resource."""
        return self._view(self.create_fields)

    def update_view(self) -> dict[str, Any]:
        """Attributes sent when updating this resource."""
        return self._view(self.update_fields)

    @property
    def key(self) -> Any:
        return getattr(self, self.key_field)

    @property
    def lookup_name(self) -> str:
        return str(getattr(self, self.lookup_field) or "")


def _default_of(f: Any) -> Any:
    if f.default is not MISSING:
        return f.default
    if f.default_factory is not MISSING:
        return f.default_factory()
    return None


def _split_states(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    return [s for s in str(value).split(",") if s]


@dataclass
class User(Model):
    envelope: ClassVar[str] = "user"
    collection: ClassVar[str] = "users"
    update_fields: ClassVar[tuple[str, ...]] = ("job", "name", "website")

    id: int = 0
    job: str = ""
    name: str = ""
    website: str = ""
    avatar_url: str = ""


@dataclass
class Profile(User):
    """The user owning the credentials in use."""


@dataclass
class Membership(Model):
    """Membership of a user in a project or account."""

    envelope: ClassVar[str] = "membership"
    collection: ClassVar[str] = "memberships"

    id: int = 0
    user_id: int = 0
    user: User | None = None
    account: str = ""
    project_id: int = 0

    @classmethod
    def _decode_field(cls, name: str, value: Any) -> Any:
        if name == "user" and isinstance(value, dict):
            return User.from_dict(value)
        return super()._decode_field(name, value)


@dataclass
class Token(Model):
    """An API token and what it grants access to."""

    envelope: ClassVar[str] = "token"
    collection: ClassVar[str] = "tokens"
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"created_at"})
    key_field: ClassVar[str] = "token"

    account: str = ""
    created_at: dt.datetime | None = None
    note: str = ""
    project_id: int = 0
    read_only: bool = False
    token: str = ""
    user_id: int = 0


@dataclass
class Project(Model):
    envelope: ClassVar[str] = "project"
    collection: ClassVar[str] = "projects"
    create_fields: ClassVar[tuple[str, ...]] = ("archived", "name", "public")
    update_fields: ClassVar[tuple[str, ...]] = ("archived", "name", "public")
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"created_at", "updated_at"})

    archived: bool = False
    closed_states: str = ""
    created_at: dt.datetime | None = None
    default_assigned_user_id: int = 0
    default_milestone_id: int = 0
    default_ticket_text: str = ""
    description: str = ""
    description_html: str = ""
    enable_points: bool = False
    hidden: bool = False
    id: int = 0
    license: str = ""
    name: str = ""
    open_states: str = ""
    open_tickets_count: int = 0
    oss_readonly: bool = False
    permalink: str = ""
    points_scale: str = ""
    public: bool = False
    send_changesets_to_events: bool = False
    todos_completed: dict[str, bool] = field(default_factory=dict)
    updated_at: dt.datetime | None = None
    open_states_list: list[str] = field(default_factory=list)
    closed_states_list: list[str] = field(default_factory=list)

    @classmethod
    def _decode_field(cls, name: str, value: Any) -> Any:
        # the *_states_list attributes arrive as a single comma-joined string
        if name in ("open_states_list", "closed_states_list"):
            return _split_states(value)
        return super()._decode_field(name, value)

    def _encode_field(self, name: str, value: Any) -> Any:
        if name in ("open_states_list", "closed_states_list"):
            return ",".join(value)
        return super()._encode_field(name, value)


@dataclass
class Milestone(Model):
    envelope: ClassVar[str] = "milestone"
    collection: ClassVar[str] = "milestones"
    create_fields: ClassVar[tuple[str, ...]] = ("goals", "title", "due_on")
    update_fields: ClassVar[tuple[str, ...]] = ("goals", "title", "due_on")
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"completed_at", "created_at", "due_on", "updated_at"})
    lookup_field: ClassVar[str] = "title"

    attachments_count: int = 0
    completed_at: dt.datetime | None = None
    created_at: dt.datetime | None = None
    due_on: dt.datetime | None = None
    goals: str = ""
    goals_html: str = ""
    id: int = 0
    max_points: int = 0
    open_tickets_count: int = 0
    permalink: str = ""
    points_closed: int = 0
    points_open: int = 0
    position: int = 0
    project_id: int = 0
    tickets_count: int = 0
    title: str = ""
    updated_at: dt.datetime | None = None
    url: str = ""
    user_name: str = ""


@dataclass
class Tag(Model):
    envelope: ClassVar[str] = "tag"
    collection: ClassVar[str] = "tags"

    id: int = 0
    name: str = ""


@dataclass
class Attachment(Model):
    envelope: ClassVar[str] = "attachment"
    collection: ClassVar[str] = "attachments"
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"created_at"})
    lookup_field: ClassVar[str] = "filename"

    attachment_file_processing: bool = False
    code: str = ""
    content_type: str = ""
    created_at: dt.datetime | None = None
    filename: str = ""
    height: int = 0
    id: int = 0
    project_id: int = 0
    size: int = 0
    uploader_id: int = 0
    width: int = 0
    url: str = ""


@dataclass
class TicketVersion(Model):
    """One entry of a ticket's change history."""

    envelope: ClassVar[str] = "version"
    collection: ClassVar[str] = "versions"
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"created_at", "updated_at"})
    key_field: ClassVar[str] = "version"

    assigned_user_id: int = 0
    attachments_count: int = 0
    body: str = ""
    body_html: str = ""
    closed: bool = False
    created_at: dt.datetime | None = None
    creator_id: int = 0
    diffable_attributes: dict[str, Any] | None = None
    importance: int = 0
    milestone_id: int = 0
    milestone_order: int = 0
    number: int = 0
    permalink: str = ""
    project_id: int = 0
    raw_data: Any = None
    spam: bool = False
    state: str = ""
    tag: str = ""
    title: str = ""
    updated_at: dt.datetime | None = None
    user_id: int = 0
    version: int = 0
    watchers_ids: list[int] = field(default_factory=list)
    user_name: str = ""
    creator_name: str = ""
    url: str = ""
    priority: int = 0
    state_color: str = ""


# Lighthouse omits these from a ticket create request when they are empty
_TICKET_CREATE_OMIT_EMPTY: frozenset[str] = frozenset({"state", "assigned_user_id", "milestone_id"})


@dataclass
class Ticket(Model):
    envelope: ClassVar[str] = "ticket"
    collection: ClassVar[str] = "tickets"
    create_fields: ClassVar[tuple[str, ...]] = ("title", "body", "state", "assigned_user_id", "milestone_id", "tag")
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"created_at", "milestone_due_on", "updated_at"})
    lookup_field: ClassVar[str] = "title"
    key_field: ClassVar[str] = "number"

    assigned_user_id: int = 0
    attachments_count: int = 0
    body: str = ""
    body_html: str = ""
    closed: bool = False
    created_at: dt.datetime | None = None
    creator_id: int = 0
    importance: int = 0
    milestone_due_on: dt.datetime | None = None
    milestone_id: int = 0
    milestone_order: int = 0
    number: int = 0
    permalink: str = ""
    project_id: int = 0
    raw_data: Any = None
    spam: bool = False
    state: str = ""
    tag: str = ""
    title: str = ""
    updated_at: dt.datetime | None = None
    user_id: int = 0
    version: int = 0
    watchers_ids: list[int] = field(default_factory=list)
    user_name: str = ""
    creator_name: str = ""
    assigned_user_name: str = ""
    url: str = ""
    milestone_title: str = ""
    priority: int = 0
    importance_name: str = ""
    original_body: str = ""
    latest_body: str = ""
    original_body_html: str = ""
    state_color: str = ""
    tags: list[Tag] = field(default_factory=list)
    # [tag, count] pairs
    alphabetical_tags: list[list[Any]] = field(default_factory=list)
    versions: list[TicketVersion] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)

    @classmethod
    def _decode_field(cls, name: str, value: Any) -> Any:
        if name == "versions":
            return [TicketVersion.from_dict(v) for v in value]
        if name == "tags":
            return [Tag.from_dict(t) for t in unwrap_collection({"tags": value}, "tags", Tag.envelope)]
        if name == "attachments":
            items = unwrap_collection({"attachments": value}, "attachments", Attachment.envelope)
            return [Attachment.from_dict(a) for a in items]
        return super()._decode_field(name, value)

    def _encode_field(self, name: str, value: Any) -> Any:
        if name == "tags":
            return [wrap(Tag.envelope, t.to_dict()) for t in value]
        if name == "attachments":
            return [wrap(Attachment.envelope, a.to_dict()) for a in value]
        return super()._encode_field(name, value)

    def create_view(self) -> dict[str, Any]:
        view = super().create_view()
        for name in _TICKET_CREATE_OMIT_EMPTY:
            if not view.get(name):
                del view[name]
        return view

    def update_view(self) -> dict[str, Any]:
        # the tickets API accepts the whole record on update
        return self.to_dict()


@dataclass
class Comment(Model):
    envelope: ClassVar[str] = "comment"
    collection: ClassVar[str] = "comments"
    create_fields: ClassVar[tuple[str, ...]] = ("body", "title")
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"created_at", "updated_at"})
    lookup_field: ClassVar[str] = "title"

    all_attachments_count: int = 0
    attachments_count: int = 0
    body: str = ""
    body_html: str = ""
    comments_count: int = 0
    created_at: dt.datetime | None = None
    id: int = 0
    integer: int = 0
    milestone_id: int = 0
    parent_id: int = 0
    permalink: str = ""
    project_id: int = 0
    title: str = ""
    token: str = ""
    updated_at: dt.datetime | None = None
    user_id: int = 0
    user_name: str = ""
    url: str = ""


@dataclass
class Message(Comment):
    envelope: ClassVar[str] = "message"
    collection: ClassVar[str] = "messages"
    create_fields: ClassVar[tuple[str, ...]] = ("body", "title")
    update_fields: ClassVar[tuple[str, ...]] = ("body", "title")

    comments: list[Comment] = field(default_factory=list)

    @classmethod
    def _decode_field(cls, name: str, value: Any) -> Any:
        if name == "comments":
            return [Comment.from_dict(c) for c in value]
        return super()._decode_field(name, value)


@dataclass
class Bin(Model):
    """A saved ticket search."""

    envelope: ClassVar[str] = "ticket_bin"
    collection: ClassVar[str] = "ticket_bins"
    create_fields: ClassVar[tuple[str, ...]] = ("default", "name", "query")
    update_fields: ClassVar[tuple[str, ...]] = ("default", "name", "query")
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"updated_at"})

    default: bool = False
    id: int = 0
    name: str = ""
    position: int = 0
    project_id: int = 0
    query: str = ""
    shared: bool = False
    tickets_count: int = 0
    updated_at: dt.datetime | None = None
    user_id: int = 0
    global_: bool = False

    # "global" is a keyword, so the attribute is renamed on the way in and out
    def update_from_dict(self, data: dict[str, Any]) -> None:
        super().update_from_dict(data)
        if "global" in data:
            self.global_ = bool(data["global"])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["global"] = data.pop("global_")
        return data


@dataclass
class Changeset(Model):
    """A source control changeset linked to a project."""

    envelope: ClassVar[str] = "changeset"
    collection: ClassVar[str] = "changesets"
    create_fields: ClassVar[tuple[str, ...]] = ("body", "changed_at", "changes", "revision", "title", "user_id")
    timestamp_fields: ClassVar[frozenset[str]] = frozenset({"changed_at"})
    lookup_field: ClassVar[str] = "revision"
    key_field: ClassVar[str] = "revision"

    body: str = ""
    body_html: str = ""
    changed_at: dt.datetime | None = None
    # [operation, path] pairs, e.g. ["M", "src/app.py"]
    changes: list[list[str]] = field(default_factory=list)
    project_id: int = 0
    revision: str = ""
    title: str = ""
    user_id: int = 0
