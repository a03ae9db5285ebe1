"""
Resource services for the Lighthouse API.

All resources follow the same pattern: build a path, issue a request, check
the status and decode the JSON envelope. `ResourceService` implements that
pattern once; the concrete services only supply their model, their base path
and their resource-specific extra endpoints.
"""

from __future__ import annotations

import json
import logging
from pathlib import PurePath
from typing import TYPE_CHECKING, Any, Final, Generic, TypeVar

import requests

from .exceptions import NotFoundError
from .models import (
    Bin,
    Changeset,
    Comment,
    Membership,
    Message,
    Milestone,
    Model,
    Profile,
    Project,
    Ticket,
    Token,
    User,
    unwrap_collection,
    wrap,
)
from .pagination import paginate
from .service import parse_id, parse_ticket_number

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .models import Attachment
    from .service import Service

logger: logging.Logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Model)
CollectionT = TypeVar("CollectionT", bound=Model)

HTTP_OK: Final[int] = requests.codes.ok
HTTP_CREATED: Final[int] = requests.codes.created


class _Endpoint(Generic[ModelT]):
    """Request/decode helpers shared by every service."""

    model: type[ModelT]
    base_path: str
    service: Service

    def __init__(self, service: Service, base_path: str, model: type[ModelT]) -> None:
        self.service = service
        self.base_path = base_path
        self.model = model

    def _path(self, key: Any = None, suffix: str = "") -> str:
        if key is None:
            return f"{self.base_path}{suffix}.json"
        return f"{self.base_path}/{key}{suffix}.json"

    def _request(
        self,
        method: str,
        path: str,
        expected_status: int,
        body: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        response = self.service.round_trip(method, path, body, **kwargs)
        self.service.check_response(response, expected_status)
        return response

    def _fetch_one(self, path: str) -> ModelT:
        response = self._request("GET", path, HTTP_OK)
        return self.model.from_dict(self.service.decode(response, self.model.envelope))

    def _fetch_many(self, path: str, params: Mapping[str, Any] | None = None) -> list[ModelT]:
        return self._fetch_collection(path, self.model, params)

    def _fetch_collection(
        self,
        path: str,
        model: type[CollectionT],
        params: Mapping[str, Any] | None = None,
    ) -> list[CollectionT]:
        response = self._request("GET", path, HTTP_OK, params=params)
        records = unwrap_collection(self.service.json_body(response), model.collection, model.envelope)
        return [model.from_dict(r) for r in records]


class ResourceService(_Endpoint[ModelT]):
    """List/Get/Create/Update/Delete for a single resource kind."""

    def list(self, params: Mapping[str, Any] | None = None) -> list[ModelT]:
        """List the collection, flattened to plain records in server order."""
        return self._fetch_many(self._path(), params)

    def get(self, id_or_name: str | int) -> ModelT:
        """Get by numeric ID, or by case-insensitive name when not numeric."""
        try:
            key = self._parse_key(id_or_name)
        except ValueError:
            return self.get_by_name(str(id_or_name))
        return self.get_by_id(key)

    def get_by_id(self, key: Any) -> ModelT:
        return self._fetch_one(self._path(key))

    def get_by_name(self, name: str) -> ModelT:
        """Linear, case-insensitive scan of the listing."""
        lower = name.lower()
        for entity in self._listing():
            if entity.lookup_name.lower() == lower:
                return entity
        msg = f"no such {self.model.envelope.replace('_', ' ')} {name!r}"
        raise NotFoundError(msg)

    def _listing(self) -> list[ModelT]:
        """Records scanned by name lookups."""
        return self.list()

    def new(self) -> ModelT:
        """Get the server's template for a new record."""
        return self._fetch_one(self._path("new"))

    def create(self, entity: ModelT) -> ModelT:
        """Create entity from its create view.

        The server's answer is decoded into entity itself, which is also
        returned.
        """
        payload = wrap(self.model.envelope, entity.create_view())
        response = self._request("POST", self._path(), HTTP_CREATED, payload)
        entity.update_from_dict(self.service.decode(response, self.model.envelope))
        logger.debug(f"Created {self.model.envelope} {entity.key}")
        return entity

    def update(self, entity: ModelT) -> None:
        """Send entity's update view; the response body is not used."""
        payload = wrap(self.model.envelope, entity.update_view())
        _ = self._request("PUT", self._path(entity.key), HTTP_OK, payload)

    def delete(self, id_or_name: str | int) -> None:
        """Delete by numeric ID, or after resolving a case-insensitive name."""
        _ = self._request("DELETE", self._path(self.resolve_key(id_or_name)), HTTP_OK)

    def resolve_key(self, id_or_name: str | int) -> Any:
        """Return the path key for an identifier, looking names up if needed."""
        try:
            return self._parse_key(id_or_name)
        except ValueError:
            return self.get_by_name(str(id_or_name)).key

    def _parse_key(self, value: str | int) -> Any:
        return parse_id(value)


class ProjectsService(ResourceService[Project]):
    def __init__(self, service: Service) -> None:
        super().__init__(service, "/projects", Project)

    def memberships(self, id_or_name: str | int) -> list[Membership]:
        return self._fetch_collection(self._path(self.resolve_key(id_or_name), "/memberships"), Membership)


class MilestonesService(ResourceService[Milestone]):
    def __init__(self, service: Service, project_id: int) -> None:
        super().__init__(service, f"/projects/{project_id}/milestones", Milestone)

    def list(self, params: Mapping[str, Any] | None = None, *, page: int = 0) -> list[Milestone]:
        query = dict(params or {})
        if page > 0:
            query["page"] = page
        return super().list(query or None)

    def list_all(self) -> list[Milestone]:
        """Every milestone, across all pages."""
        return paginate(lambda page: self.list(page=page))

    def _listing(self) -> list[Milestone]:
        return self.list_all()

    def close(self, id_or_title: str | int) -> None:
        _ = self._request("PUT", self._path(self.resolve_key(id_or_title), "/close"), HTTP_OK)

    def open(self, id_or_title: str | int) -> None:
        _ = self._request("PUT", self._path(self.resolve_key(id_or_title), "/open"), HTTP_OK)


class TicketsService(ResourceService[Ticket]):
    """Tickets are addressed by their per-project number, not by ID."""

    DEFAULT_LIMIT: Final[int] = 30
    MAX_LIMIT: Final[int] = 100

    project_id: int

    def __init__(self, service: Service, project_id: int) -> None:
        super().__init__(service, f"/projects/{project_id}/tickets", Ticket)
        self.project_id = project_id

    def list(
        self,
        params: Mapping[str, Any] | None = None,
        *,
        query: str = "",
        limit: int = 0,
        page: int = 0,
    ) -> list[Ticket]:
        """List one page of tickets.

        Args:
            params: Extra query string parameters
            query: Lighthouse search query; the default sort is by last update
            limit: Tickets per page, DEFAULT_LIMIT when 0, at most MAX_LIMIT
            page: 1-based page number, first page when 0
        """
        values = dict(params or {})
        if query:
            values["q"] = query
        if limit > 0:
            values["limit"] = limit
        if page > 0:
            values["page"] = page
        return super().list(values or None)

    def list_all(self, *, query: str = "", limit: int = 0) -> list[Ticket]:
        """Every ticket matching query, across all pages."""
        return paginate(lambda page: self.list(query=query, limit=limit, page=page))

    def get(self, id_or_name: str | int) -> Ticket:
        return self.get_by_id(parse_ticket_number(id_or_name))

    def resolve_key(self, id_or_name: str | int) -> Any:
        return parse_ticket_number(id_or_name)

    def update(
        self,
        entity: Ticket,
        *,
        notify_all: bool | None = None,
        multiple_watchers: list[int] | None = None,
    ) -> None:
        """Update a ticket; the whole record is sent.

        Args:
            entity: Ticket to save
            notify_all: Whether every watcher should be notified of the change
            multiple_watchers: User IDs to set as watchers
        """
        payload = wrap(self.model.envelope, self._update_payload(entity, notify_all, multiple_watchers))
        _ = self._request("PUT", self._path(entity.key), HTTP_OK, payload)

    @staticmethod
    def _update_payload(
        ticket: Ticket,
        notify_all: bool | None = None,
        multiple_watchers: list[int] | None = None,
    ) -> dict[str, Any]:
        view = ticket.update_view()
        if notify_all is not None:
            view["notify_all"] = notify_all
        if multiple_watchers:
            view["multiple_watchers"] = multiple_watchers
        return view

    def get_attachment(self, attachment: Attachment) -> bytes:
        """Download an attachment's content from its absolute URL."""
        return self._request("GET", attachment.url, HTTP_OK).content

    def add_attachment(self, ticket: Ticket, filename: str, data: bytes) -> None:
        """Attach a file to a ticket.

        The request is a multipart PUT combining the file with a JSON part
        carrying the ticket's update view.
        """
        ticket_json = json.dumps(wrap(self.model.envelope, self._update_payload(ticket)))
        files = [
            ("ticket[attachment][]", (PurePath(filename).name, data)),
            ("json", (None, ticket_json, "application/json")),
        ]
        _ = self._request("PUT", self._path(ticket.key), HTTP_OK, files=files)

    def bulk_edit(self, query: str, command: str, migration_token: str | None = None) -> None:
        """Apply keyword commands to every ticket matching query.

        Args:
            query: Any ticket search query, 'all', or a single ticket number
            command: Keyword commands, e.g. "state:resolved milestone:next"
            migration_token: Token of a user with access to the destination
                project; required when command moves tickets with the
                'project' or 'account' keywords
        """
        body = {"query": query, "command": command}
        if migration_token:
            body["migration_token"] = migration_token
        path = f"{self.base_path.removesuffix('/tickets')}/bulk_edit.json"
        _ = self._request("POST", path, HTTP_OK, body)


class MessagesService(ResourceService[Message]):
    def __init__(self, service: Service, project_id: int) -> None:
        super().__init__(service, f"/projects/{project_id}/messages", Message)

    def create_comment(self, id_or_title: str | int, comment: Comment) -> Message:
        """Post a comment on a message and return the updated message."""
        payload = wrap(Comment.envelope, comment.create_view())
        path = self._path(self.resolve_key(id_or_title), "/comments")
        response = self._request("POST", path, HTTP_CREATED, payload)
        return Message.from_dict(self.service.decode(response, Message.envelope))


class BinsService(ResourceService[Bin]):
    def __init__(self, service: Service, project_id: int) -> None:
        super().__init__(service, f"/projects/{project_id}/bins", Bin)


class ChangesetsService(ResourceService[Changeset]):
    """Changesets are addressed by revision."""

    def __init__(self, service: Service, project_id: int) -> None:
        super().__init__(service, f"/projects/{project_id}/changesets", Changeset)

    def _parse_key(self, value: str | int) -> Any:
        return str(value)


class UsersService(_Endpoint[User]):
    """Users can be read and updated, but not listed or created."""

    def __init__(self, service: Service) -> None:
        super().__init__(service, "/users", User)

    def get(self, user_id: str | int) -> User:
        return self._fetch_one(self._path(parse_id(user_id)))

    def update(self, user: User) -> None:
        payload = wrap(User.envelope, user.update_view())
        _ = self._request("PUT", self._path(user.id), HTTP_OK, payload)

    def memberships(self, user_id: str | int) -> list[Membership]:
        return self._fetch_collection(self._path(parse_id(user_id), "/memberships"), Membership)


class ProfilesService(_Endpoint[Profile]):
    """The profile of the user the credentials belong to."""

    def __init__(self, service: Service) -> None:
        super().__init__(service, "/profile", Profile)

    def get(self) -> Profile:
        return self._fetch_one(self._path())

    def update(self, profile: Profile) -> None:
        payload = wrap(Profile.envelope, profile.update_view())
        _ = self._request("PUT", self._path(), HTTP_OK, payload)


class TokensService(_Endpoint[Token]):
    def __init__(self, service: Service) -> None:
        super().__init__(service, "/tokens", Token)

    def get(self, token: str) -> Token:
        return self._fetch_one(self._path(token))
