"""
Entry point bundling the Lighthouse resource services.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .resources import (
    BinsService,
    ChangesetsService,
    MessagesService,
    MilestonesService,
    ProfilesService,
    ProjectsService,
    TicketsService,
    TokensService,
    UsersService,
)
from .service import Service

if TYPE_CHECKING:
    import requests


class Lighthouse:
    """Client for one Lighthouse account.

    Usage:
        lh = Lighthouse("acme", token="...")
        project = lh.projects.get("Website")
        tickets = lh.tickets(project.id).list_all(query="state:open")
    """

    service: Service
    projects: ProjectsService
    users: UsersService
    profiles: ProfilesService
    tokens: TokensService

    def __init__(
        self,
        account: str,
        *,
        token: str | None = None,
        token_as_basic_auth: bool = False,
        email: str | None = None,
        password: str | None = None,
        session: requests.Session | None = None,
        base_url: str | None = None,
    ) -> None:
        self.service = Service(
            account,
            token=token,
            token_as_basic_auth=token_as_basic_auth,
            email=email,
            password=password,
            session=session,
            base_url=base_url,
        )
        self.projects = ProjectsService(self.service)
        self.users = UsersService(self.service)
        self.profiles = ProfilesService(self.service)
        self.tokens = TokensService(self.service)

    @property
    def account(self) -> str:
        return self.service.account

    def plan(self) -> dict[str, Any]:
        return self.service.plan()

    def milestones(self, project_id: int) -> MilestonesService:
        return MilestonesService(self.service, project_id)

    def tickets(self, project_id: int) -> TicketsService:
        return TicketsService(self.service, project_id)

    def messages(self, project_id: int) -> MessagesService:
        return MessagesService(self.service, project_id)

    def bins(self, project_id: int) -> BinsService:
        return BinsService(self.service, project_id)

    def changesets(self, project_id: int) -> ChangesetsService:
        return ChangesetsService(self.service, project_id)
