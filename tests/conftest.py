"""
Pytest configuration and fixtures.

- Integration tests fail when the code under test logs a warning
- Unit tests may log warnings freely (per-item migration failures are warnings)
- `make_response` and `lighthouse` build a client over a mocked HTTP session
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, override
from unittest.mock import Mock

import pytest
import requests

from lighthouse_client.client import Lighthouse
from lighthouse_client.models import (
    Attachment,
    Bin,
    Changeset,
    Membership,
    Message,
    Milestone,
    Profile,
    Project,
    Ticket,
    User,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

# warnings logged while each integration test runs, by node ID
_logged_warnings: dict[str, list[logging.LogRecord]] = {}


class WarningCollector(logging.Handler):
    """Collects WARNING and above records for one test."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__(level=logging.WARNING)
        self.test_nodeid = test_nodeid

    @override
    def emit(self, record: logging.LogRecord) -> None:
        _logged_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def collect_warnings_for_integration_tests(request: pytest.FixtureRequest) -> Generator[None]:
    """Record logged warnings of integration tests; see pytest_runtest_makereport."""
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    handler = WarningCollector(request.node.nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]) -> Generator[None]:  # type: ignore[misc]
    """Turn a passing integration test into a failure if it logged warnings."""
    outcome = yield
    report = outcome.get_result()

    if call.when != "call":
        return

    records = _logged_warnings.pop(item.nodeid, [])
    if records and report.outcome == "passed":
        report.outcome = "failed"
        report.longrepr = f"{len(records)} warning(s) logged:\n" + "\n".join(
            f"  - {r.levelname}: {r.getMessage()} (in {r.name}:{r.lineno})" for r in records
        )


def _response(status_code: int = 200, body: Any = None, *, content: bytes | None = None) -> Mock:
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.text = "" if body is None else json.dumps(body)
    response.content = content if content is not None else response.text.encode()
    if body is None:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def make_response() -> Callable[..., Mock]:
    """Factory for fake requests responses: make_response(status, body, content=...)."""
    return _response


@pytest.fixture
def session() -> requests.Session:
    """A real session whose request method is mocked; headers and auth stay inspectable."""
    s = requests.Session()
    s.request = Mock(name="request")  # type: ignore[method-assign]
    return s


@pytest.fixture
def lighthouse(session: requests.Session) -> Lighthouse:
    return Lighthouse("acme", token="secret", session=session)


@pytest.fixture
def account_client() -> Mock:
    """A Lighthouse client double for an account with one small project and two members."""
    client = Mock()
    client.account = "acme"
    client.plan.return_value = {"name": "Gold"}
    client.profiles.get.return_value = Profile(id=1, name="Owner")
    client.projects.list.return_value = [Project(id=1, name="Web Site", permalink="web-site")]
    client.projects.memberships.return_value = [Membership(id=1, user_id=7), Membership(id=2, user_id=1)]
    client.bins.return_value.list.return_value = [Bin(id=2, name="Open")]
    client.changesets.return_value.list.return_value = [Changeset(revision="abc123")]
    client.messages.return_value.list.return_value = [Message(id=4, title="Hi", permalink="hi")]
    client.milestones.return_value.list_all.return_value = [Milestone(id=3, title="v1", permalink="v1")]
    client.tickets.return_value.list.side_effect = [
        [
            Ticket(
                number=1,
                title="Fix login bug!!",
                permalink="fix-login-bug",
                attachments=[Attachment(id=5, filename="log.txt", url="https://cdn.example.com/log.txt")],
            )
        ],
        [],
    ]
    client.tickets.return_value.get_attachment.return_value = b"hello"
    client.users.get.side_effect = lambda user_id: User(id=user_id, name=f"User {user_id}")
    client.users.memberships.return_value = []
    return client
