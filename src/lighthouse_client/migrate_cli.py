"""
Command-line interface for migrating a Lighthouse export to GitLab.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

from gitlab.exceptions import GitlabError

from . import gitlab_utils
from .archive import read_export
from .exceptions import MigrationError
from .gitlab_migration import (
    DEFAULT_PASSWORD,
    DEFAULT_STATE_KEY,
    LighthouseToGitlabMigrator,
    load_groups,
    load_user_mapping,
)
from .utils import PassError, setup_logging

if TYPE_CHECKING:
    from collections.abc import Sequence

logger: logging.Logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lhtogitlab", description="Migrate a Lighthouse export archive into a GitLab instance"
    )

    _ = parser.add_argument("archive", nargs="?", help="Archive written by 'lh export'")

    _ = parser.add_argument("--token", help="GitLab admin API token (env: GITLAB_TOKEN)")
    _ = parser.add_argument("--token-pass-path", help="Path for the GitLab token in pass utility")
    _ = parser.add_argument("--base-url", help="GitLab base URL, e.g. https://gitlab.example.com/")
    _ = parser.add_argument("--users", help="JSON file mapping Lighthouse user IDs to GitLab users")
    _ = parser.add_argument("--groups", help="JSON file listing the GitLab groups to create")
    _ = parser.add_argument("--password", default=DEFAULT_PASSWORD, help="Password for created users")
    _ = parser.add_argument("--project", help="Only migrate the project with this name")
    _ = parser.add_argument("--milestone", help="Only migrate the milestone with this title")
    _ = parser.add_argument("--number", type=int, default=0, help="Only migrate the ticket with this number")
    _ = parser.add_argument("--state-key", default=DEFAULT_STATE_KEY, help="Scope of the ticket state labels")
    _ = parser.add_argument(
        "--delete", action="store_true", help="Delete all groups, projects and users (except root and yourself)"
    )
    _ = parser.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        token = gitlab_utils.get_token(args.token, args.token_pass_path)
    except PassError:
        logger.exception("Unable to read the GitLab token")
        sys.exit(1)

    if not token or not args.base_url or (not args.delete and (not args.archive or not args.users)):
        parser.print_usage(sys.stderr)
        sys.exit(1)

    base_url = gitlab_utils.normalize_base_url(args.base_url)

    try:
        gl = gitlab_utils.get_client(base_url, token, insecure=args.insecure)

        if args.delete:
            LighthouseToGitlabMigrator(gl).delete_everything()
            sys.exit(0)

        migrator = LighthouseToGitlabMigrator(
            gl,
            user_mapping=load_user_mapping(args.users),
            groups=load_groups(args.groups) if args.groups else [],
            password=args.password,
            state_key=args.state_key,
            project_filter=args.project,
            milestone_filter=args.milestone,
            number_filter=args.number,
        )

        with read_export(args.archive) as export:
            result = migrator.migrate(export)

    except KeyboardInterrupt:
        logger.warning("Migration interrupted")
        sys.exit(1)
    except (MigrationError, GitlabError):
        logger.exception("Migration failed")
        sys.exit(1)

    for error in result.stats.errors:
        print(f"  - {error}")

    sys.exit(0 if result.success else 1)
