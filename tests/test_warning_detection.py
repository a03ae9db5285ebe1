"""
Tests for the conftest.py rule that integration tests must not log warnings.
"""

import logging
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

WARNING_TEST = """
import logging
import pytest

@pytest.mark.integration
def test_export_with_warning():
    logging.getLogger("lighthouse_client.export").warning("Skipping unreadable ticket")
"""


@pytest.mark.unit
def test_unit_tests_may_log_warnings() -> None:
    logging.getLogger("lighthouse_client.gitlab_migration").warning("Unable to create label lh::new")


@pytest.mark.integration
def test_integration_test_with_info_logs_passes() -> None:
    logging.getLogger("lighthouse_client.export").info("Exported 1 projects")


@pytest.mark.unit
def test_integration_test_logging_a_warning_fails(tmp_path: Path) -> None:
    shutil.copy(Path(__file__).parent / "conftest.py", tmp_path / "conftest.py")
    test_file = tmp_path / "test_logged_warning.py"
    test_file.write_text(WARNING_TEST)

    result = subprocess.run(  # noqa: S603
        [sys.executable, "-m", "pytest", str(test_file), "-p", "no:cacheprovider"],
        capture_output=True,
        text=True,
        cwd=str(tmp_path),
        check=False,
    )

    assert result.returncode != 0, result.stdout
    assert "1 warning(s) logged" in result.stdout
    assert "Skipping unreadable ticket" in result.stdout
