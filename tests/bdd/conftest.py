"""
Shared fixtures and step definitions for BDD tests.

- runner, context: available to all scenario files in this directory
- mock_clients, mock_appointments, mock_users: engine modules as seen by the CLI
- no_logging: autouse, prevents log file creation during tests
- 'the output contains' / 'exits with status' steps: shared across all feature files
"""

import pytest
from unittest.mock import patch
from click.testing import CliRunner
from pytest_bdd import then, parsers


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_clients():
    with patch("followcrm.cli.main.clients") as mock:
        yield mock


@pytest.fixture
def mock_appointments():
    with patch("followcrm.cli.main.appointments") as mock:
        yield mock


@pytest.fixture
def mock_users():
    with patch("followcrm.cli.main.users") as mock:
        yield mock


@pytest.fixture
def context():
    """Mutable dict shared between Given/When/Then steps within a scenario."""
    return {}


@pytest.fixture(autouse=True)
def no_logging():
    with patch("followcrm.cli.main.configure_logging"):
        yield


@then(parsers.parse('the output contains "{text}"'))
def output_contains(context, text):
    assert text in context["result"].output, (
        f"Expected {text!r} in output:\n{context['result'].output}"
    )


@then(parsers.parse("the command exits with status {code:d}"))
def exits_with(context, code):
    assert context["result"].exit_code == code, context["result"].output
