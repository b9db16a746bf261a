"""
Unit tests for followcrm/cli/main.py.

Mocking strategy:
  - patch followcrm.cli.main.<engine module> (fields, tags, clients, appointments, users)
  - patch followcrm.cli.main.configure_logging (autouse) to prevent file I/O
  - Use click.testing.CliRunner to invoke commands end-to-end
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from click.testing import CliRunner

from followcrm.cli.main import cli
from followcrm.errors import BusinessRuleError, ConflictError, NotFoundError
from followcrm.models import (
    Appointment, AppointmentDetail, Client, ClientField, FieldValue, FinalizeResult, Interaction,
    Page, Snapshot, SnapshotFieldValue, SnapshotTag, Tag, User, UserDetail,
)


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

WHEN = datetime(2030, 1, 15, 13, 0, tzinfo=timezone.utc)

SAMPLE_CLIENT = Client(
    id=10, whatsapp='+5511999999999', notes='Prefers mornings', assigned_to=1,
    field_values=[FieldValue(field_id=1, value='Maria', field_name='Nome', field_type='TEXT')],
    tags=[Tag(id=3, name='VIP')], next_appointment_at=WHEN,
)

SAMPLE_APPOINTMENT = Appointment(
    id=7, client_id=10, assigned_to=1, created_by=2, scheduled_at=WHEN,
    client_whatsapp='+5511999999999', assignee_name='Ana',
)

SAMPLE_INTERACTION = Interaction(
    id=50, appointment_id=7, client_id=10, user_id=2, ended_at=WHEN,
    summary='Talked about renewal', outcome='Interested',
    snapshot=Snapshot(
        whatsapp='+5511999999999',
        field_values=(SnapshotFieldValue('Nome', 'TEXT', 'Maria'),),
        tags=(SnapshotTag('VIP'),),
    ),
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_logging():
    """Prevent configure_logging from creating log files during tests."""
    with patch("followcrm.cli.main.configure_logging"):
        yield


@pytest.fixture(autouse=True)
def no_current_user():
    with patch("followcrm.cli.main.config.CURRENT_USER_ID", None):
        yield


# ---------------------------------------------------------------------------
# initdb
# ---------------------------------------------------------------------------

def test_initdb_applies_schema(runner):
    with patch("followcrm.cli.main.apply_schema") as mock_apply:
        result = runner.invoke(cli, ["initdb"])
    assert result.exit_code == 0
    mock_apply.assert_called_once_with()
    assert "Schema applied" in result.output


# ---------------------------------------------------------------------------
# fields
# ---------------------------------------------------------------------------

class TestFields:

    def test_list_empty(self, runner):
        with patch("followcrm.cli.main.fields") as mock_fields:
            mock_fields.list_fields.return_value = []
            result = runner.invoke(cli, ["fields", "list"])
        assert "No fields defined" in result.output

    def test_list_shows_options(self, runner):
        select = ClientField(id=2, name='Plano', type='SELECT', options=['Gold', 'Silver'])
        with patch("followcrm.cli.main.fields") as mock_fields:
            mock_fields.list_fields.return_value = [select]
            result = runner.invoke(cli, ["fields", "list"])
        assert "Plano" in result.output
        assert "Gold, Silver" in result.output

    def test_create_select_with_options(self, runner):
        with patch("followcrm.cli.main.fields") as mock_fields:
            mock_fields.create_field.return_value = ClientField(id=2, name='Plano', type='SELECT')
            result = runner.invoke(cli, ["fields", "create", "Plano", "select", "--option", "Gold", "--option", "Silver"])
        assert result.exit_code == 0
        mock_fields.create_field.assert_called_once_with(
            'Plano', 'SELECT', required=False, options=['Gold', 'Silver'], display_order=0,
        )

    def test_update_without_options_is_noop(self, runner):
        with patch("followcrm.cli.main.fields") as mock_fields:
            result = runner.invoke(cli, ["fields", "update", "1"])
        assert "No updates specified" in result.output
        mock_fields.update_field.assert_not_called()

    def test_update_required_flag(self, runner):
        with patch("followcrm.cli.main.fields") as mock_fields:
            mock_fields.update_field.return_value = ClientField(id=1, name='Nome')
            runner.invoke(cli, ["fields", "update", "1", "--optional"])
        mock_fields.update_field.assert_called_once_with(1, {'required': False})

    def test_deactivate_business_rule_error(self, runner):
        with patch("followcrm.cli.main.fields") as mock_fields:
            mock_fields.deactivate_field.side_effect = BusinessRuleError("Cannot deactivate a required field")
            result = runner.invoke(cli, ["fields", "deactivate", "1"])
        assert result.exit_code == 1
        assert "Error: Cannot deactivate a required field" in result.output

    def test_reorder_parses_pairs(self, runner):
        with patch("followcrm.cli.main.fields") as mock_fields:
            mock_fields.reorder_fields.return_value = [ClientField(id=3), ClientField(id=1)]
            result = runner.invoke(cli, ["fields", "reorder", "3:0", "1:1"])
        assert result.exit_code == 0
        mock_fields.reorder_fields.assert_called_once_with([
            {'id': 3, 'display_order': 0}, {'id': 1, 'display_order': 1},
        ])

    def test_reorder_bad_pair_is_usage_error(self, runner):
        with patch("followcrm.cli.main.fields") as mock_fields:
            result = runner.invoke(cli, ["fields", "reorder", "3-0"])
        assert result.exit_code == 2
        mock_fields.reorder_fields.assert_not_called()


# ---------------------------------------------------------------------------
# tags
# ---------------------------------------------------------------------------

class TestTags:

    def test_create_needs_acting_user(self, runner):
        with patch("followcrm.cli.main.tags") as mock_tags:
            result = runner.invoke(cli, ["tags", "create", "VIP"])
        assert result.exit_code == 2
        assert "No acting user" in result.output
        mock_tags.create_tag.assert_not_called()

    def test_create_with_user(self, runner):
        with patch("followcrm.cli.main.tags") as mock_tags:
            mock_tags.create_tag.return_value = Tag(id=3, name='VIP')
            result = runner.invoke(cli, ["tags", "create", "VIP", "--color", "#f59e0b", "--user", "1"])
        assert result.exit_code == 0
        mock_tags.create_tag.assert_called_once_with('VIP', 1, color='#f59e0b')

    def test_create_uses_current_user_from_config(self, runner):
        with patch("followcrm.cli.main.config.CURRENT_USER_ID", 4), \
             patch("followcrm.cli.main.tags") as mock_tags:
            mock_tags.create_tag.return_value = Tag(id=3, name='VIP')
            runner.invoke(cli, ["tags", "create", "VIP"])
        mock_tags.create_tag.assert_called_once_with('VIP', 4, color=None)

    def test_duplicate_name_conflict(self, runner):
        with patch("followcrm.cli.main.tags") as mock_tags:
            mock_tags.create_tag.side_effect = ConflictError('A tag named "VIP" already exists')
            result = runner.invoke(cli, ["tags", "create", "VIP", "--user", "1"])
        assert result.exit_code == 1
        assert 'already exists' in result.output

    def test_delete_requires_confirmation(self, runner):
        with patch("followcrm.cli.main.tags") as mock_tags:
            result = runner.invoke(cli, ["tags", "delete", "3"], input="n\n")
        assert result.exit_code == 1
        mock_tags.delete_tag.assert_not_called()

    def test_delete_with_yes(self, runner):
        with patch("followcrm.cli.main.tags") as mock_tags:
            result = runner.invoke(cli, ["tags", "delete", "3", "--yes"])
        assert result.exit_code == 0
        mock_tags.delete_tag.assert_called_once_with(3)

    def test_link(self, runner):
        with patch("followcrm.cli.main.tags") as mock_tags:
            result = runner.invoke(cli, ["tags", "link", "3", "10"])
        mock_tags.link_client.assert_called_once_with(3, 10)
        assert "linked to client #10" in result.output


# ---------------------------------------------------------------------------
# clients
# ---------------------------------------------------------------------------

class TestClients:

    def test_list_shows_formatted_numbers(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.list_clients.return_value = Page(data=[SAMPLE_CLIENT], total=1)
            result = runner.invoke(cli, ["clients", "list", "--search", "maria", "--tag", "3"])
        assert result.exit_code == 0
        assert "+55 11 99999-9999" in result.output
        assert "VIP" in result.output
        mock_clients.list_clients.assert_called_once_with(page=1, page_size=None, search='maria', tag_ids=[3])

    def test_list_empty(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.list_clients.return_value = Page()
            result = runner.invoke(cli, ["clients", "list"])
        assert "No clients found" in result.output

    def test_show_includes_whatsapp_link(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.get_client.return_value = SAMPLE_CLIENT
            result = runner.invoke(cli, ["clients", "show", "10"])
        assert "https://wa.me/5511999999999" in result.output
        assert "Nome: Maria" in result.output

    def test_show_missing_client(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.get_client.side_effect = NotFoundError("Client not found")
            result = runner.invoke(cli, ["clients", "show", "10"])
        assert result.exit_code == 1
        assert "Error: Client not found" in result.output

    def test_create_parses_fields_and_tags(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.create_client.return_value = SAMPLE_CLIENT
            result = runner.invoke(cli, [
                "clients", "create", "+5511999999999", "--assign-to", "1",
                "--at", "2030-01-15T10:00:00", "--field", "1=Maria", "--tag", "3", "--user", "2",
            ])
        assert result.exit_code == 0
        mock_clients.create_client.assert_called_once_with(
            '+5511999999999', 1, 2, '2030-01-15T10:00:00',
            notes=None, field_values=[{'field_id': 1, 'value': 'Maria'}], tag_ids=[3],
        )
        assert "Created client #10" in result.output

    def test_create_bad_field_syntax(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            result = runner.invoke(cli, [
                "clients", "create", "+5511999999999", "--assign-to", "1",
                "--at", "2030-01-15T10:00:00", "--field", "Nome:Maria", "--user", "2",
            ])
        assert result.exit_code == 2
        mock_clients.create_client.assert_not_called()

    def test_update_field_values(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.update_client.return_value = SAMPLE_CLIENT
            runner.invoke(cli, ["clients", "update", "10", "--notes", "VIP lead", "--field", "2=Gold"])
        mock_clients.update_client.assert_called_once_with(
            10, {'notes': 'VIP lead', 'field_values': [{'field_id': 2, 'value': 'Gold'}]},
        )

    def test_transfer(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            result = runner.invoke(cli, ["clients", "transfer", "10", "2"])
        mock_clients.transfer_client.assert_called_once_with(10, 2)
        assert "transferred to user #2" in result.output

    def test_history_prints_snapshot(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.get_client_history.return_value = Page(data=[SAMPLE_INTERACTION], total=1)
            result = runner.invoke(cli, ["clients", "history", "10"])
        assert "Interested" in result.output
        assert "Nome=Maria" in result.output
        assert "Tags: VIP" in result.output

    def test_delete_with_yes(self, runner):
        with patch("followcrm.cli.main.clients") as mock_clients:
            mock_clients.delete_client_permanently.return_value = True
            result = runner.invoke(cli, ["clients", "delete", "10", "--yes"])
        assert "Deleted client #10" in result.output


# ---------------------------------------------------------------------------
# appointments
# ---------------------------------------------------------------------------

class TestAppointments:

    def test_list_with_filters(self, runner):
        with patch("followcrm.cli.main.appointments") as mock_appts:
            mock_appts.list_appointments.return_value = Page(data=[SAMPLE_APPOINTMENT], total=1)
            result = runner.invoke(cli, ["appointments", "list", "--status", "OPEN", "--from", "2030-01-01"])
        assert result.exit_code == 0
        assert "Ana" in result.output
        mock_appts.list_appointments.assert_called_once_with(
            page=1, page_size=None, start_date='2030-01-01', end_date=None, status='OPEN',
        )

    def test_list_rejects_unknown_status(self, runner):
        result = runner.invoke(cli, ["appointments", "list", "--status", "PENDING"])
        assert result.exit_code == 2

    def test_show(self, runner):
        detail = AppointmentDetail(
            appointment=SAMPLE_APPOINTMENT, client=SAMPLE_CLIENT,
            assignee=User(id=1, name='Ana'), creator=User(id=2, name='Bruno'),
        )
        with patch("followcrm.cli.main.appointments") as mock_appts:
            mock_appts.get_appointment.return_value = detail
            result = runner.invoke(cli, ["appointments", "show", "7"])
        assert "Bruno" in result.output
        assert "https://wa.me/5511999999999" in result.output

    def test_create_conflict(self, runner):
        with patch("followcrm.cli.main.appointments") as mock_appts:
            mock_appts.create_appointment.side_effect = ConflictError("Client already has an open appointment")
            result = runner.invoke(cli, ["appointments", "create", "10", "--at", "2030-02-01T10:00", "--user", "2"])
        assert result.exit_code == 1
        assert "already has an open appointment" in result.output

    def test_cancel_requires_reason_option(self, runner):
        result = runner.invoke(cli, ["appointments", "cancel", "7"])
        assert result.exit_code == 2

    def test_cancel(self, runner):
        with patch("followcrm.cli.main.appointments") as mock_appts:
            result = runner.invoke(cli, ["appointments", "cancel", "7", "--reason", "Client travelling"])
        mock_appts.cancel_appointment.assert_called_once_with(7, 'Client travelling')
        assert "cancelled" in result.output

    def test_finalize(self, runner):
        next_appt = Appointment(id=8, client_id=10, scheduled_at=WHEN)
        with patch("followcrm.cli.main.appointments") as mock_appts:
            mock_appts.finalize_appointment.return_value = FinalizeResult(
                interaction=SAMPLE_INTERACTION, appointment=SAMPLE_APPOINTMENT, next_appointment=next_appt,
            )
            result = runner.invoke(cli, [
                "appointments", "finalize", "7", "--started", "2030-01-15T09:30",
                "--summary", "Talked about renewal", "--outcome", "Interested",
                "--next", "2030-02-15T10:00", "--user", "2",
            ])
        assert result.exit_code == 0
        mock_appts.finalize_appointment.assert_called_once_with(
            7, 2, '2030-01-15T09:30', 'Talked about renewal', 'Interested', '2030-02-15T10:00',
        )
        assert "interaction #50" in result.output
        assert "appointment #8" in result.output

    def test_unexpected_error_exits_1(self, runner):
        with patch("followcrm.cli.main.appointments") as mock_appts:
            mock_appts.reschedule_appointment.side_effect = RuntimeError("connection lost")
            result = runner.invoke(cli, ["appointments", "reschedule", "7", "--at", "2030-02-01T10:00"])
        assert result.exit_code == 1
        assert "Error: connection lost" in result.output


# ---------------------------------------------------------------------------
# users
# ---------------------------------------------------------------------------

class TestUsers:

    def test_list(self, runner):
        with patch("followcrm.cli.main.users") as mock_users:
            mock_users.list_users.return_value = [
                User(id=1, name='Ana', email='ana@example.com', client_count=3, open_appointment_count=2),
                User(id=2, name='Bruno', email='bruno@example.com', banned=True),
            ]
            result = runner.invoke(cli, ["users", "list"])
        assert "Ana" in result.output
        assert "inactive" in result.output

    def test_show(self, runner):
        detail = UserDetail(user=User(id=1, name='Ana', email='ana@example.com'), clients=[SAMPLE_CLIENT])
        with patch("followcrm.cli.main.users") as mock_users:
            mock_users.get_user.return_value = detail
            result = runner.invoke(cli, ["users", "show", "1"])
        assert "Clients (1)" in result.output

    def test_create_prompts_for_password(self, runner):
        with patch("followcrm.cli.main.users") as mock_users:
            mock_users.create_user.return_value = User(id=1, name='Ana')
            result = runner.invoke(cli, ["users", "create", "Ana", "ana@example.com"], input="hunter22\nhunter22\n")
        assert result.exit_code == 0
        mock_users.create_user.assert_called_once_with('Ana', 'ana@example.com', 'hunter22')

    def test_reset_password(self, runner):
        with patch("followcrm.cli.main.users") as mock_users:
            result = runner.invoke(cli, ["users", "reset-password", "1", "--new-password", "s3cret!!"])
        assert result.exit_code == 0
        mock_users.reset_password.assert_called_once_with(1, 's3cret!!')

    def test_deactivate_passes_acting_user(self, runner):
        with patch("followcrm.cli.main.users") as mock_users:
            runner.invoke(cli, ["users", "deactivate", "3", "--reason", "Left", "--user", "1"])
        mock_users.deactivate_user.assert_called_once_with(3, reason='Left', current_user_id=1)

    def test_deactivate_self_error(self, runner):
        with patch("followcrm.cli.main.users") as mock_users:
            mock_users.deactivate_user.side_effect = BusinessRuleError("You cannot deactivate yourself")
            result = runner.invoke(cli, ["users", "deactivate", "1", "--user", "1"])
        assert result.exit_code == 1
        assert "You cannot deactivate yourself" in result.output
