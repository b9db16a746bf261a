"""
Unit tests for the procedure-call surface (followcrm/procedures.py).

The table holds direct references to engine functions, so tests swap entries
with patch.dict instead of patching the engine modules.
"""

import pytest
from unittest.mock import MagicMock, patch

from followcrm.errors import NotFoundError, ValidationError
from followcrm.engine import appointments, clients, fields, tags, users
from followcrm.procedures import PROCEDURES, call


def test_every_public_operation_is_registered():
    expected = {
        'clientField.list', 'clientField.getById', 'clientField.create', 'clientField.update',
        'clientField.deactivate', 'clientField.reorder',
        'tag.list', 'tag.create', 'tag.update', 'tag.delete', 'tag.linkClient', 'tag.unlinkClient',
        'client.list', 'client.getById', 'client.create', 'client.update', 'client.deactivate',
        'client.deletePermanently', 'client.transfer', 'client.history',
        'appointment.list', 'appointment.getById', 'appointment.create', 'appointment.reschedule',
        'appointment.cancel', 'appointment.finalize',
        'user.list', 'user.getById', 'user.create', 'user.update', 'user.resetPassword',
        'user.deactivate', 'user.reactivate',
    }
    assert set(PROCEDURES) == expected


def test_names_map_to_engine_functions():
    assert PROCEDURES['appointment.finalize'] is appointments.finalize_appointment
    assert PROCEDURES['client.transfer'] is clients.transfer_client
    assert PROCEDURES['clientField.deactivate'] is fields.deactivate_field
    assert PROCEDURES['tag.linkClient'] is tags.link_client
    assert PROCEDURES['user.deactivate'] is users.deactivate_user


def test_call_passes_payload_as_keywords():
    def transfer(client_id, new_assignee_id):
        return (client_id, new_assignee_id)

    with patch.dict(PROCEDURES, {'client.transfer': transfer}):
        assert call('client.transfer', {'client_id': 10, 'new_assignee_id': 2}) == (10, 2)


def test_call_without_payload():
    handler = MagicMock(return_value=[])
    with patch.dict(PROCEDURES, {'tag.list': handler}):
        assert call('tag.list') == []
    handler.assert_called_once_with()


def test_unknown_procedure_not_found():
    with pytest.raises(NotFoundError, match='Unknown procedure: client.merge'):
        call('client.merge', {})


def test_wrong_payload_keys_are_validation_errors():
    def get_client(client_id):
        return client_id

    with patch.dict(PROCEDURES, {'client.getById': get_client}):
        with pytest.raises(ValidationError, match='client.getById'):
            call('client.getById', {'id': 10})


def test_current_user_reaches_deactivate_only():
    def deactivate(user_id, reason=None, current_user_id=None):
        return current_user_id

    with patch.dict(PROCEDURES, {'user.deactivate': deactivate}):
        assert call('user.deactivate', {'user_id': 3}, current_user_id=1) == 1


def test_current_user_not_injected_elsewhere():
    def reactivate(user_id):
        return user_id

    with patch.dict(PROCEDURES, {'user.reactivate': reactivate}):
        assert call('user.reactivate', {'user_id': 3}, current_user_id=1) == 3


def test_session_cannot_be_spoofed_through_payload():
    def deactivate(user_id, reason=None, current_user_id=None):
        return current_user_id

    with patch.dict(PROCEDURES, {'user.deactivate': deactivate}):
        assert call('user.deactivate', {'user_id': 3, 'current_user_id': 3}, current_user_id=1) == 1


@pytest.mark.parametrize('entry', [{'value': 'Maria'}, {'field_id': 'abc', 'value': 'Maria'}])
def test_malformed_field_values_surface_as_validation(entry):
    payload = {
        'whatsapp': '+5511999999999', 'assigned_to': 1, 'user_id': 2,
        'scheduled_at': '2030-01-15T10:00:00', 'field_values': [entry],
    }
    with pytest.raises(ValidationError) as excinfo:
        call('client.create', payload)
    assert excinfo.value.kind == 'validation'
