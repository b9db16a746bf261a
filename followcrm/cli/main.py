#!/usr/bin/env python3
"""
Follow-up CRM Terminal CLI
Command-line interface for all CRM operations.
"""

import functools
import logging
import sys
import click
from typing import List, Optional

from followcrm.config import config
from followcrm.db.connection import apply_schema
from followcrm.engine import appointments, clients, fields, tags, users
from followcrm.errors import CrmError
from followcrm.formatting import format_datetime, format_whatsapp, whatsapp_link
from followcrm.models import APPOINTMENT_STATUSES, FIELD_TYPES, Client
from followcrm.logging_config import configure_logging, log_call


def _handle_errors(func):
    """Turn domain errors into `Error: ...` on stderr and exit status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger("followcrm")
        try:
            return func(*args, **kwargs)
        except (click.ClickException, click.Abort):
            raise
        except CrmError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        except Exception as e:
            logger.error(f"{func.__name__} failed: {e}", exc_info=True)
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


def _acting_user(user_id: Optional[int]) -> int:
    if user_id is None:
        raise click.UsageError("No acting user: pass --user or set CURRENT_USER_ID in .env")
    return user_id


def _parse_field_values(raw: List[str]) -> List[dict]:
    """`3=Maria` → {'field_id': 3, 'value': 'Maria'}"""
    values = []
    for item in raw:
        field_id, sep, value = item.partition('=')
        if not sep or not field_id.strip().isdigit():
            raise click.BadParameter(f"expected FIELD_ID=VALUE, got {item!r}", param_hint='--field')
        values.append({'field_id': int(field_id), 'value': value})
    return values


def _echo_client(client: Client) -> None:
    click.echo(f"\n{'='*80}")
    click.echo(f"CLIENT #{client.id}: {format_whatsapp(client.whatsapp)}")
    click.echo(f"{'='*80}")
    click.echo(f"WhatsApp:    {whatsapp_link(client.whatsapp)}")
    click.echo(f"Assigned to: {client.assigned_to or '(nobody)'}")
    click.echo(f"Created:     {format_datetime(client.created_at)}")
    click.echo(f"Updated:     {format_datetime(client.updated_at)}")
    if client.deleted_at:
        click.echo(f"Deactivated: {format_datetime(client.deleted_at)}")
    if client.notes:
        click.echo(f"\nNotes:\n{client.notes}")
    if client.field_values:
        click.echo("\nFields:")
        for fv in client.field_values:
            click.echo(f"  {fv.field_name}: {fv.value}")
    if client.tags:
        click.echo(f"\nTags: {', '.join(t.name for t in client.tags)}")


user_option = click.option(
    '--user', 'user_id', type=int, default=lambda: config.CURRENT_USER_ID,
    help='Acting user ID (default: CURRENT_USER_ID)',
)


@click.group()
def cli():
    """Follow-up CRM - Clients, Appointments & Interaction History"""
    configure_logging()


@cli.command()
@_handle_errors
@log_call
def initdb():
    """Create the database tables (safe to run repeatedly)"""
    apply_schema()
    click.echo("✓ Schema applied")


# =============================================================================
# FIELD COMMANDS
# =============================================================================

@cli.group('fields')
def fields_group():
    """Manage custom client fields"""
    pass


@fields_group.command('list')
@_handle_errors
@log_call
def fields_list():
    """List active fields in display order"""
    results = fields.list_fields()
    if not results:
        click.echo("No fields defined.")
        return

    click.echo(f"{'ID':<6} {'Order':<6} {'Name':<25} {'Type':<10} {'Req':<4} Options")
    click.echo("-" * 80)
    for f in results:
        click.echo(
            f"{f.id:<6} {f.display_order:<6} {f.name[:23]:<25} {f.type:<10} "
            f"{'yes' if f.required else 'no':<4} {', '.join(f.options)}"
        )


@fields_group.command('create')
@click.argument('name')
@click.argument('type', type=click.Choice(FIELD_TYPES, case_sensitive=False))
@click.option('--required', is_flag=True, help='Every client must have a value')
@click.option('--option', 'options', multiple=True, help='Option for SELECT fields (repeatable)')
@click.option('--order', 'display_order', default=0, help='Display order (default: 0)')
@_handle_errors
@log_call
def fields_create(name, type, required, options, display_order):
    """Create a field"""
    created = fields.create_field(
        name, type.upper(), required=required, options=list(options), display_order=display_order,
    )
    click.echo(f"✓ Created field #{created.id}: {created.name} ({created.type})")


@fields_group.command('update')
@click.argument('field_id', type=int)
@click.option('--name', help='New name')
@click.option('--required/--optional', default=None, help='Change whether a value is required')
@click.option('--order', 'display_order', type=int, help='New display order')
@click.option('--option', 'options', multiple=True, help='Full option list for SELECT fields (repeatable)')
@_handle_errors
@log_call
def fields_update(field_id, name, required, display_order, options):
    """Edit a field (type cannot change)"""
    updates = {}
    if name is not None:
        updates['name'] = name
    if required is not None:
        updates['required'] = required
    if display_order is not None:
        updates['display_order'] = display_order
    if options:
        updates['options'] = list(options)

    if not updates:
        click.echo("No updates specified. Use --name, --required/--optional, --order or --option", err=True)
        return

    updated = fields.update_field(field_id, updates)
    click.echo(f"✓ Updated field #{updated.id}: {updated.name}")


@fields_group.command('deactivate')
@click.argument('field_id', type=int)
@_handle_errors
@log_call
def fields_deactivate(field_id):
    """Hide a field from forms and required checks"""
    deactivated = fields.deactivate_field(field_id)
    click.echo(f"✓ Deactivated field #{deactivated.id}: {deactivated.name}")


@fields_group.command('reorder')
@click.argument('pairs', nargs=-1, required=True)
@_handle_errors
@log_call
def fields_reorder(pairs):
    """Set display order in one batch: ID:ORDER ID:ORDER ..."""
    orders = []
    for pair in pairs:
        field_id, sep, order = pair.partition(':')
        if not sep or not field_id.isdigit() or not order.isdigit():
            raise click.BadParameter(f"expected ID:ORDER, got {pair!r}", param_hint='PAIRS')
        orders.append({'id': int(field_id), 'display_order': int(order)})

    reordered = fields.reorder_fields(orders)
    click.echo(f"✓ Reordered {len(reordered)} fields")


# =============================================================================
# TAG COMMANDS
# =============================================================================

@cli.group('tags')
def tags_group():
    """Manage client tags"""
    pass


@tags_group.command('list')
@_handle_errors
@log_call
def tags_list():
    """List tags with their client counts"""
    results = tags.list_tags()
    if not results:
        click.echo("No tags yet.")
        return

    click.echo(f"{'ID':<6} {'Name':<25} {'Color':<10} {'Clients':<8}")
    click.echo("-" * 52)
    for t in results:
        click.echo(f"{t.id:<6} {t.name[:23]:<25} {(t.color or '')[:9]:<10} {t.client_count or 0:<8}")


@tags_group.command('create')
@click.argument('name')
@click.option('--color', help='Display color, e.g. #22c55e')
@user_option
@_handle_errors
@log_call
def tags_create(name, color, user_id):
    """Create a tag"""
    tag = tags.create_tag(name, _acting_user(user_id), color=color)
    click.echo(f"✓ Created tag #{tag.id}: {tag.name}")


@tags_group.command('update')
@click.argument('tag_id', type=int)
@click.option('--name', help='New name')
@click.option('--color', help='New color')
@_handle_errors
@log_call
def tags_update(tag_id, name, color):
    """Rename or recolor a tag"""
    updates = {k: v for k, v in {'name': name, 'color': color}.items() if v is not None}
    if not updates:
        click.echo("No updates specified. Use --name or --color", err=True)
        return
    tag = tags.update_tag(tag_id, updates)
    click.echo(f"✓ Updated tag #{tag.id}: {tag.name}")


@tags_group.command('delete')
@click.argument('tag_id', type=int)
@click.confirmation_option(prompt='Delete this tag and unlink it from every client?')
@_handle_errors
@log_call
def tags_delete(tag_id):
    """Delete a tag (history snapshots keep it)"""
    tags.delete_tag(tag_id)
    click.echo(f"✓ Deleted tag #{tag_id}")


@tags_group.command('link')
@click.argument('tag_id', type=int)
@click.argument('client_id', type=int)
@_handle_errors
@log_call
def tags_link(tag_id, client_id):
    """Attach a tag to a client"""
    tags.link_client(tag_id, client_id)
    click.echo(f"✓ Tag #{tag_id} linked to client #{client_id}")


@tags_group.command('unlink')
@click.argument('tag_id', type=int)
@click.argument('client_id', type=int)
@_handle_errors
@log_call
def tags_unlink(tag_id, client_id):
    """Detach a tag from a client"""
    tags.unlink_client(tag_id, client_id)
    click.echo(f"✓ Tag #{tag_id} unlinked from client #{client_id}")


# =============================================================================
# CLIENT COMMANDS
# =============================================================================

@cli.group('clients')
def clients_group():
    """Manage clients"""
    pass


@clients_group.command('list')
@click.option('--search', help='Match the configured search fields')
@click.option('--tag', 'tag_ids', type=int, multiple=True, help='Filter by tag ID (repeatable, any match)')
@click.option('--page', default=1, help='Page number (default: 1)')
@click.option('--page-size', type=int, help='Results per page')
@_handle_errors
@log_call
def clients_list(search, tag_ids, page, page_size):
    """List clients, soonest appointment first"""
    result = clients.list_clients(page=page, page_size=page_size, search=search, tag_ids=list(tag_ids) or None)

    if not result.data:
        click.echo("No clients found.")
        return

    click.echo(f"\nShowing {len(result.data)} of {result.total} clients (page {result.page}):\n")
    click.echo(f"{'ID':<6} {'WhatsApp':<20} {'Next appointment':<18} {'Tags':<20}")
    click.echo("-" * 80)
    for c in result.data:
        click.echo(
            f"{c.id:<6} {format_whatsapp(c.whatsapp):<20} "
            f"{format_datetime(c.next_appointment_at):<18} "
            f"{', '.join(t.name for t in c.tags)[:20]:<20}"
        )


@clients_group.command('show')
@click.argument('client_id', type=int)
@_handle_errors
@log_call
def clients_show(client_id):
    """Show full client details"""
    _echo_client(clients.get_client(client_id))
    click.echo()


@clients_group.command('create')
@click.argument('whatsapp')
@click.option('--assign-to', 'assigned_to', type=int, required=True, help='Assignee user ID')
@click.option('--at', 'scheduled_at', required=True, help='First appointment (ISO-8601)')
@click.option('--notes', help='Free-text notes')
@click.option('--field', 'field_values', multiple=True, help='FIELD_ID=VALUE (repeatable)')
@click.option('--tag', 'tag_ids', type=int, multiple=True, help='Tag ID (repeatable)')
@user_option
@_handle_errors
@log_call
def clients_create(whatsapp, assigned_to, scheduled_at, notes, field_values, tag_ids, user_id):
    """Create a client with its first appointment"""
    client = clients.create_client(
        whatsapp,
        assigned_to,
        _acting_user(user_id),
        scheduled_at,
        notes=notes,
        field_values=_parse_field_values(field_values),
        tag_ids=list(tag_ids),
    )
    click.echo(f"\n✓ Created client #{client.id}: {format_whatsapp(client.whatsapp)}")
    click.echo(f"  {whatsapp_link(client.whatsapp)}")


@clients_group.command('update')
@click.argument('client_id', type=int)
@click.option('--whatsapp', help='New WhatsApp number')
@click.option('--notes', help='Replace notes')
@click.option('--field', 'field_values', multiple=True, help='FIELD_ID=VALUE (repeatable)')
@_handle_errors
@log_call
def clients_update(client_id, whatsapp, notes, field_values):
    """Edit a client"""
    updates = {}
    if whatsapp is not None:
        updates['whatsapp'] = whatsapp
    if notes is not None:
        updates['notes'] = notes
    if field_values:
        updates['field_values'] = _parse_field_values(field_values)

    if not updates:
        click.echo("No updates specified. Use --whatsapp, --notes or --field", err=True)
        return

    client = clients.update_client(client_id, updates)
    click.echo(f"✓ Updated client #{client.id}")


@clients_group.command('deactivate')
@click.argument('client_id', type=int)
@_handle_errors
@log_call
def clients_deactivate(client_id):
    """Soft-delete a client (history is kept)"""
    client = clients.deactivate_client(client_id)
    click.echo(f"✓ Deactivated client #{client.id}")


@clients_group.command('delete')
@click.argument('client_id', type=int)
@click.confirmation_option(prompt='Permanently delete this client and all of its history?')
@_handle_errors
@log_call
def clients_delete(client_id):
    """Permanently delete a client"""
    if clients.delete_client_permanently(client_id):
        click.echo(f"✓ Deleted client #{client_id}")
    else:
        click.echo(f"Client #{client_id} not found", err=True)


@clients_group.command('transfer')
@click.argument('client_id', type=int)
@click.argument('new_assignee_id', type=int)
@_handle_errors
@log_call
def clients_transfer(client_id, new_assignee_id):
    """Reassign a client and its open appointments"""
    clients.transfer_client(client_id, new_assignee_id)
    click.echo(f"✓ Client #{client_id} transferred to user #{new_assignee_id}")


@clients_group.command('history')
@click.argument('client_id', type=int)
@click.option('--page', default=1, help='Page number (default: 1)')
@click.option('--page-size', type=int, help='Results per page')
@_handle_errors
@log_call
def clients_history(client_id, page, page_size):
    """Show past interactions as recorded at the time"""
    result = clients.get_client_history(client_id, page=page, page_size=page_size)

    if not result.data:
        click.echo("No interactions yet.")
        return

    click.echo(f"\n{result.total} interactions:\n")
    for i in result.data:
        click.echo(f"[{format_datetime(i.ended_at)}] by user #{i.user_id}: {i.outcome}")
        click.echo(f"  {i.summary[:100]}")
        snapshot = i.snapshot
        if snapshot and snapshot.field_values:
            click.echo("  " + "; ".join(f"{fv.field_name}={fv.value}" for fv in snapshot.field_values))
        if snapshot and snapshot.tags:
            click.echo(f"  Tags: {', '.join(t.name for t in snapshot.tags)}")


# =============================================================================
# APPOINTMENT COMMANDS
# =============================================================================

@cli.group('appointments')
def appointments_group():
    """Schedule and close appointments"""
    pass


@appointments_group.command('list')
@click.option('--from', 'start_date', help='Scheduled at or after (ISO-8601)')
@click.option('--to', 'end_date', help='Scheduled at or before (ISO-8601)')
@click.option('--status', type=click.Choice(APPOINTMENT_STATUSES), help='Filter by status')
@click.option('--page', default=1, help='Page number (default: 1)')
@click.option('--page-size', type=int, help='Results per page')
@_handle_errors
@log_call
def appointments_list(start_date, end_date, status, page, page_size):
    """List appointments by scheduled time"""
    result = appointments.list_appointments(
        page=page, page_size=page_size, start_date=start_date, end_date=end_date, status=status,
    )

    if not result.data:
        click.echo("No appointments found.")
        return

    click.echo(f"\nShowing {len(result.data)} of {result.total} appointments:\n")
    click.echo(f"{'ID':<6} {'When':<18} {'Status':<10} {'Client':<20} {'Assignee':<20}")
    click.echo("-" * 80)
    for a in result.data:
        click.echo(
            f"{a.id:<6} {format_datetime(a.scheduled_at):<18} {a.status:<10} "
            f"{format_whatsapp(a.client_whatsapp or ''):<20} {(a.assignee_name or '')[:19]:<20}"
        )


@appointments_group.command('show')
@click.argument('appointment_id', type=int)
@_handle_errors
@log_call
def appointments_show(appointment_id):
    """Show an appointment with its client and outcome"""
    detail = appointments.get_appointment(appointment_id)
    a = detail.appointment

    click.echo(f"\n{'='*80}")
    click.echo(f"APPOINTMENT #{a.id}: {a.status}")
    click.echo(f"{'='*80}")
    click.echo(f"When:        {format_datetime(a.scheduled_at)}")
    click.echo(f"Assignee:    {detail.assignee.name if detail.assignee else a.assigned_to}")
    click.echo(f"Created by:  {detail.creator.name if detail.creator else a.created_by}")
    if a.cancel_reason:
        click.echo(f"Cancelled:   {format_datetime(a.cancelled_at)} ({a.cancel_reason})")
    if detail.client:
        click.echo(f"Client:      #{detail.client.id} {whatsapp_link(detail.client.whatsapp)}")
    if detail.interaction:
        click.echo(f"\nOutcome: {detail.interaction.outcome}")
        click.echo(f"Summary: {detail.interaction.summary}")
    click.echo()


@appointments_group.command('create')
@click.argument('client_id', type=int)
@click.option('--at', 'scheduled_at', required=True, help='When (ISO-8601, must be in the future)')
@user_option
@_handle_errors
@log_call
def appointments_create(client_id, scheduled_at, user_id):
    """Open an appointment for a client"""
    appointment = appointments.create_appointment(client_id, scheduled_at, _acting_user(user_id))
    click.echo(f"✓ Created appointment #{appointment.id} at {format_datetime(appointment.scheduled_at)}")


@appointments_group.command('reschedule')
@click.argument('appointment_id', type=int)
@click.option('--at', 'scheduled_at', required=True, help='New time (ISO-8601, must be in the future)')
@_handle_errors
@log_call
def appointments_reschedule(appointment_id, scheduled_at):
    """Move an open appointment"""
    appointment = appointments.reschedule_appointment(appointment_id, scheduled_at)
    click.echo(f"✓ Appointment #{appointment.id} moved to {format_datetime(appointment.scheduled_at)}")


@appointments_group.command('cancel')
@click.argument('appointment_id', type=int)
@click.option('--reason', required=True, help='Why it is cancelled')
@_handle_errors
@log_call
def appointments_cancel(appointment_id, reason):
    """Cancel an open appointment"""
    appointments.cancel_appointment(appointment_id, reason)
    click.echo(f"✓ Appointment #{appointment_id} cancelled")


@appointments_group.command('finalize')
@click.argument('appointment_id', type=int)
@click.option('--started', 'started_at', required=True, help='When the conversation started (ISO-8601)')
@click.option('--summary', required=True, help='What was discussed')
@click.option('--outcome', required=True, help='Result of the contact')
@click.option('--next', 'next_appointment_date', required=True, help='Next follow-up (ISO-8601, future)')
@user_option
@_handle_errors
@log_call
def appointments_finalize(appointment_id, started_at, summary, outcome, next_appointment_date, user_id):
    """Record the interaction and schedule the next follow-up"""
    result = appointments.finalize_appointment(
        appointment_id, _acting_user(user_id), started_at, summary, outcome, next_appointment_date,
    )
    click.echo(f"✓ Appointment #{appointment_id} done (interaction #{result.interaction.id})")
    click.echo(
        f"  Next: appointment #{result.next_appointment.id} "
        f"at {format_datetime(result.next_appointment.scheduled_at)}"
    )


# =============================================================================
# USER COMMANDS
# =============================================================================

@cli.group('users')
def users_group():
    """Manage users"""
    pass


@users_group.command('list')
@_handle_errors
@log_call
def users_list():
    """List users with their workload"""
    results = users.list_users()
    if not results:
        click.echo("No users yet.")
        return

    click.echo(f"{'ID':<6} {'Name':<25} {'Email':<30} {'Clients':<8} {'Open':<6} Status")
    click.echo("-" * 90)
    for u in results:
        click.echo(
            f"{u.id:<6} {u.name[:23]:<25} {u.email[:28]:<30} "
            f"{u.client_count or 0:<8} {u.open_appointment_count or 0:<6} "
            f"{'inactive' if u.banned else 'active'}"
        )


@users_group.command('show')
@click.argument('user_id', type=int)
@_handle_errors
@log_call
def users_show(user_id):
    """Show a user with assigned clients and open appointments"""
    detail = users.get_user(user_id)
    u = detail.user

    click.echo(f"\n{'='*80}")
    click.echo(f"USER #{u.id}: {u.name} <{u.email}>")
    click.echo(f"{'='*80}")
    if u.banned:
        click.echo(f"Inactive: {u.ban_reason or '(no reason given)'}")
    click.echo(f"\nClients ({len(detail.clients)}):")
    for c in detail.clients:
        click.echo(f"  #{c.id} {format_whatsapp(c.whatsapp)}")
    click.echo(f"\nOpen appointments ({len(detail.open_appointments)}):")
    for a in detail.open_appointments:
        click.echo(f"  #{a.id} client #{a.client_id} at {format_datetime(a.scheduled_at)}")
    click.echo()


@users_group.command('create')
@click.argument('name')
@click.argument('email')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@_handle_errors
@log_call
def users_create(name, email, password):
    """Create a user"""
    user = users.create_user(name, email, password)
    click.echo(f"✓ Created user #{user.id}: {user.name}")


@users_group.command('update')
@click.argument('user_id', type=int)
@click.option('--name', help='New name')
@click.option('--email', help='New email')
@_handle_errors
@log_call
def users_update(user_id, name, email):
    """Edit name or email"""
    updates = {k: v for k, v in {'name': name, 'email': email}.items() if v is not None}
    if not updates:
        click.echo("No updates specified. Use --name or --email", err=True)
        return
    user = users.update_user(user_id, updates)
    click.echo(f"✓ Updated user #{user.id}")


@users_group.command('reset-password')
@click.argument('user_id', type=int)
@click.option('--new-password', 'new_password', prompt=True, hide_input=True, confirmation_prompt=True)
@_handle_errors
@log_call
def users_reset_password(user_id, new_password):
    """Set a new password for a user"""
    users.reset_password(user_id, new_password)
    click.echo(f"✓ Password reset for user #{user_id}")


@users_group.command('deactivate')
@click.argument('target_id', type=int)
@click.option('--reason', help='Why the user is deactivated')
@user_option
@_handle_errors
@log_call
def users_deactivate(target_id, reason, user_id):
    """Deactivate a user (assignments are kept)"""
    users.deactivate_user(target_id, reason=reason, current_user_id=user_id)
    click.echo(f"✓ Deactivated user #{target_id}")


@users_group.command('reactivate')
@click.argument('user_id', type=int)
@_handle_errors
@log_call
def users_reactivate(user_id):
    """Reactivate a user"""
    users.reactivate_user(user_id)
    click.echo(f"✓ Reactivated user #{user_id}")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    cli()
