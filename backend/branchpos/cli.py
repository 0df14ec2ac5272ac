# Overview: Flask CLI command groups for tenant bootstrap and branch migration.

# backend/branchpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to branchpos:create_app (PowerShell: $env:FLASK_APP="branchpos:create_app").
# - Use: python -m flask <group> <command> [options]
#
# Tenant bootstrap:
# - python -m flask tenants init --tenant-id shop-1 --admin-id admin-1 [--admin-name "Owner"] [--branch main]
#   Idempotent: creates an empty tenant document with one admin user (and optional first branch).
# - python -m flask tenants show --tenant-id shop-1
#   Print collection counts and the current revision.
#
# Branch migration:
# - python -m flask branches check --tenant-id shop-1
#   Print whether any inventory, transactions or non-admin users lack a branch.
# - python -m flask branches migrate --tenant-id shop-1 --default-branch main
#   Assign the default branch to every unassigned record (one write).

import click
from flask.cli import with_appcontext

from .schemas import Branch, StoreUser, ROLE_ADMIN
from .services import migration_service
from .services.document_store_service import (
    create_tenant_document,
    read_tenant_snapshot,
    tenant_exists,
    write_tenant_snapshot,
)
from .services.tenant_service import TenantContext, context_from_snapshot, TenantAccessError
from .validation import ValidationError


def _admin_context(tenant_id: str) -> TenantContext:
    """CLI runs as the tenant's first active admin."""
    if not tenant_exists(tenant_id):
        raise click.ClickException(f"Tenant {tenant_id!r} not found")
    snapshot = read_tenant_snapshot(tenant_id)
    admin = next((u for u in snapshot.users if u.is_admin and u.is_active), None)
    if admin is None:
        raise click.ClickException(f"Tenant {tenant_id!r} has no active admin user")
    try:
        return context_from_snapshot(snapshot, admin.id)
    except TenantAccessError as e:
        raise click.ClickException(str(e))


@click.group('tenants')
def tenants_group():
    """Tenant document bootstrap and inspection."""


@tenants_group.command('init')
@click.option('--tenant-id', required=True, help='Tenant id')
@click.option('--admin-id', required=True, help='Admin operator id')
@click.option('--admin-name', default='Admin', help='Admin display name')
@click.option('--branch', 'branch_id', default=None, help='Optional first branch id')
@with_appcontext
def init_tenant(tenant_id, admin_id, admin_name, branch_id):
    """
    Create the tenant document with an admin user (idempotent).
    Existing documents are left as they are, apart from adding a missing
    admin user or branch.
    """
    snapshot = create_tenant_document(tenant_id)
    changed = []

    if snapshot.find_user(admin_id) is None:
        snapshot.users.append(StoreUser(id=admin_id, name=admin_name, role=ROLE_ADMIN))
        changed.append("users")
        click.echo(f"+ Admin user {admin_id}")
    else:
        click.echo(f"= Admin user {admin_id} exists")

    if branch_id and not any(b.id == branch_id for b in snapshot.branches):
        snapshot.branches.append(Branch(id=branch_id, name=branch_id))
        changed.append("branches")
        click.echo(f"+ Branch {branch_id}")

    if changed:
        write_tenant_snapshot(snapshot, changed=tuple(changed))
    click.echo(f"[OK] Tenant {tenant_id} ready (revision {snapshot.revision})")


@tenants_group.command('show')
@click.option('--tenant-id', required=True, help='Tenant id')
@with_appcontext
def show_tenant(tenant_id):
    """Print collection counts and revision."""
    if not tenant_exists(tenant_id):
        raise click.ClickException(f"Tenant {tenant_id!r} not found")
    snapshot = read_tenant_snapshot(tenant_id)
    click.echo(f"Tenant {tenant_id} (revision {snapshot.revision})")
    click.echo(f"  branches:     {len(snapshot.branches)}")
    click.echo(f"  users:        {len(snapshot.users)}")
    click.echo(f"  inventory:    {len(snapshot.inventory)}")
    click.echo(f"  transactions: {len(snapshot.transactions)}")
    click.echo(f"  customers:    {len(snapshot.customers)}")


@click.group('branches')
def branches_group():
    """Branch assignment checks and migration."""


@branches_group.command('check')
@click.option('--tenant-id', required=True, help='Tenant id')
@with_appcontext
def check_migration(tenant_id):
    """Report records that lack a branch."""
    ctx = _admin_context(tenant_id)
    status = migration_service.migration_status(ctx)
    if not status["migration_needed"]:
        click.echo("No migration needed - all data has a branch")
        return
    click.echo("Migration needed:")
    for collection, count in status["unassigned"].items():
        click.echo(f"  {collection}: {count} unassigned")


@branches_group.command('migrate')
@click.option('--tenant-id', required=True, help='Tenant id')
@click.option('--default-branch', 'default_branch_id', required=True, help='Branch id to assign')
@with_appcontext
def run_migration(tenant_id, default_branch_id):
    """Assign the default branch to all unassigned records."""
    ctx = _admin_context(tenant_id)
    try:
        count = migration_service.migrate(ctx, default_branch_id)
    except ValidationError as e:
        raise click.ClickException(str(e))
    click.echo(f"[OK] Migration complete: {count} records updated")


def register_commands(app):
    app.cli.add_command(tenants_group)
    app.cli.add_command(branches_group)
