"""ABOUTME: CLI commands for two-factor operations and reporting
ABOUTME: Shows an admin's 2FA status, audit summary and suspicious activity, plus system-wide stats"""

from datetime import UTC, datetime

import click

from choma_admin.config import TwoFactorCfg
from choma_admin.service_layer import audit_service
from choma_admin.service_layer.unit_of_work import SqlAlchemyUnitOfWork


def _uow(ctx: click.Context) -> SqlAlchemyUnitOfWork:
    return SqlAlchemyUnitOfWork(ctx.obj.get("session_factory"))


@click.group("two-factor")
def two_factor() -> None:
    """Two-factor authentication reporting commands."""
    pass


@two_factor.command("status")
@click.argument("account_id")
@click.pass_context
def status(ctx: click.Context, account_id: str) -> None:
    """Show the 2FA state of one admin account."""
    with _uow(ctx) as uow:
        account = uow.two_factor_accounts.get_by_account_id(account_id)
        if account is None:
            click.echo(f"No 2FA record for {account_id}")
            return

        locked_until = account.lockout.locked_until
        click.echo(f"2FA record for {account_id}:")
        click.echo(f"  Enabled: {'yes' if account.is_enabled else 'no'}")
        click.echo(f"  Setup pending: {'yes' if account.has_pending_setup else 'no'}")
        click.echo(f"  Setup date: {account.setup_date or '-'}")
        click.echo(f"  Last verified: {account.last_verified or '-'}")
        click.echo(f"  Backup codes remaining: {account.backup_codes_remaining}")
        click.echo(f"  Active trusted devices: {len(account.active_trusted_devices(datetime.now(UTC)))}")
        click.echo(f"  Failed attempts: {account.lockout.failed_attempts}/{account.lockout.max_attempts}")
        if locked_until is not None:
            click.echo(f"  Locked until: {locked_until}")
        click.echo(f"  Recovery requests: {account.recovery.recovery_attempts}")


@two_factor.command("audit-summary")
@click.argument("account_id")
@click.option("--days", default=30, show_default=True, help="Trailing window in days")
@click.pass_context
def audit_summary(ctx: click.Context, account_id: str, days: int) -> None:
    """Summarise an admin's audit trail by action."""
    summary = audit_service.get_audit_summary(_uow(ctx), account_id, days=days)
    if not summary:
        click.echo(f"No 2FA activity for {account_id} in the last {days} days")
        return

    click.echo(f"2FA activity for {account_id} in the last {days} days:")
    for item in summary:
        click.echo(
            f"  {item.action.value}: {item.count} "
            f"(ok {item.success_count}, failed {item.failure_count}, high risk {item.high_risk_count}, "
            f"success rate {item.success_rate}%)"
        )


@two_factor.command("suspicious")
@click.argument("account_id")
@click.option("--hours", default=24, show_default=True, help="Trailing window in hours")
@click.pass_context
def suspicious(ctx: click.Context, account_id: str, hours: int) -> None:
    """Check an admin account for suspicious 2FA activity."""
    report = audit_service.get_suspicious_activity(
        _uow(ctx), account_id, hours=hours, failure_threshold=TwoFactorCfg.from_env().suspicious_failure_threshold
    )
    if not report.is_suspicious:
        click.echo(click.style(f"✓ Nothing suspicious for {account_id} in the last {hours} hours", "green"))
    else:
        click.echo(click.style(f"⚠️  Suspicious activity for {account_id}:", "yellow"))
        for reason in report.reasons:
            click.echo(f"  - {reason}")

    for entry in report.entries:
        outcome = "ok" if entry.success else f"failed ({entry.failure_reason})"
        click.echo(
            f"  {entry.created_at.isoformat()} {entry.action.value} {outcome} "
            f"risk={entry.risk_level.value} ip={entry.ip_address or '-'}"
        )


@two_factor.command("stats")
@click.option("--days", default=30, show_default=True, help="Trailing window in days for event metrics")
@click.pass_context
def stats(ctx: click.Context, days: int) -> None:
    """Show system-wide enrollment and audit metrics."""
    enrollment = audit_service.get_enrollment_stats(_uow(ctx))
    metrics = audit_service.get_system_metrics(_uow(ctx), days=days)

    click.echo("Enrollment:")
    click.echo(f"  2FA records: {enrollment['total_records']}")
    click.echo(f"  Enabled: {enrollment['enabled']} ({enrollment['enabled_percentage']}%)")
    click.echo(f"  Setup pending: {enrollment['pending_setup']}")
    click.echo(f"Events in the last {days} days:")
    click.echo(f"  Total: {metrics['total_events']} (success rate {metrics['success_rate']}%)")
    click.echo(f"  Accounts: {metrics['unique_accounts']}")
    for level, count in metrics["risk_breakdown"].items():
        click.echo(f"  {level} risk: {count}")
