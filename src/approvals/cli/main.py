"""AsyncClick CLI for the approval engine.

Provides user-facing commands:
- check: Decide one operation intent
- assess: Show the risk score of an intent without deciding it
- batch: Decide a list of intents
- autonomous: Run an autonomous session over JSON-lines intents
- history: List persisted autonomous sessions
- audit: Verify the persisted decision log and show recent entries
- config: Print the effective configuration
"""

import json

import asyncclick as click
import structlog

from approvals.core.config import ApprovalConfig, load_config
from approvals.core.errors import ApprovalEngineError, ConfigError, MalformedIntentError
from approvals.core.intent import Decision, DecisionResult, RiskScore
from approvals.core.session import SESSION_PRESETS, SessionSummary
from approvals.engine import ApprovalEngine

logger = structlog.get_logger()

_MARKERS = {
    Decision.AUTO_APPROVE: "[+]",
    Decision.AUTO_APPROVE_WITH_LOG: "[+]",
    Decision.CONTEXTUAL_APPROVAL_NEEDED: "[?]",
    Decision.REQUIRE_APPROVAL: "[!]",
    Decision.BLOCK_WITH_WARNING: "[-]",
}


async def init_db(db_url: str):
    """Initialize database engine and session factory. Returns engine for cleanup."""
    from approvals.core.persistence.database import init_database, create_session_factory
    engine = await init_database(db_url)
    create_session_factory(engine)
    return engine


async def persist(engine: ApprovalEngine) -> dict[str, int]:
    from approvals.core.persistence.database import get_session
    async with get_session() as session:
        return await engine.persist(session)


def _load_json(text: str):
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}")


def _echo_risk(risk: RiskScore) -> None:
    click.echo(f"[*] Risk: {risk.value:.2f} ({risk.level.value})")
    for factor in risk.contributing_factors:
        click.echo(f"    - {factor}")
    click.echo(f"[*] Recommendation: {risk.recommendation}")


def _echo_result(result: DecisionResult) -> None:
    click.echo(f"{_MARKERS[result.decision]} {result.operation}: {result.decision.value}")
    click.echo(f"    Reason: {result.reason}")


def _echo_summary(summary: SessionSummary) -> None:
    click.echo(f"[+] Session {summary.session_id} {summary.end_reason.value}")
    click.echo(f"    Duration: {summary.duration_actual_ms / 60_000:.1f} minutes")
    click.echo(f"    Approved: {summary.approved_count}")
    click.echo(f"    Blocked: {summary.blocked_count}")


@click.group()
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="JSON rules file (default: $APPROVALS_CONFIG)")
@click.pass_context
async def cli(ctx, config_path: str | None):
    """Approval engine - risk-based approval for agent operations"""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except ConfigError as e:
        click.echo(f"[-] {e}")
        ctx.exit(1)


@cli.command()
@click.argument("intent_json")
@click.pass_context
async def check(ctx, intent_json: str):
    """Decide a single operation intent.

    Examples:
        approvals check '{"kind": "filesystem", "action": "edit", "targetPath": "src/app.js"}'
        approvals check '{"kind": "processInvocation", "commandText": "rm -rf /"}'
    """
    config: ApprovalConfig = ctx.obj["config"]
    engine = ApprovalEngine(config)

    try:
        result = engine.evaluate(_load_json(intent_json))
    except MalformedIntentError as e:
        click.echo(f"[-] {e}")
        ctx.exit(1)

    _echo_result(result)
    if result.risk is not None:
        _echo_risk(result.risk)

    db = await init_db(config.database_url)
    try:
        await persist(engine)
    except Exception as e:
        click.echo(f"[!] Decision not persisted: {e}")
    finally:
        await db.dispose()


@cli.command()
@click.argument("intent_json")
@click.pass_context
async def assess(ctx, intent_json: str):
    """Show the risk score of an intent without deciding it."""
    engine = ApprovalEngine(ctx.obj["config"])
    try:
        risk = engine.assess(_load_json(intent_json))
    except MalformedIntentError as e:
        click.echo(f"[-] {e}")
        ctx.exit(1)
    _echo_risk(risk)


@cli.command()
@click.argument("intents_json")
@click.pass_context
async def batch(ctx, intents_json: str):
    """Decide a JSON array of operation intents as one batch."""
    config: ApprovalConfig = ctx.obj["config"]
    engine = ApprovalEngine(config)

    intents = _load_json(intents_json)
    if not isinstance(intents, list):
        click.echo("[-] Batch input must be a JSON array of intents")
        ctx.exit(1)

    try:
        result = engine.process_batch(intents)
    except MalformedIntentError as e:
        click.echo(f"[-] {e}")
        ctx.exit(1)

    for group in result.groups:
        marker = "[+]" if group.auto_approved else "[*]"
        click.echo(f"{marker} Group {group.kind.value}/{group.action}: "
                   f"{group.batch_type.value} ({len(group.results)} operations)")
    for item in result.results:
        _echo_result(item)

    click.echo(f"\n[+] Approved: {len(result.approved)}")
    click.echo(f"[!] Needs approval: {len(result.needs_approval)}")
    if result.combined_risk is not None:
        click.echo(f"[*] Combined risk: {result.combined_risk:.2f}")
    click.echo(f"[*] {result.recommendation}: {result.message}")

    db = await init_db(config.database_url)
    try:
        await persist(engine)
    except Exception as e:
        click.echo(f"[!] Decisions not persisted: {e}")
    finally:
        await db.dispose()


@cli.command()
@click.argument("input_file", type=click.File("r"), default="-")
@click.option("--minutes", "-m", type=click.IntRange(min=1), default=None,
              help="Session length in minutes")
@click.option("--quick", "preset", flag_value="quick", help="30 minute session")
@click.option("--focus", "preset", flag_value="focus", help="180 minute session")
@click.option("--marathon", "preset", flag_value="marathon", help="240 minute session")
@click.pass_context
async def autonomous(ctx, input_file, minutes: int | None, preset: str | None):
    """Run an autonomous session over JSON-lines intents.

    Reads one intent per line from INPUT_FILE (stdin by default), decides
    each with the relaxed session thresholds, then stops the session and
    persists its summary.

    Examples:
        approvals autonomous --quick intents.jsonl
        cat intents.jsonl | approvals autonomous -m 45
    """
    config: ApprovalConfig = ctx.obj["config"]
    engine = ApprovalEngine(config)

    if minutes is None:
        minutes = SESSION_PRESETS[preset] if preset else config.default_session_minutes

    session_id = engine.start_autonomous_session(minutes * 60_000)
    click.echo(f"[*] Autonomous session {session_id} started ({minutes} minutes)")

    try:
        for line_number, line in enumerate(input_file, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                result = engine.evaluate(json.loads(line))
            except (json.JSONDecodeError, MalformedIntentError) as e:
                click.echo(f"[-] Line {line_number} skipped: {e}")
                continue
            _echo_result(result)
    finally:
        try:
            summary = engine.stop_autonomous_session()
        except ApprovalEngineError:
            # expired while reading input
            history = engine.session_history()
            summary = history[-1] if history else None

    if summary is not None:
        _echo_summary(summary)

    db = await init_db(config.database_url)
    try:
        await persist(engine)
    except Exception as e:
        click.echo(f"[!] Session not persisted: {e}")
    finally:
        await db.dispose()


@cli.command()
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, help="Number of sessions")
@click.pass_context
async def history(ctx, limit: int):
    """List persisted autonomous sessions, newest first."""
    config: ApprovalConfig = ctx.obj["config"]
    db = await init_db(config.database_url)

    try:
        from approvals.core.persistence.database import get_session
        from approvals.core.persistence.sessions import list_session_summaries

        async with get_session() as session:
            summaries = await list_session_summaries(session, limit=limit)

        if not summaries:
            click.echo("[*] No autonomous sessions recorded")
            return
        for summary in summaries:
            click.echo(f"{summary.session_id}  {summary.started_at:%Y-%m-%d %H:%M}  "
                       f"{summary.duration_actual_ms / 60_000:.1f}m  "
                       f"approved={summary.approved_count} blocked={summary.blocked_count}  "
                       f"{summary.end_reason.value}")
    except Exception as e:
        click.echo(f"[-] Error reading session history: {e}")
        ctx.exit(1)
    finally:
        await db.dispose()


@cli.command()
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, help="Number of entries")
@click.pass_context
async def audit(ctx, limit: int):
    """Verify the decision log hash chain and show recent entries."""
    config: ApprovalConfig = ctx.obj["config"]
    db = await init_db(config.database_url)

    try:
        from approvals.core.persistence.audit import list_audit_entries, verify_audit_chain
        from approvals.core.persistence.database import get_session

        async with get_session() as session:
            intact = await verify_audit_chain(session)
            entries = await list_audit_entries(session, limit=limit)

        if intact:
            click.echo("[+] Audit chain intact")
        else:
            click.echo("[-] Audit chain verification FAILED")
        for entry in entries:
            risk = f"{entry.risk_score:.2f}" if entry.risk_score is not None else "-"
            click.echo(f"{entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.decision:<26} {risk:>5}  "
                       f"{entry.operation_key}")
        if not intact:
            ctx.exit(1)
    finally:
        await db.dispose()


@cli.command("config")
@click.pass_context
async def show_config(ctx):
    """Print the effective configuration as JSON."""
    config: ApprovalConfig = ctx.obj["config"]
    click.echo(config.model_dump_json(by_alias=True, indent=2))


if __name__ == "__main__":
    cli()
