"""CLI interface for the firmware rollout engine."""

import click
import json
import sys

from firmware_rollout import __version__
from firmware_rollout.config import get_config
from firmware_rollout.exceptions import FirmwareRolloutError
from firmware_rollout.logging_config import setup_logging
from firmware_rollout.models import ManagementProtocol, RiskTolerance, Strategy
from firmware_rollout.work_dir_resolver import resolve_work_dir, ENV_VAR_NAME


@click.group()
@click.version_option(version=__version__)
@click.option('--work-dir', type=click.Path(),
              help=f'Working directory. Priority: CLI flag > {ENV_VAR_NAME} env var > ~/.firmware-rollout.config.json > /opt/firmware-rollout')
@click.pass_context
def main(ctx, work_dir):
    """Firmware Rollout - gap analysis and rolling firmware updates."""
    ctx.ensure_object(dict)

    resolution = resolve_work_dir(cli_work_dir=work_dir)

    config = get_config(work_dir=resolution.path)
    ctx.obj['config'] = config
    ctx.obj['work_dir_resolution'] = resolution

    log_dir = config.get_path("logs")
    logger = setup_logging(log_dir, config.log_level, console_output=True)
    ctx.obj['logger'] = logger

    logger.info(resolution.log_message())
    logger.info(f"Configuration loaded: {config.config_file}")


def _service(ctx):
    """Build the service once per invocation."""
    from firmware_rollout.service import FirmwareRolloutService

    if 'service' not in ctx.obj:
        try:
            ctx.obj['service'] = FirmwareRolloutService.from_config(ctx.obj['config'])
        except FirmwareRolloutError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return ctx.obj['service']


def _fail(ctx, message):
    ctx.obj['logger'].error(message)
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _daemon_running(config) -> bool:
    """Whether a daemon reported itself as running."""
    from firmware_rollout import constants
    from firmware_rollout.utils.file_ops import safe_read_json

    status = safe_read_json(config.get_path(constants.STATUS_DAEMON_FILE))
    return bool(status.get("running", False))


def _queue_command(ctx, command, **fields):
    """
    Drop a command file for the daemon.

    Returns:
        Path of the written command file
    """
    import uuid
    from firmware_rollout import constants
    from firmware_rollout.models import utc_now_iso
    from firmware_rollout.utils.file_ops import atomic_write_json

    config = ctx.obj['config']
    command_id = f"cli-{uuid.uuid4()}"
    command_file = config.get_path(constants.DIR_COMMANDS_INCOMING) / f"{command_id}.json"
    data = {"command_id": command_id, "command": command, "created_at": utc_now_iso()}
    data.update(fields)

    try:
        atomic_write_json(command_file, data)
    except OSError as e:
        _fail(ctx, f"Cannot queue {command}: {e}")
    ctx.obj['logger'].info(f"Queued {command} command {command_id}")
    return command_file


# ============================================================================
# Analysis Commands
# ============================================================================

@main.group()
def analyze():
    """Firmware gap and cluster analysis."""
    pass


@analyze.command(name='gaps')
@click.argument('host_ids', nargs=-1)
@click.option('--all', 'all_hosts', is_flag=True, help='Analyse every host in the inventory')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def analyze_gaps(ctx, host_ids, all_hosts, as_json):
    """Show the firmware gap of hosts.

    Examples:

        firmware-rollout analyze gaps esx-01 esx-02

        firmware-rollout analyze gaps --all --json
    """
    service = _service(ctx)
    host_ids = _select_hosts(ctx, service, host_ids, all_hosts)
    gaps, failures = service.analyze_hosts(host_ids)

    if as_json:
        _echo_json({"gaps": [g.to_dict() for g in gaps], "failures": failures})
        return

    for gap in gaps:
        click.echo(f"{gap.host_id} ({gap.model}, cluster {gap.cluster_name or 'standalone'}):")
        click.echo(f"  Risk: {gap.compatibility_risk}")
        click.echo(f"  Update Time: {gap.total_update_time_minutes} min")
        if not gap.update_sequence:
            click.echo("  Up to date")
        for step in gap.update_sequence:
            click.echo(f"  {step.step_number}. {step.component_type} {step.from_version} -> {step.to_version}"
                       f" ({step.duration_minutes} min{', reboot' if step.requires_reboot else ''})")
        for error in gap.analysis_errors:
            click.echo(f"  ! {error.phase}: {error.message}")

    for host_id, reason in failures.items():
        click.echo(f"{host_id}: FAILED - {reason}", err=True)

    if failures and not gaps:
        sys.exit(1)


@analyze.command(name='clusters')
@click.argument('host_ids', nargs=-1)
@click.option('--all', 'all_hosts', is_flag=True, help='Analyse every host in the inventory')
@click.option('--max-parallel-hosts', type=int, help='Requested hosts per batch')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def analyze_clusters(ctx, host_ids, all_hosts, max_parallel_hosts, as_json):
    """Show rolling-update feasibility of the hosts' clusters."""
    service = _service(ctx)
    host_ids = _select_hosts(ctx, service, host_ids, all_hosts)
    gaps = service.analyze_gaps(host_ids)
    analyses = service.analyze_cluster_compatibility(gaps, max_parallel_hosts)

    if as_json:
        _echo_json([a.to_dict() for a in analyses])
        return

    for analysis in analyses:
        click.echo(f"Cluster {analysis.cluster_name}:")
        click.echo(f"  Hosts: {analysis.total_hosts} (min active {analysis.min_active_hosts})")
        click.echo(f"  Max Simultaneous Updates: {analysis.max_simultaneous_updates}")
        click.echo(f"  Estimated Duration: {analysis.estimated_cluster_update_duration_hours} h")
        click.echo(f"  Rolling Update Feasible: {analysis.rolling_update_feasible}")
        for warning in analysis.warnings:
            click.echo(f"  Warning: {warning}")


def _select_hosts(ctx, service, host_ids, all_hosts):
    if all_hosts:
        inventory = service.gap_analyzer.inventory
        return [h.host_id for h in inventory.list_hosts()] if inventory else []
    if not host_ids:
        _fail(ctx, "Specify host ids or --all")
    return list(host_ids)


# ============================================================================
# Plan Commands
# ============================================================================

@main.group()
def plan():
    """Create and run orchestration plans."""
    pass


@plan.command(name='create')
@click.argument('host_ids', nargs=-1)
@click.option('--all', 'all_hosts', is_flag=True, help='Plan every host in the inventory')
@click.option('--strategy', type=click.Choice([s.value for s in Strategy]),
              default=Strategy.IMMEDIATE.value, show_default=True)
@click.option('--risk', type=click.Choice([r.value for r in RiskTolerance]),
              default=RiskTolerance.BALANCED.value, show_default=True, help='Risk tolerance')
@click.option('--max-parallel-clusters', type=int, default=1, show_default=True)
@click.option('--max-parallel-hosts', type=int, default=1, show_default=True,
              help='Hosts updated at once in a cluster')
@click.option('--approval/--no-approval', default=True, show_default=True,
              help='Require manual approval before execution')
@click.option('--respect-windows', is_flag=True, help='Only start phases inside maintenance windows')
@click.option('--scheduled-start', help='Start time (ISO 8601) for the scheduled strategy')
@click.option('--protocol', type=click.Choice([p.value for p in ManagementProtocol]),
              help='Preferred management protocol')
@click.option('--fallback/--no-fallback', default=True, show_default=True,
              help='Fall back to other protocols on recoverable errors')
@click.option('--rollback/--no-rollback', default=True, show_default=True,
              help='Halt the plan when a host fails')
@click.option('--health-gate/--no-health-gate', default=True, show_default=True,
              help='Check hardware health before updating each host')
@click.option('--skip-compatibility-validation', is_flag=True,
              help='Skip cluster capacity and version compatibility checks')
@click.pass_context
def create_plan(ctx, host_ids, all_hosts, strategy, risk, max_parallel_clusters, max_parallel_hosts,
                approval, respect_windows, scheduled_start, protocol, fallback, rollback,
                health_gate, skip_compatibility_validation):
    """Analyse hosts and build an orchestration plan.

    Examples:

        firmware-rollout plan create --all --strategy smart_rolling --max-parallel-hosts 2

        firmware-rollout plan create esx-01 --strategy scheduled --scheduled-start 2026-11-01T02:00:00Z
    """
    from firmware_rollout.models import OrchestrationConfig

    logger = ctx.obj['logger']
    service = _service(ctx)
    host_ids = _select_hosts(ctx, service, host_ids, all_hosts)

    orchestration_config = OrchestrationConfig(
        strategy=strategy,
        risk_tolerance=risk,
        max_parallel_clusters=max_parallel_clusters,
        max_parallel_hosts_per_cluster=max_parallel_hosts,
        require_manual_approval=approval,
        respect_maintenance_windows=respect_windows,
        scheduled_start=scheduled_start,
        compatibility_validation=not skip_compatibility_validation,
        rollback_on_failure=rollback,
        preferred_protocol=protocol,
        enable_fallback=fallback,
        hardware_health_gate=health_gate,
    )

    gaps, failures = service.analyze_hosts(host_ids)
    for host_id, reason in failures.items():
        click.echo(f"Skipping {host_id}: {reason}", err=True)

    try:
        plan = service.plan_orchestration(gaps, orchestration_config)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))

    logger.info(f"Plan {plan.id} created")
    click.echo(f"Plan created: {plan.id}")
    click.echo(f"  Status: {plan.status}")
    click.echo(f"  Phases: {len(plan.phases)}")
    click.echo(f"  Estimated Duration: {plan.total_duration_hours} h")
    for warning in plan.warnings:
        click.echo(f"  Warning: {warning}")
    if plan.status == "pending_approval":
        click.echo(f"\nApprove with: firmware-rollout plan approve {plan.id}")


@plan.command(name='list')
@click.option('--status', help='Filter by status')
@click.pass_context
def list_plans(ctx, status):
    """List saved plans."""
    from firmware_rollout.store import StateStore

    plans = StateStore(ctx.obj['config'].work_dir).list_plans(status)
    if not plans:
        click.echo("No plans found")
        return
    for plan in plans:
        click.echo(f"{plan.id}  {plan.status:<17} {plan.config.strategy:<18} "
                   f"{len(plan.phases)} phase(s)  created {plan.created_at}")


@plan.command(name='show')
@click.argument('plan_id')
@click.pass_context
def show_plan(ctx, plan_id):
    """Show a plan as JSON."""
    from firmware_rollout.store import StateStore

    try:
        plan = StateStore(ctx.obj['config'].work_dir).load_plan(plan_id)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))
    _echo_json(plan.to_dict())


@plan.command(name='report')
@click.argument('plan_id')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.pass_context
def plan_report(ctx, plan_id, as_json):
    """Show execution progress of a plan."""
    service = _service(ctx)
    try:
        report = service.get_plan_report(plan_id)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))

    if as_json:
        _echo_json(report)
        return

    click.echo(f"Plan {report['plan_id']}:")
    click.echo(f"  Status: {report['status']}")
    click.echo(f"  Strategy: {report['strategy']} ({report['risk_tolerance']})")
    click.echo(f"  Hosts: {report['hosts_updated']}/{report['hosts_total']} updated, "
               f"{report['hosts_failed']} failed")
    if report['failure_reason']:
        click.echo(f"  Failure Reason: {report['failure_reason']}")
    for phase in report['phases']:
        click.echo(f"  Phase {phase['phase_number']} {phase['cluster_name']}: {phase['status']} "
                   f"({phase['hosts_processed']}/{phase['hosts']} hosts)")
    for alert in report['alerts']:
        click.echo(f"  ALERT: {alert}")


@plan.command(name='log')
@click.argument('plan_id')
@click.pass_context
def plan_log(ctx, plan_id):
    """Show the execution log of a plan."""
    service = _service(ctx)
    try:
        entries = service.get_execution_log(plan_id)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))
    for entry in entries:
        click.echo(json.dumps(entry, default=str))


@plan.command(name='approve')
@click.argument('plan_id')
@click.pass_context
def approve_plan(ctx, plan_id):
    """Approve a plan awaiting manual approval."""
    service = _service(ctx)
    try:
        plan = service.approve_plan(plan_id)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))
    ctx.obj['logger'].info(f"Plan {plan_id} approved")
    click.echo(f"Plan {plan.id}: {plan.status}")


def _plan_control(ctx, plan_id, command, operation):
    """Run a plan operation here, or hand it to the daemon when one is running."""
    if _daemon_running(ctx.obj['config']):
        command_file = _queue_command(ctx, command, plan_id=plan_id)
        click.echo(f"Queued {command} for plan {plan_id} ({command_file.name})")
        return

    try:
        plan = operation(plan_id)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))
    click.echo(f"Plan {plan.id}: {plan.status}")


@plan.command(name='execute')
@click.argument('plan_id')
@click.option('--wait', is_flag=True, help='Run in this process until the plan finishes')
@click.pass_context
def execute_plan(ctx, plan_id, wait):
    """Execute an approved plan.

    Without --wait the plan is handed to the daemon.
    """
    if wait:
        service = _service(ctx)
        try:
            plan = service.execute_plan(plan_id, wait=True)
        except FirmwareRolloutError as e:
            _fail(ctx, str(e))
        click.echo(f"Plan {plan.id}: {plan.status}")
        if plan.failure_reason:
            click.echo(f"  Failure Reason: {plan.failure_reason}")
        if plan.status == "failed":
            sys.exit(1)
        return

    command_file = _queue_command(ctx, "execute_plan", plan_id=plan_id)
    click.echo(f"Queued execution of plan {plan_id} ({command_file.name})")
    if not _daemon_running(ctx.obj['config']):
        click.echo("Warning: daemon does not appear to be running; start it with: "
                   "firmware-rollout daemon start")


@plan.command(name='pause')
@click.argument('plan_id')
@click.pass_context
def pause_plan(ctx, plan_id):
    """Pause a running plan after its current batches."""
    _plan_control(ctx, plan_id, "pause_plan", lambda p: _service(ctx).pause_plan(p))


@plan.command(name='resume')
@click.argument('plan_id')
@click.pass_context
def resume_plan(ctx, plan_id):
    """Resume a paused plan."""
    if _daemon_running(ctx.obj['config']):
        _plan_control(ctx, plan_id, "resume_plan", None)
        return
    try:
        plan = _service(ctx).resume_plan(plan_id, wait=True)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))
    click.echo(f"Plan {plan.id}: {plan.status}")


@plan.command(name='cancel')
@click.argument('plan_id')
@click.pass_context
def cancel_plan(ctx, plan_id):
    """Cancel a plan."""
    _plan_control(ctx, plan_id, "cancel_plan", lambda p: _service(ctx).cancel_plan(p))


# ============================================================================
# Job Commands
# ============================================================================

@main.group()
def job():
    """Inspect and cancel update jobs."""
    pass


@job.command(name='list')
@click.option('--plan', 'plan_id', help='Only jobs of this plan')
@click.pass_context
def list_jobs(ctx, plan_id):
    """List update jobs."""
    from firmware_rollout.store import StateStore

    jobs = StateStore(ctx.obj['config'].work_dir).list_jobs(plan_id)
    if not jobs:
        click.echo("No jobs found")
        return
    for update_job in jobs:
        click.echo(f"{update_job.id}  {update_job.host_id:<20} {update_job.status:<13} "
                   f"{update_job.progress:>3}%  {update_job.protocol or '-'}")


@job.command(name='status')
@click.argument('job_id')
@click.option('--json', 'as_json', is_flag=True, help='Print the progress as JSON')
@click.pass_context
def job_status(ctx, job_id, as_json):
    """Show job progress."""
    from firmware_rollout.store import StateStore

    try:
        progress = StateStore(ctx.obj['config'].work_dir).load_job(job_id).to_progress()
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))

    if as_json:
        _echo_json(progress.to_dict())
        return

    click.echo(f"Job {progress.job_id}:")
    click.echo(f"  Host: {progress.host_id}")
    click.echo(f"  Status: {progress.status}")
    click.echo(f"  Progress: {progress.progress}%")
    click.echo(f"  Step: {progress.current_step}/{progress.total_steps} {progress.component_type}")
    click.echo(f"  Protocol: {progress.protocol or 'N/A'} ({progress.fallback_count} fallback(s))")
    if progress.estimated_completion:
        click.echo(f"  Estimated Completion: {progress.estimated_completion}")
    if progress.error:
        click.echo(f"  Error: {progress.error}")


@job.command(name='cancel')
@click.argument('job_id')
@click.pass_context
def cancel_job(ctx, job_id):
    """Cancel a job that has not started flashing."""
    logger = ctx.obj['logger']
    logger.info(f"Cancelling job {job_id}", extra={'job_id': job_id})

    if _daemon_running(ctx.obj['config']):
        command_file = _queue_command(ctx, "cancel_job", job_id=job_id)
        click.echo(f"Queued cancellation of job {job_id} ({command_file.name})")
        return

    try:
        update_job = _service(ctx).cancel_job(job_id)
    except FirmwareRolloutError as e:
        _fail(ctx, str(e))
    click.echo(f"Job {update_job.id}: {update_job.status}")


# ============================================================================
# Daemon Commands
# ============================================================================

@main.group()
def daemon():
    """Manage the rollout daemon."""
    pass


@daemon.command()
@click.option('--workers', type=int, help='Number of worker threads')
@click.pass_context
def start(ctx, workers):
    """Start the rollout daemon."""
    from firmware_rollout.daemon import run_daemon

    config = ctx.obj['config']
    logger = ctx.obj['logger']

    if workers is not None:
        config.set('workers.max', workers)

    logger.info(f"Starting daemon with {config.max_workers} workers")
    click.echo(f"Starting firmware rollout daemon with {config.max_workers} workers...")

    try:
        run_daemon(config)
    except KeyboardInterrupt:
        click.echo("\nShutting down daemon...")
    except FirmwareRolloutError as e:
        click.echo(f"Error starting daemon: {e}", err=True)
        logger.error(f"Daemon startup error: {e}", exc_info=True)
        sys.exit(1)


@daemon.command()
@click.pass_context
def status(ctx):
    """Show daemon status."""
    from firmware_rollout import constants
    from firmware_rollout.utils.file_ops import safe_read_json

    config = ctx.obj['config']
    status_file = config.get_path(constants.STATUS_DAEMON_FILE)
    daemon_status = safe_read_json(status_file)

    if not daemon_status:
        click.echo("Daemon Status: Not running or status file not found")
        click.echo(f"  Expected status file: {status_file}")
        return

    click.echo("Daemon Status:")
    click.echo(f"  Running: {daemon_status.get('running', False)}")
    click.echo(f"  Workers: {daemon_status.get('workers', 0)}")
    click.echo(f"  Running Plans: {daemon_status.get('running_plans', 0)}")
    click.echo(f"  Started At: {daemon_status.get('started_at', 'N/A')}")
    click.echo(f"  Last Updated: {daemon_status.get('last_updated', 'N/A')}")

    workers = safe_read_json(config.get_path(constants.STATUS_WORKERS_FILE)).get("workers", [])
    for worker in workers:
        label = f" ({worker.get('current_label')})" if worker.get('current_label') else ""
        click.echo(f"  Worker {worker.get('worker_id')}: {worker.get('status')}{label}")


# ============================================================================
# Configuration Commands
# ============================================================================

@main.group()
def config():
    """Manage configuration."""
    pass


@config.command(name='set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def set_config(ctx, key, value):
    """Set configuration value.

    VALUE is parsed as JSON when possible, so numbers, booleans and lists
    keep their type.
    """
    config = ctx.obj['config']
    logger = ctx.obj['logger']

    try:
        value = json.loads(value)
    except ValueError:
        pass

    config.set(key, value)
    logger.info(f"Configuration updated: {key} = {value}")
    click.echo(f"Set {key} = {value}")


@config.command()
@click.pass_context
def show(ctx):
    """Show current configuration."""
    config = ctx.obj['config']

    click.echo("Current Configuration:")
    click.echo(f"  Work Directory: {config.work_dir}")
    click.echo(f"  Catalog File: {config.catalog_file}")
    click.echo(f"  Compatibility Matrix: {config.compatibility_matrix_file}")
    click.echo(f"  Inventory File: {config.inventory_file}")
    click.echo(f"  vCenter: {config.vcenter_url or '(not set)'}")
    click.echo(f"  vCenter Password: {'*' * 20 if config.get('vcenter.password') else '(not set)'}")
    click.echo(f"  Protocols: {', '.join(config.enabled_protocols)}")
    click.echo(f"  Min Active Ratio: {config.min_active_ratio}")
    click.echo(f"  Maintenance Windows: {len(config.maintenance_windows)}")
    click.echo(f"  Max Workers: {config.max_workers}")
    click.echo(f"  Log Level: {config.log_level}")


if __name__ == '__main__':
    main()
