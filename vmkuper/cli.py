"""
Command line entry points.

`vmkuper-backup` runs one backup of every protected machine and exits:
  0  all machines backed up, or nothing to back up
  1  run aborted (backup store not writable or cluster not reachable)
  2  run completed but at least one machine failed
"""

import sys

import click

from vmkuper.backup.orchestrator import execute_backup_run


def register_commands(app):
    """Register the `flask run-backup` command."""

    @app.cli.command('run-backup')
    @click.option('--run-date', default=None, help='Override the run date (defaults to today).')
    def run_backup_command(run_date):
        """Back up every protected machine once."""
        summary = execute_backup_run(run_date)
        _report(summary)
        sys.exit(summary.exit_code)


def _report(summary):
    click.echo(f"Run {summary.run_date}: {summary.status}")
    for name in summary.succeeded:
        click.echo(f"  ok      {name}")
    for name, error in summary.failed.items():
        click.echo(f"  failed  {name}: {error}")
    if summary.error:
        click.echo(f"  error: {summary.error}", err=True)


def main():
    """Console script entry point. Takes no arguments."""
    from vmkuper import create_app

    # One-off runs never start the scheduler
    app = create_app(config_overrides={'SCHEDULER_ENABLED': False})
    with app.app_context():
        summary = execute_backup_run()
    _report(summary)
    return summary.exit_code


if __name__ == '__main__':
    sys.exit(main())
