"""Operator CLI for idlc lifecycle configs.

Convention-based: discovers .idlc/ by walking up from cwd.

Usage:
    idlc init [--team ID]               # Initialize .idlc/ in cwd
    idlc check [TEAM ...] [--json]      # Resolve + validate team configs
    idlc transitions TEAM [--json]      # Show a team's expanded transition table
"""

from __future__ import annotations

import json as json_mod
import sys
from pathlib import Path
from typing import Any

import click

from idlc import __version__
from idlc.config import (
    DEFAULT_SETTINGS,
    FRAGMENTS_DIRNAME,
    IDLC_DIR_NAME,
    TEAMS_DIRNAME,
    find_idlc_root,
    read_config,
    write_config,
)
from idlc.logging import setup_logging
from idlc.registry import CheckReport, ConfigRegistry, DirectoryConfigSource, describe_config
from idlc.resolver import ConfigResolutionError
from idlc.schema import check_id
from idlc.validator import ValidationError


def _get_source() -> DirectoryConfigSource:
    """Discover .idlc/ and return its layered config source."""
    try:
        idlc_dir = find_idlc_root()
    except FileNotFoundError:
        click.echo(f"No {IDLC_DIR_NAME}/ found. Run 'idlc init' first.", err=True)
        sys.exit(1)
    setup_logging(idlc_dir)
    settings = read_config(idlc_dir)
    return DirectoryConfigSource(idlc_dir, enabled_templates=settings["enabled_templates"])


def _report_dict(report: CheckReport) -> dict[str, Any]:
    return {
        "team": report.team_id,
        "ok": report.ok,
        "lineage": list(report.lineage),
        "resolution_issues": [{"kind": i.kind, "message": i.message} for i in report.resolution_issues],
        "validation_issues": [
            {"kind": i.kind, "severity": i.severity, "message": i.message} for i in report.validation_issues
        ],
    }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="idlc")
def cli() -> None:
    """idlc -- configurable lifecycle workflow engine."""


@cli.command()
@click.option("--team", default=None, help="Create a starter team config extending 'default'")
def init(team: str | None) -> None:
    """Initialize .idlc/ in the current directory."""
    cwd = Path.cwd()
    idlc_dir = cwd / IDLC_DIR_NAME

    if team is not None:
        try:
            check_id(team, "team")
        except ValueError as e:
            click.echo(str(e), err=True)
            sys.exit(1)

    if idlc_dir.exists():
        click.echo(f"{IDLC_DIR_NAME}/ already exists in {cwd}")
    else:
        idlc_dir.mkdir()
        write_config(idlc_dir, DEFAULT_SETTINGS)
        click.echo(f"Initialized {IDLC_DIR_NAME}/ in {cwd}")
    (idlc_dir / TEAMS_DIRNAME).mkdir(exist_ok=True)
    (idlc_dir / FRAGMENTS_DIRNAME).mkdir(exist_ok=True)

    if team is not None:
        team_path = idlc_dir / TEAMS_DIRNAME / f"{team}.json"
        if team_path.exists():
            click.echo(f"  Team config already exists: {team_path}")
        else:
            starter = {"team": {"id": team, "name": team}, "extends": "default"}
            team_path.write_text(json_mod.dumps(starter, indent=2) + "\n")
            click.echo(f"  Team config: {team_path}")
    click.echo("\nNext: idlc check")


@cli.command()
@click.argument("teams", nargs=-1)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def check(teams: tuple[str, ...], as_json: bool) -> None:
    """Resolve and validate team configs (default: every team under .idlc/teams/)."""
    source = _get_source()
    registry = ConfigRegistry(source)
    team_ids = list(teams) or source.team_ids()
    if not team_ids:
        click.echo(f"No team configs found in {IDLC_DIR_NAME}/{TEAMS_DIRNAME}/", err=True)
        sys.exit(1)

    reports = [registry.check(team_id) for team_id in team_ids]
    if as_json:
        click.echo(json_mod.dumps([_report_dict(r) for r in reports], indent=2))
    else:
        for report in reports:
            label = "OK  " if report.ok else "FAIL"
            lineage = f" ({' -> '.join(report.lineage)})" if report.lineage else ""
            click.echo(f"{label} {report.team_id}{lineage}")
            for r_issue in report.resolution_issues:
                click.echo(f"  error [{r_issue.kind}] {r_issue.message}")
            for v_issue in report.validation_issues:
                click.echo(f"  {v_issue.severity} [{v_issue.kind}] {v_issue.message}")
    if not all(r.ok for r in reports):
        sys.exit(1)


@cli.command()
@click.argument("team")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def transitions(team: str, as_json: bool) -> None:
    """Show the expanded transition table of a team's resolved config."""
    source = _get_source()
    registry = ConfigRegistry(source)
    try:
        config = registry.activate(team)
    except KeyError as e:
        click.echo(e.args[0], err=True)
        sys.exit(1)
    except (ConfigResolutionError, ValidationError) as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    info = describe_config(config)
    if as_json:
        click.echo(json_mod.dumps(info, indent=2))
        return
    click.echo(f"{config.name} ({config.team_id}), initial status: {config.initial_status}")
    for stage in config.stages:
        marker = " [terminal]" if stage.terminal else "" if stage.required else " [optional]"
        click.echo(f"\n{stage.name}{marker}")
        for status in config.statuses:
            if status.stage_id != stage.id:
                continue
            dests = info["edges"][status.id]
            click.echo(f"  {status.id} -> {', '.join(dests) if dests else '(none)'}")
    for warning in config.warnings:
        click.echo(f"\nwarning: {warning}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
