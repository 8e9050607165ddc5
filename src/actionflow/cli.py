# cli.py
from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path

import click

from actionflow.actions import ActionRegistry
from actionflow.config import ContinueOnErrorPolicy, EngineConfig, load_config
from actionflow.dag import plan
from actionflow.errors import ActionflowError, DefinitionError
from actionflow.loader import load_workflow
from actionflow.runner import RunCoordinator
from actionflow.secrets import ChainedSecrets, DictSecrets, EnvSecrets, load_secrets_file
from actionflow.trigger import local_trigger
from actionflow.ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """
    Find workflow files in the conventional locations.

    Returns:
        Sorted list of .yml/.yaml files under .github/workflows or workflows/
    """
    found: list[Path] = []
    for base in (Path(".github/workflows"), Path("workflows")):
        if base.is_dir():
            found.extend(p for p in base.iterdir() if p.suffix in (".yml", ".yaml"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default locations.

    Raises:
        SystemExit: If no workflow (or more than one) can be found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()
    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked in:", "  .github/workflows/*.yml", "  workflows/*.yml"],
            suggestion="Specify a workflow explicitly:\n  actionflow run path/to/workflow.yml",
        )
        sys.exit(1)
    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
        )
        sys.exit(1)
    return workflow_files[0]


def _key_values(pairs: tuple[str, ...], what: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint=what)
        key, _, value = pair.partition("=")
        out[key] = value
    return out


def _load_definition(ctx, workflow_arg: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        definition = load_workflow(workflow_path)
        execution_plan = plan(definition)
    except (DefinitionError, FileNotFoundError) as e:
        console.print_error("Invalid workflow", f"{workflow_path}: {e}")
        sys.exit(1)
    return definition, execution_plan


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show ::debug:: lines, engine logs and stack traces)",
)
@click.option("--quiet", is_flag=True, default=False, help="Do not print step output")
@click.pass_context
def cli(ctx, debug, quiet):
    """actionflow: run CI workflow definitions locally."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@click.option("--event", default="push", show_default=True, help="Triggering event name")
@click.option("--payload", type=click.Path(exists=True, dir_okay=False), default=None, help="JSON event payload file")
@click.option("--input", "inputs", multiple=True, help="workflow_dispatch input NAME=VALUE (repeatable)")
@click.option("--secret", "secrets", multiple=True, help="Secret NAME=VALUE (repeatable)")
@click.option("--secrets-file", type=click.Path(exists=True, dir_okay=False), default=None, help="YAML file of secrets")
@click.option("--stub-action", "stubs", multiple=True, help="Treat this action as a successful no-op (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--timeout-minutes", default=None, type=float, help="Default per-step timeout")
@click.option(
    "--continue-on-error-policy",
    type=click.Choice([p.value for p in ContinueOnErrorPolicy]),
    default=None,
    help="How dependents see a job whose only failures were continue-on-error steps",
)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None, help="YAML engine config")
@click.option("--workspace", type=click.Path(file_okay=False), default=None, help="Workspace directory (default: cwd)")
@click.pass_context
def run(ctx, workflow, event, payload, inputs, secrets, secrets_file, stubs, workers, timeout_minutes,
        continue_on_error_policy, config_path, workspace):
    """Run a workflow definition."""
    console = get_console()
    definition, _plan = _load_definition(ctx, workflow)

    try:
        config = load_config(config_path) if config_path else EngineConfig()
        config = EngineConfig.from_env(config).merged(
            max_workers=workers,
            step_timeout_minutes=timeout_minutes,
            continue_on_error_policy=continue_on_error_policy,
            workspace=workspace,
        )
        console.print_debug(f"engine config: {config.model_dump(mode='json')}")

        registry = ActionRegistry()
        for name in stubs:
            registry.stub(name.partition("@")[0])

        providers = [DictSecrets(_key_values(secrets, "--secret"))]
        if secrets_file:
            providers.append(load_secrets_file(secrets_file))
        providers.append(EnvSecrets())

        event_payload = json.loads(Path(payload).read_text(encoding="utf-8")) if payload else {}
        trigger = local_trigger(
            event,
            payload=event_payload,
            inputs=_key_values(inputs, "--input"),
            cwd=str(config.workspace),
        )

        coordinator = RunCoordinator(config, registry=registry, secrets=ChainedSecrets(*providers))
        instance = coordinator.start(definition, trigger)

        # first Ctrl-C cancels the run gracefully, the second one aborts
        def _interrupt(signum, frame):
            signal.signal(signal.SIGINT, signal.default_int_handler)
            console.print_info("\nCancelling run (press Ctrl-C again to abort)...")
            coordinator.cancel(instance)

        previous = signal.signal(signal.SIGINT, _interrupt)
        try:
            outcome = coordinator.wait(instance)
        finally:
            signal.signal(signal.SIGINT, previous)
        sys.exit(outcome.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (ActionflowError, json.JSONDecodeError) as e:
        console.print_error("Run failed", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command(name="plan")
@click.argument("workflow", required=False)
@click.pass_context
def plan_cmd(ctx, workflow):
    """Print the execution stages and matrix instances of a workflow."""
    console = get_console()
    definition, execution_plan = _load_definition(ctx, workflow)

    console.print_header(definition.name)
    console.print_plan(execution_plan.stages)
    for name in execution_plan.order:
        planned = execution_plan.jobs[name]
        needs = f" (needs: {', '.join(planned.spec.needs)})" if planned.spec.needs else ""
        console.print_info(f"  {name}{needs}")
        if planned.spec.matrix is not None:
            for row in planned.rows:
                console.print_info(f"    - {json.dumps(row, sort_keys=False)}")


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Load and plan a workflow without running it."""
    definition, execution_plan = _load_definition(ctx, workflow)
    get_console().print_info(
        f"OK: {definition.name} ({len(definition.jobs)} job(s), {execution_plan.instance_count()} instance(s))"
    )


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
