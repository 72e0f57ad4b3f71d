"""
Main entry point for stackctl.
"""
import argparse
import asyncio
import json
import os
import signal
import sys
from typing import Dict, List, Optional

from rich.markup import escape

from config.environments import get_config
from config.logging import configure_logging, get_logger, log_error
from stackctl.models.exceptions import ApplyError, StackException, ValidationError
from stackctl.models.serialization import serialize_state
from stackctl.services.orchestrator import ProvisioningService, create_provisioning_service
from stackctl.utils.render import (
    console,
    err_console,
    output_raw,
    outputs_as_json,
    render_apply_result,
    render_outputs,
    render_plan,
    render_state,
    render_validation,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2

logger = get_logger("cli")


def _add_var_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-var", "--var",
        dest="vars",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set an input variable; may be repeated"
    )
    parser.add_argument(
        "-var-file", "--var-file",
        dest="var_files",
        action="append",
        default=[],
        metavar="FILE",
        help="Load variable values from a YAML file; may be repeated"
    )


def _add_apply_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-auto-approve", "--auto-approve",
        dest="auto_approve",
        action="store_true",
        help="Skip the interactive confirmation"
    )
    parser.add_argument(
        "-parallelism", "--parallelism",
        dest="parallelism",
        type=int,
        default=None,
        help="Number of steps of one level applied concurrently"
    )


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog="stackctl", description="Declarative infrastructure provisioning")
    parser.add_argument(
        "--env",
        "-e",
        choices=["development", "testing", "production"],
        default=os.environ.get("STACKCTL_ENVIRONMENT", "development"),
        help="Environment whose configuration overrides apply"
    )
    parser.add_argument(
        "--dir",
        "-C",
        dest="workdir",
        default=None,
        help="Directory holding the declaration files (default: current directory)"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level for structured logs on stderr"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Check provider credentials and prepare the state backend")

    validate = commands.add_parser("validate", help="Check the declarations without calling the provider")
    _add_var_options(validate)

    plan = commands.add_parser("plan", help="Show the changes apply would make")
    _add_var_options(plan)
    plan.add_argument("-destroy", "--destroy", action="store_true", help="Plan the deletion of every resource")
    plan.add_argument("-out", "--out", dest="out", default=None, help="Save the plan for a later apply")

    apply = commands.add_parser("apply", help="Apply the changes")
    apply.add_argument("planfile", nargs="?", default=None, help="Plan saved with plan -out")
    _add_var_options(apply)
    _add_apply_options(apply)

    destroy = commands.add_parser("destroy", help="Delete every recorded resource")
    _add_var_options(destroy)
    _add_apply_options(destroy)

    output = commands.add_parser("output", help="Print recorded outputs")
    output.add_argument("name", nargs="?", default=None, help="Output to print as a raw value")
    output.add_argument("-json", "--json", dest="json", action="store_true", help="Print JSON")

    show = commands.add_parser("show", help="Print the State Record")
    show.add_argument("-json", "--json", dest="json", action="store_true", help="Print JSON")

    unlock = commands.add_parser("force-unlock", help="Remove a state lock left behind by another run")
    unlock.add_argument("lock_id", help="ID of the lock to remove")

    return parser.parse_args(argv)


def parse_cli_vars(assignments: List[str]) -> Dict[str, str]:
    """Turn ``name=value`` arguments into a mapping"""
    values: Dict[str, str] = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        if not sep or not name.strip():
            raise ValidationError(f"Invalid -var '{assignment}': expected NAME=VALUE")
        values[name.strip()] = value
    return values


def confirm(question: str) -> bool:
    console.print(question)
    console.print("  Only 'yes' will be accepted to approve.")
    try:
        answer = console.input("\n  Enter a value: ")
    except EOFError:
        return False
    return answer.strip() == "yes"


async def cmd_init(service: ProvisioningService, args) -> int:
    entry = await service.init()
    provider = entry["provider"]
    console.print(f"Initialized provider {provider['name']} {provider['version']}.")
    console.print(f"State: {service.backend.describe()}")
    return EXIT_OK


async def cmd_validate(service: ProvisioningService, args) -> int:
    result = service.validate(args.var_files, parse_cli_vars(args.vars))
    render_validation(result)
    return EXIT_OK if result.is_valid else EXIT_ERROR


async def cmd_plan(service: ProvisioningService, args) -> int:
    cli_vars = parse_cli_vars(args.vars)
    _, plan = await service.plan(args.var_files, cli_vars, destroy=args.destroy)
    render_plan(plan)
    if args.out:
        service.save_plan(plan, args.out, args.var_files, cli_vars)
        console.print(f"Saved the plan to {args.out}. Run: stackctl apply {args.out}")
    return EXIT_CHANGES if plan.has_changes else EXIT_OK


async def cmd_apply(service: ProvisioningService, args, destroy: bool = False) -> int:
    operation = "destroy" if destroy else "apply"
    async with service.locked(operation):
        planfile = getattr(args, "planfile", None)
        if planfile:
            config, plan = await service.plan_from_file(planfile)
        else:
            config, plan = await service.plan(args.var_files, parse_cli_vars(args.vars), destroy=destroy)
        render_plan(plan)

        # A saved plan was approved when it was written
        if plan.has_changes and not (args.auto_approve or planfile):
            question = (
                "\nDo you really want to destroy all resources?" if destroy
                else "\nDo you want to perform these actions?"
            )
            if not confirm(question):
                console.print(f"{operation.capitalize()} cancelled.")
                return EXIT_ERROR

        with CancelOnInterrupt(service.cancel_event):
            try:
                result = await service.apply(config, plan, args.parallelism)
            except ApplyError as e:
                render_apply_result(e.result)
                raise

    if plan.has_changes:
        render_apply_result(result)
    outputs = await service.outputs()
    if outputs and not destroy:
        console.print("\nOutputs:")
        render_outputs(outputs)
    logger.info(f"{operation} finished", state=service.backend.describe(), steps=len(result.succeeded))
    return EXIT_OK


async def cmd_destroy(service: ProvisioningService, args) -> int:
    return await cmd_apply(service, args, destroy=True)


async def cmd_output(service: ProvisioningService, args) -> int:
    outputs = await service.outputs()
    if args.name:
        if args.name not in outputs:
            err_console.print(f"[error]Error:[/error] Output '{args.name}' not found")
            return EXIT_ERROR
        value = outputs[args.name].value
        print(json.dumps(value) if args.json else output_raw(value))
        return EXIT_OK
    if args.json:
        print(outputs_as_json(outputs))
    else:
        render_outputs(outputs)
    return EXIT_OK


async def cmd_show(service: ProvisioningService, args) -> int:
    state = await service.show()
    if args.json:
        print(json.dumps(serialize_state(state) if state else {}, indent=2))
    else:
        render_state(state)
    return EXIT_OK


async def cmd_force_unlock(service: ProvisioningService, args) -> int:
    await service.force_unlock(args.lock_id)
    console.print(f"Lock {args.lock_id} removed.")
    return EXIT_OK


COMMANDS = {
    "init": cmd_init,
    "validate": cmd_validate,
    "plan": cmd_plan,
    "apply": cmd_apply,
    "destroy": cmd_destroy,
    "output": cmd_output,
    "show": cmd_show,
    "force-unlock": cmd_force_unlock,
}


class CancelOnInterrupt:
    """Turn the first SIGINT during apply into a cancellation request"""

    def __init__(self, event: asyncio.Event):
        self.event = event
        self.installed = False

    def _request_cancel(self) -> None:
        if self.event.is_set():
            return
        err_console.print("[warning]Interrupt received; stopping after the steps in flight.[/warning]")
        self.event.set()

    def __enter__(self):
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, self._request_cancel)
            self.installed = True
        except (NotImplementedError, RuntimeError):
            # No signal handlers outside the main thread or on Windows
            self.installed = False
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        return False


async def run(args) -> int:
    """Run one command against a freshly built provisioning service"""
    config = get_config(args.env)
    service = create_provisioning_service(config, args.workdir or config.workdir)
    try:
        return await COMMANDS[args.command](service, args)
    finally:
        await service.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    args = parse_args(argv)

    configure_logging(args.log_level)
    logger.debug("Starting stackctl", command=args.command, environment=args.env)

    try:
        return asyncio.run(run(args))
    except StackException as e:
        err_console.print(f"[error]Error:[/error] {escape(e.message)}")
        if not isinstance(e, ApplyError):
            for key, value in e.details.items():
                if value not in (None, [], {}, ""):
                    err_console.print(f"  {key}: {escape(str(value))}")
        logger.debug("Command failed", error=e.to_dict())
        return EXIT_ERROR
    except KeyboardInterrupt:
        err_console.print("Interrupted.")
        return EXIT_ERROR
    except Exception as e:
        log_error(e, {"command": args.command})
        raise


if __name__ == "__main__":
    sys.exit(main())
