"""
Terminal rendering of plans, apply results, state and outputs.
"""
import json
from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from stackctl.models.data_models import ApplyResult, OutputValue, Plan, StateRecord, ValidationResult
from stackctl.models.enums import ChangeAction
from stackctl.models.expressions import format_value

STACKCTL_THEME = Theme(
    {
        "create": "green",
        "update": "yellow",
        "replace": "magenta",
        "delete": "red",
        "warning": "yellow",
        "error": "bold red",
        "muted": "dim",
    }
)

console = Console(theme=STACKCTL_THEME, highlight=False)
err_console = Console(theme=STACKCTL_THEME, highlight=False, stderr=True)

_SYMBOLS = {
    ChangeAction.CREATE: ("+", "create"),
    ChangeAction.UPDATE: ("~", "update"),
    ChangeAction.REPLACE: ("-/+", "replace"),
    ChangeAction.DELETE: ("-", "delete"),
}


def render_plan(plan: Plan, out: Optional[Console] = None) -> None:
    """Print proposed changes, execution order and warnings"""
    out = out or console

    if not plan.has_changes:
        out.print("No changes. Infrastructure matches the declarations.")
        render_warnings(plan.warnings, out)
        return

    table = Table(title="Planned changes", show_lines=False)
    table.add_column("", no_wrap=True)
    table.add_column("Resource", no_wrap=True)
    table.add_column("Action")
    table.add_column("Details")

    for change in plan.changes:
        if change.action == ChangeAction.NO_OP:
            continue
        symbol, style = _SYMBOLS[change.action]
        details = list(change.reasons)
        if change.changed_attributes and change.action == ChangeAction.UPDATE:
            details.append("changed: " + ", ".join(change.changed_attributes))
        if change.create_before_destroy and change.action == ChangeAction.REPLACE:
            details.append("create before destroy")
        table.add_row(
            f"[{style}]{symbol}[/{style}]",
            change.address,
            f"[{style}]{change.action.value}[/{style}]",
            escape("; ".join(details)),
        )
    out.print(table)

    out.print("Execution order:")
    for number, step in enumerate(plan.steps, start=1):
        out.print(f"  {number:>3}. {step}")

    summary = plan.summary
    out.print(
        f"\nPlan: [create]{summary.creates} to add[/create], "
        f"[update]{summary.updates} to change[/update], "
        f"[replace]{summary.replaces} to replace[/replace], "
        f"[delete]{summary.deletes} to destroy[/delete]."
    )
    render_warnings(plan.warnings, out)


def render_warnings(warnings, out: Optional[Console] = None) -> None:
    out = out or console
    for warning in warnings:
        out.print(f"[warning]Warning:[/warning] {escape(warning)}")


def render_validation(result: ValidationResult, out: Optional[Console] = None) -> None:
    out = out or console
    for error in result.errors:
        out.print(f"[error]Error:[/error] {escape(error)}")
    render_warnings(result.warnings, out)
    if result.is_valid:
        out.print("The declarations are valid.")


def render_apply_result(result: ApplyResult, out: Optional[Console] = None) -> None:
    out = out or console
    for step in result.succeeded:
        out.print(f"[create]done[/create]    {step}")
    for step in result.failed:
        out.print(f"[error]failed[/error]  {step}: {escape(result.errors.get(str(step), ''))}")
    for step in result.pending:
        out.print(f"[muted]pending[/muted] {step}")

    if result.ok:
        out.print(f"\nApply complete. {len(result.succeeded)} steps applied.")
    elif result.cancelled:
        out.print(
            f"\nApply cancelled. {len(result.succeeded)} steps applied, "
            f"{len(result.pending)} not started."
        )
    else:
        out.print(
            f"\nApply failed. {len(result.succeeded)} steps applied, "
            f"{len(result.failed)} failed, {len(result.pending)} not started. "
            "Run apply again to resume."
        )


def render_outputs(outputs: Dict[str, OutputValue], out: Optional[Console] = None) -> None:
    out = out or console
    if not outputs:
        out.print("No outputs recorded.")
        return
    for name in sorted(outputs):
        output = outputs[name]
        shown = "(sensitive)" if output.sensitive else json.dumps(output.value)
        out.print(f"{name} = {escape(shown)}")


def outputs_as_json(outputs: Dict[str, OutputValue]) -> str:
    return json.dumps(
        {name: {"value": o.value, "sensitive": o.sensitive} for name, o in sorted(outputs.items())},
        indent=2,
    )


def output_raw(value: Any) -> str:
    """Single output value as a script would want it: strings unquoted"""
    return format_value(value)


def render_state(state: Optional[StateRecord], out: Optional[Console] = None) -> None:
    out = out or console
    if state is None or not state.resources:
        out.print("The state is empty.")
        return

    table = Table(title=f"State serial {state.serial} ({state.lineage})")
    table.add_column("Resource", no_wrap=True)
    table.add_column("ID")
    table.add_column("Depends on")
    for resource in state.resources:
        resource_id = resource.id
        if resource.deposed:
            resource_id += f" (+{len(resource.deposed)} deposed)"
        table.add_row(resource.address, resource_id, ", ".join(resource.dependencies))
    out.print(table)
    render_outputs(state.outputs, out)
