"""
Plan Demo

Loads the static site declarations and plans them against an empty state.
Nothing is recorded yet, so the planner never calls AWS and no credentials
are needed.
"""
import asyncio
from pathlib import Path

from config.settings import settings
from stackctl.providers import AWSProvider
from stackctl.services.loader import DeclarationLoader
from stackctl.services.planner import DefaultPlanner
from stackctl.utils.render import console, render_plan

SITE_DIR = Path(__file__).parent / "static_site"


async def demo_plan():
    """Load, validate and plan the example stack"""
    console.print("=== Loading declarations ===")
    config = DeclarationLoader().load_directory(str(SITE_DIR), cli_vars={"environment": "demo"})
    for resource in config.resources:
        deps = ", ".join(resource.dependencies()) or "-"
        console.print(f"  {resource.address:<40} depends on {deps}")

    planner = DefaultPlanner(AWSProvider(settings.aws))

    console.print("\n=== Validating ===")
    result = planner.validate(config, planner.provider_schemas())
    console.print(f"  valid: {result.is_valid}")
    for warning in result.warnings:
        console.print(f"  warning: {warning}")

    console.print("\n=== Dependency order ===")
    for position, address in enumerate(planner.topological_order(config), start=1):
        console.print(f"  {position}. {address}")

    console.print("\n=== Plan against an empty state ===")
    plan = await planner.plan(config, None)
    render_plan(plan)

    console.print("\n=== Parallel levels ===")
    for number, level in enumerate(plan.levels, start=1):
        console.print(f"  level {number}: {', '.join(str(step) for step in level)}")


if __name__ == "__main__":
    asyncio.run(demo_plan())
