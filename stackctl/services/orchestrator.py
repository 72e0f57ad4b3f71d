"""
Provisioning Service: wires the loader, planner, executor, provider and state backend
"""
import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from config.logging import get_logger
from config.settings import Settings
from .executor import ApplyExecutor
from .interfaces import Provider, StateBackend
from .loader import DeclarationLoader
from .local_state import LocalStateBackend
from .planner import DefaultPlanner
from .retry import RetryConfig, RetryHandler
from .s3_state import S3StateBackend
from ..models.data_models import ApplyResult, Configuration, OutputValue, Plan, StateRecord, ValidationResult
from ..models.exceptions import ProviderError, StalePlanError, ValidationError
from ..providers import create_provider
from ..utils.aws import client_kwargs, create_session

logger = get_logger("orchestrator")

PLAN_FORMAT_VERSION = 1
LOCK_DIR = ".stackctl"
PROVIDER_LOCK_FILE = "providers.lock"


class ProvisioningService:
    """Runs init, validate, plan and apply against one declarations directory"""

    def __init__(
        self,
        settings: Settings,
        workdir: str,
        backend: StateBackend,
        provider: Optional[Provider] = None,
        loader: Optional[DeclarationLoader] = None,
        cancel_event: Optional[asyncio.Event] = None
    ):
        """Initialize provisioning service

        Args:
            settings: Application settings
            workdir: Directory holding the declaration files
            backend: State backend
            provider: Provider to use; built from the declarations when omitted
            loader: Declaration loader
            cancel_event: Set to stop an apply before its next step
        """
        self.settings = settings
        self.workdir = Path(workdir)
        self.backend = backend
        self.loader = loader or DeclarationLoader()
        self.cancel_event = cancel_event or asyncio.Event()
        self.retry_handler = RetryHandler(RetryConfig(
            max_retries=settings.executor.max_retries,
            base_delay=settings.executor.base_delay,
            max_delay=settings.executor.max_delay,
            exponential_base=settings.executor.exponential_base,
            jitter=settings.executor.jitter
        ))
        self._provider = provider
        self._configured = False

    def load(self, var_files: Sequence[str] = (), cli_vars: Optional[Dict[str, str]] = None) -> Configuration:
        return self.loader.load_directory(str(self.workdir), var_files, cli_vars)

    async def provider_for(self, config: Configuration) -> Provider:
        """Configured provider for a configuration, created on first use"""
        if self._provider is None:
            self._provider = create_provider(config.provider, self.settings)
        if not self._configured:
            await self._provider.configure()
            self._configured = True
        return self._provider

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()

    def locked(self, operation: str):
        """Hold the state lock; use as ``async with service.locked("apply")``"""
        return self.backend.locked(operation)

    async def init(self) -> Dict[str, Any]:
        """Configure the provider, prepare the state backend and record the provider in use

        Returns:
            Contents written to ``.stackctl/providers.lock``
        """
        config = self.load()
        provider = await self.provider_for(config)
        await self.backend.initialize()

        lock_path = self.workdir / LOCK_DIR / PROVIDER_LOCK_FILE
        entry = {"provider": {"name": provider.name, "version": provider.version}}
        if lock_path.exists():
            try:
                previous = json.loads(lock_path.read_text(encoding="utf-8"))
            except ValueError:
                previous = {}
            if previous.get("provider") not in (None, entry["provider"]):
                logger.warning(
                    "Provider changed since the last init",
                    previous=previous.get("provider"),
                    current=entry["provider"],
                )

        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.write_text(json.dumps(entry, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        logger.info(f"Initialized {self.workdir} with provider {provider.name} {provider.version}")
        return entry

    def validate(self, var_files: Sequence[str] = (), cli_vars: Optional[Dict[str, str]] = None) -> ValidationResult:
        """Load declarations and check the graph without calling the provider"""
        config = self.load(var_files, cli_vars)
        provider = self._provider or create_provider(config.provider, self.settings)
        planner = DefaultPlanner(provider)
        try:
            schemas = planner.provider_schemas()
        except ProviderError:
            # Plugin schemas are only known after configure()
            schemas = None
        return planner.validate(config, schemas)

    async def plan(
        self,
        var_files: Sequence[str] = (),
        cli_vars: Optional[Dict[str, str]] = None,
        destroy: bool = False
    ) -> Tuple[Configuration, Plan]:
        """Load declarations, refresh recorded resources and compute a plan"""
        config = self.load(var_files, cli_vars)
        if not destroy:
            # Fails on cycles before the provider is touched
            DefaultPlanner().topological_order(config)

        provider = await self.provider_for(config)
        state = await self.backend.load()
        plan = await DefaultPlanner(provider, self.retry_handler).plan(config, state, destroy=destroy)
        return config, plan

    async def apply(self, config: Configuration, plan: Plan, parallelism: Optional[int] = None) -> ApplyResult:
        """Execute an approved plan; the caller holds the state lock"""
        provider = await self.provider_for(config)
        executor = ApplyExecutor(
            provider,
            self.backend,
            self.retry_handler,
            parallelism=parallelism or self.settings.executor.parallelism,
            cancel_event=self.cancel_event
        )
        return await executor.execute(plan, config)

    async def outputs(self) -> Dict[str, OutputValue]:
        state = await self.backend.load()
        return dict(state.outputs) if state else {}

    async def show(self) -> Optional[StateRecord]:
        return await self.backend.load()

    async def force_unlock(self, lock_id: str) -> None:
        await self.backend.force_unlock(lock_id)

    # Saved plans

    def save_plan(
        self,
        plan: Plan,
        path: str,
        var_files: Sequence[str] = (),
        cli_vars: Optional[Dict[str, str]] = None
    ) -> None:
        """Write a plan file that ``apply`` re-verifies before executing"""
        document = {
            "version": PLAN_FORMAT_VERSION,
            "planId": plan.id,
            "createdAt": plan.created_at.isoformat(),
            "workdir": str(self.workdir.resolve()),
            "varFiles": list(var_files),
            "vars": dict(cli_vars or {}),
            "destroy": plan.destroy,
            "stateSerial": plan.state_serial,
            "stateLineage": plan.state_lineage,
            "changes": [{"address": c.address, "action": c.action.value} for c in plan.changes],
            "steps": [str(step) for step in plan.steps],
        }
        Path(path).write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
        logger.info(f"Saved plan {plan.id} to {path}")

    async def plan_from_file(self, path: str) -> Tuple[Configuration, Plan]:
        """Re-plan with a saved plan's inputs and check nothing changed since

        Raises:
            StalePlanError: The state, declarations or remote resources changed
        """
        saved = self._read_plan_file(path)
        if saved["workdir"] != str(self.workdir.resolve()):
            raise StalePlanError(
                f"Plan {path} was created for {saved['workdir']}, not {self.workdir.resolve()}",
                {"plan": path}
            )

        config, plan = await self.plan(saved["varFiles"], saved["vars"], saved["destroy"])

        if (plan.state_lineage, plan.state_serial) != (saved["stateLineage"], saved["stateSerial"]):
            raise StalePlanError(
                f"State changed since plan {saved['planId']} was saved "
                f"(serial {saved['stateSerial']}, now {plan.state_serial}); run plan again",
                {"plan": path, "saved_serial": saved["stateSerial"], "current_serial": plan.state_serial}
            )

        steps = [str(step) for step in plan.steps]
        if steps != saved["steps"]:
            raise StalePlanError(
                f"Declarations or remote resources changed since plan {saved['planId']} was saved; run plan again",
                {"plan": path, "saved_steps": saved["steps"], "current_steps": steps}
            )

        plan.id = saved["planId"]
        plan.created_at = datetime.fromisoformat(saved["createdAt"])
        return config, plan

    def _read_plan_file(self, path: str) -> Dict[str, Any]:
        try:
            saved = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StalePlanError(f"Cannot read plan file {path}: {e}", {"plan": path})
        if not isinstance(saved, dict) or saved.get("version") != PLAN_FORMAT_VERSION:
            raise StalePlanError(f"{path} is not a plan file of format version {PLAN_FORMAT_VERSION}", {"plan": path})
        missing = [k for k in ("planId", "createdAt", "workdir", "varFiles", "vars", "destroy", "stateSerial",
                               "stateLineage", "steps") if k not in saved]
        if missing:
            raise StalePlanError(f"Plan file {path} is missing {', '.join(missing)}", {"plan": path})
        return saved


def create_state_backend(settings: Settings, workdir: str) -> StateBackend:
    """Factory function to create the configured state backend

    Args:
        settings: Application settings
        workdir: Directory a relative local state path is resolved against

    Returns:
        Local or S3 state backend
    """
    state_settings = settings.state
    if state_settings.backend == "s3":
        if not state_settings.bucket:
            raise ValidationError("STACKCTL_STATE_BUCKET is required for the s3 state backend")
        return S3StateBackend.from_session(
            create_session(settings.aws),
            state_settings.bucket,
            state_settings.prefix,
            lock_timeout=state_settings.lock_timeout,
            **client_kwargs(settings.aws)
        )

    path = Path(state_settings.path)
    if not path.is_absolute():
        path = Path(workdir) / path
    return LocalStateBackend(str(path), lock_timeout=state_settings.lock_timeout)


def create_provisioning_service(
    settings: Settings,
    workdir: Optional[str] = None,
    provider: Optional[Provider] = None,
    backend: Optional[StateBackend] = None,
    cancel_event: Optional[asyncio.Event] = None
) -> ProvisioningService:
    """
    Factory function to create the provisioning service

    Args:
        settings: Application settings
        workdir: Declarations directory; defaults to ``settings.workdir``
        provider: Provider instance, e.g. a test double
        backend: State backend instance
        cancel_event: Cancellation event shared with a signal handler

    Returns:
        Configured ProvisioningService instance
    """
    workdir = workdir or settings.workdir
    return ProvisioningService(
        settings=settings,
        workdir=workdir,
        backend=backend or create_state_backend(settings, workdir),
        provider=provider,
        cancel_event=cancel_event
    )
