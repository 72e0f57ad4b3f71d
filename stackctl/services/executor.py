"""
Apply Executor Implementation
"""
import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.logging import get_logger
from .interfaces import Provider, StateBackend
from .retry import RetryHandler
from ..models.data_models import (
    ApplyResult, Configuration, DeposedObject, OutputValue, Plan, PlanStep, ResourceDeclaration,
    ResourceState, StateRecord
)
from ..models.enums import StepAction
from ..models.exceptions import ApplyCancelled, ApplyError, ProviderError, UndefinedReferenceError
from ..models.expressions import Reference, evaluate

logger = get_logger("executor")


class ApplyExecutor:
    """Walks an approved plan, calling the provider and recording state after every step"""

    def __init__(
        self,
        provider: Provider,
        backend: StateBackend,
        retry_handler: RetryHandler,
        parallelism: int = 1,
        cancel_event: Optional[asyncio.Event] = None
    ):
        """Initialize apply executor

        Args:
            provider: Provider that owns the resources
            backend: State backend written after each successful step
            retry_handler: Retries transient provider errors
            parallelism: Steps of one level run concurrently up to this bound
            cancel_event: Set to stop before the next step is issued
        """
        self.provider = provider
        self.backend = backend
        self.retry_handler = retry_handler
        self.parallelism = max(1, parallelism)
        self.cancel_event = cancel_event or asyncio.Event()
        self._state_lock = asyncio.Lock()
        self._state: Optional[StateRecord] = None

    async def execute(self, plan: Plan, config: Optional[Configuration]) -> ApplyResult:
        """Execute every step of a plan

        Args:
            plan: Approved plan; execution starts from its refreshed state
            config: Declarations the plan was computed from

        Returns:
            Apply result with every step succeeded

        Raises:
            ApplyError: A step failed; earlier steps stay applied and recorded
            ApplyCancelled: Cancellation was requested between steps
        """
        self._state = plan.prior_state or StateRecord(lineage=str(uuid.uuid4()))
        result = ApplyResult(pending=list(plan.steps))
        previous_outputs = dict(self._state.outputs)

        if plan.removed:
            logger.info(f"Dropping {len(plan.removed)} resources that no longer exist", addresses=plan.removed)
            await self._save()

        logger.info(f"Applying plan {plan.id}", steps=len(plan.steps), parallelism=self.parallelism)

        if self.parallelism == 1:
            for step in plan.steps:
                if self.cancel_event.is_set():
                    break
                if not await self._run_step(step, plan, config, result):
                    break
        else:
            semaphore = asyncio.Semaphore(self.parallelism)

            async def guarded(step: PlanStep) -> None:
                async with semaphore:
                    if self.cancel_event.is_set() or result.failed:
                        return
                    await self._run_step(step, plan, config, result)

            for level in plan.levels:
                if self.cancel_event.is_set():
                    break
                await asyncio.gather(*(guarded(step) for step in level))
                if result.failed:
                    break

        self._evaluate_outputs(config)
        if result.succeeded or self._state.outputs != previous_outputs:
            await self._save()

        if result.failed:
            first = result.failed[0]
            raise ApplyError(
                f"Apply failed at {first}: {result.errors[str(first)]} "
                f"({len(result.succeeded)} succeeded, {len(result.pending)} not started)",
                result
            )
        if result.pending and self.cancel_event.is_set():
            result.cancelled = True
            raise ApplyCancelled(
                f"Apply cancelled ({len(result.succeeded)} steps succeeded, {len(result.pending)} not started)",
                result
            )

        logger.info(f"Apply complete: {len(result.succeeded)} steps succeeded")
        return result

    @property
    def state(self) -> Optional[StateRecord]:
        return self._state

    async def _run_step(
        self,
        step: PlanStep,
        plan: Plan,
        config: Optional[Configuration],
        result: ApplyResult
    ) -> bool:
        """Run one step; returns False when it failed"""
        result.pending.remove(step)
        logger.info(f"Starting {step}")
        try:
            if step.action == StepAction.CREATE:
                await self._create(step, plan, self._declaration(config, step))
            elif step.action == StepAction.UPDATE:
                await self._update(step, self._declaration(config, step))
            elif step.action == StepAction.DELETE:
                await self._delete(step)
            elif step.action == StepAction.DELETE_DEPOSED:
                await self._delete_deposed(step)
        except (ProviderError, UndefinedReferenceError) as e:
            if isinstance(e, ProviderError):
                e.address = e.address or step.address
                e.action = e.action or step.action.value
                e.details.update(address=e.address, action=e.action)
            logger.error(f"{step} failed: {e.message}", error_code=e.code.value)
            result.failed.append(step)
            result.errors[str(step)] = e.message
            return False

        result.succeeded.append(step)
        logger.info(f"Finished {step}")
        return True

    def _declaration(self, config: Optional[Configuration], step: PlanStep) -> ResourceDeclaration:
        declaration = config.get_resource(step.address) if config else None
        if declaration is None:
            raise UndefinedReferenceError(step.address, message=f"{step} has no declaration")
        return declaration

    def _resolve(self, ref: Reference) -> Any:
        resource = self._state.get(ref.address)
        if resource is None:
            raise UndefinedReferenceError(str(ref), ref.location, f"{ref.address} does not exist in state")
        return resource.attribute(ref)

    async def _create(self, step: PlanStep, plan: Plan, declaration: ResourceDeclaration) -> None:
        values = self.provider.prepare_config(declaration.type, evaluate(declaration.config, self._resolve))
        created = await self.retry_handler.execute_with_retry(self.provider.create, declaration.type, values)

        async with self._state_lock:
            current = self._state.get(step.address)
            deposed: List[DeposedObject] = list(current.deposed) if current else []
            if current is not None:
                change = plan.get_change(step.address)
                if change is None or not change.create_before_destroy:
                    logger.warning(f"{step.address} still recorded {current.id}; keeping it as deposed")
                deposed.append(DeposedObject(current.id, current.config, current.attributes))

            now = datetime.now()
            self._state.put(ResourceState(
                address=step.address,
                type=declaration.type,
                name=declaration.name,
                id=created.id,
                config=values,
                attributes=created.attributes,
                dependencies=declaration.dependencies(),
                created_at=now,
                updated_at=now,
                deposed=deposed
            ))
            await self.backend.save(self._state)

    async def _update(self, step: PlanStep, declaration: ResourceDeclaration) -> None:
        current = self._state.get(step.address)
        values = self.provider.prepare_config(declaration.type, evaluate(declaration.config, self._resolve))
        attributes = await self.retry_handler.execute_with_retry(
            self.provider.update, declaration.type, current.id, current.config, values
        )

        async with self._state_lock:
            current.config = values
            current.attributes = attributes
            current.dependencies = declaration.dependencies()
            current.updated_at = datetime.now()
            await self.backend.save(self._state)

    async def _delete(self, step: PlanStep) -> None:
        current = self._state.get(step.address)
        if current is None:
            logger.info(f"{step.address} is already gone")
            return
        await self.retry_handler.execute_with_retry(self.provider.delete, current.type, current.id, current.config)

        async with self._state_lock:
            self._state.remove(step.address)
            await self.backend.save(self._state)

    async def _delete_deposed(self, step: PlanStep) -> None:
        current = self._state.get(step.address)
        if current is None:
            return
        for deposed in list(current.deposed):
            await self.retry_handler.execute_with_retry(
                self.provider.delete, current.type, deposed.id, deposed.config
            )
            async with self._state_lock:
                current.deposed.remove(deposed)
                await self.backend.save(self._state)

    def _evaluate_outputs(self, config: Optional[Configuration]) -> None:
        """Compute outputs from the final state, skipping any whose inputs are missing"""
        if config is None:
            self._state.outputs = {}
            return

        outputs: Dict[str, OutputValue] = {}
        for name, output in config.outputs.items():
            try:
                value = evaluate(output.value, self._resolve)
            except UndefinedReferenceError as e:
                logger.warning(f"Output {name} not available: {e.message}")
                continue
            outputs[name] = OutputValue(value=value, sensitive=output.sensitive)
        self._state.outputs = outputs

    async def _save(self) -> None:
        async with self._state_lock:
            await self.backend.save(self._state)
