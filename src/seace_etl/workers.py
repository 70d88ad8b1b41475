"""Worker framework: credential failover around AI calls and job execution."""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set, Type, TypeVar

from pydantic import BaseModel

from .config import Settings
from .credentials import AcquiredCredential, CredentialPool, NoCredentialAvailable
from .llm import LLMClient, ProviderErrorKind, classify_provider_error, get_client
from .models import (
    CategorizeParams,
    ErrorType,
    LocationParams,
    OperationDetails,
    OperationKind,
    ScrapeParams,
)
from .operations import AlreadyTerminal, InvalidTransition, OperationRegistry
from .records import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[AcquiredCredential], LLMClient]

PARAMS_BY_KIND: Dict[OperationKind, Type[BaseModel]] = {
    OperationKind.SCRAPE: ScrapeParams,
    OperationKind.CATEGORIZE: CategorizeParams,
    OperationKind.INFER_LOCATION: LocationParams,
}


class UnitFailed(Exception):
    """One unit of work could not be completed; the operation continues."""


class ExternalServiceError(RuntimeError):
    """A non-AI upstream (e.g. the SEACE portal) could not be reached."""


class FailoverExhausted(RuntimeError):
    """Too many quota failovers for a single unit of work."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} quota failovers on a single item")


def compute_backoff_seconds(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff with jitter."""
    delay = base * (2 ** max(0, attempt - 1))
    jitter = random.uniform(0, base)
    return min(maximum, delay + jitter)


def default_client_factory(model: Optional[str] = None) -> ClientFactory:
    def _factory(credential: AcquiredCredential) -> LLMClient:
        return get_client(provider=credential.provider, api_key=credential.secret, model=model)
    return _factory


@dataclass
class RunContext:
    """Per-run mutable state a worker threads through its units."""

    operation_id: str
    kind: OperationKind
    started: float = field(default_factory=time.perf_counter)
    credential_alias: Optional[str] = None
    ai_calls: int = 0

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class Worker:
    """
    Base class for the three job kinds.

    Subclasses implement `execute`, which returns the kind-specific details.
    `run` wraps it with the lifecycle transitions; `call_ai` wraps every
    provider call with acquire, failover and outcome reporting.
    """

    kind: OperationKind

    def __init__(
        self,
        registry: OperationRegistry,
        pool: CredentialPool,
        records: RecordStore,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.pool = pool
        self.records = records
        self.settings = settings or Settings()
        self.client_factory = client_factory or default_client_factory(self.settings.model)
        self._sleep = sleep

    def execute(self, ctx: RunContext, params: BaseModel) -> OperationDetails:
        raise NotImplementedError

    def run(self, operation_id: str, params: BaseModel) -> None:
        """Drive one operation from pending to a terminal state."""
        ctx = RunContext(operation_id=operation_id, kind=self.kind)
        try:
            self.registry.transition_to_running(operation_id, step_total=0)
        except (InvalidTransition, AlreadyTerminal) as exc:
            logger.warning("Not starting %s operation %s: %s", self.kind.value, operation_id, exc)
            return
        try:
            details = self.execute(ctx, params)
        except (InvalidTransition, AlreadyTerminal) as exc:
            if self.registry.get(operation_id).is_terminal:
                # Finished elsewhere (usually the reaper) while this worker was busy.
                logger.warning("Abandoning %s operation %s: %s", self.kind.value, operation_id, exc)
                return
            logger.exception("Registry rejected an update for %s", operation_id)
            self.registry.fail(operation_id, f"Unexpected error: {exc}", error_type=ErrorType.INTERNAL)
            return
        except NoCredentialAvailable as exc:
            self.registry.fail(operation_id, str(exc), error_type=ErrorType.CREDENTIALS_EXHAUSTED)
            return
        except ExternalServiceError as exc:
            self.registry.fail(operation_id, str(exc), error_type=ErrorType.NETWORK)
            return
        except FailoverExhausted as exc:
            self.registry.fail(
                operation_id,
                f"{exc}; pool '{self.pool.name}' could not serve the request",
                error_type=ErrorType.FAILOVER_EXHAUSTED,
            )
            return
        except Exception as exc:
            logger.exception("%s operation %s crashed", self.kind.value, operation_id)
            self.registry.fail(operation_id, f"Unexpected error: {exc}", error_type=ErrorType.INTERNAL)
            return

        details.duration_ms = ctx.elapsed_ms()
        try:
            self.registry.complete(operation_id, details)
        except AlreadyTerminal as exc:
            logger.warning("Dropping result of %s operation %s: %s", self.kind.value, operation_id, exc)

    # Helpers for subclasses

    def progress(
        self,
        ctx: RunContext,
        step_current: int,
        message: str,
        counts_delta: Optional[Dict[str, int]] = None,
        step_total: Optional[int] = None,
        percentage: Optional[int] = None,
    ) -> None:
        self.registry.report_progress(
            ctx.operation_id,
            step_current,
            message=message,
            counts_delta=counts_delta,
            step_total=step_total,
            percentage=percentage,
            credential_alias=ctx.credential_alias,
        )

    def narrate(self, ctx: RunContext, message: str) -> None:
        self.registry.narrate(ctx.operation_id, message, credential_alias=ctx.credential_alias)

    def call_ai(self, ctx: RunContext, call: Callable[[LLMClient], T]) -> T:
        """
        Run one provider call for the current unit with credential failover.

        Quota errors block the credential and move to the next one; auth
        errors skip the credential for this unit; transient errors back off
        and retry. Non-retryable errors fail only the unit.

        Raises:
            NoCredentialAvailable: the pool has nothing left to offer.
            FailoverExhausted: the unit burned through `max_failovers` credentials.
            UnitFailed: the unit cannot be processed; the caller counts an error.
        """
        failovers = 0
        transient_attempts = 0
        excluded: Set[int] = set()

        while True:
            credential = self.pool.acquire(self.kind.value, exclude=excluded)
            ctx.credential_alias = credential.alias
            try:
                ctx.ai_calls += 1
                client = self.client_factory(credential)
                result = call(client)
            except Exception as exc:
                category = classify_provider_error(exc)
                message = str(exc)
                if category == ProviderErrorKind.QUOTA:
                    self.pool.report_quota_exceeded(credential.id, kind=self.kind.value, message=message)
                    failovers += 1
                    if failovers >= self.settings.max_failovers:
                        raise FailoverExhausted(failovers) from exc
                    self.narrate(ctx, f"Key '{credential.alias}' is over quota, switching to the next key")
                    continue
                if category == ProviderErrorKind.AUTH:
                    self.pool.report_error(credential.id, self.kind.value, message)
                    excluded.add(credential.id)
                    failovers += 1
                    if failovers >= self.settings.max_failovers:
                        raise FailoverExhausted(failovers) from exc
                    self.narrate(ctx, f"Key '{credential.alias}' was rejected, switching to the next key")
                    continue
                self.pool.report_error(credential.id, self.kind.value, message)
                if category == ProviderErrorKind.TRANSIENT:
                    transient_attempts += 1
                    if transient_attempts <= self.settings.max_transient_retries:
                        delay = compute_backoff_seconds(
                            transient_attempts,
                            self.settings.retry_backoff_base,
                            self.settings.retry_backoff_max,
                        )
                        logger.info(
                            "Transient provider error with '%s', retrying in %.2fs: %s",
                            credential.alias, delay, message,
                        )
                        self._sleep(delay)
                        continue
                raise UnitFailed(message) from exc
            finally:
                self.pool.release(credential.id)

            self.pool.report_success(credential.id, self.kind.value)
            return result


class OperationRunner:
    """Validates job requests, creates operations and schedules workers."""

    def __init__(
        self,
        registry: OperationRegistry,
        workers: Dict[OperationKind, Worker],
        max_workers: int = 4,
        execute_async: bool = True,
    ):
        self.registry = registry
        self.workers = workers
        self.execute_async = execute_async
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="seace-worker")
        self._futures: Dict[str, Future] = {}

    def parse_params(self, kind: OperationKind, raw: Optional[Dict[str, Any]]) -> BaseModel:
        """Validate raw input; raises pydantic.ValidationError before anything is created."""
        return PARAMS_BY_KIND[OperationKind(kind)].model_validate(raw or {})

    def start(self, kind: OperationKind, raw_params: Optional[Dict[str, Any]] = None) -> str:
        kind = OperationKind(kind)
        params = self.parse_params(kind, raw_params)
        worker = self.workers[kind]
        operation_id = self.registry.create(kind, params.model_dump(mode="json"))
        if not self.execute_async:
            worker.run(operation_id, params)
            return operation_id
        try:
            future = self._executor.submit(worker.run, operation_id, params)
        except RuntimeError as exc:
            self.registry.transition_to_running(operation_id)
            self.registry.fail(operation_id, f"Worker pool unavailable: {exc}", error_type=ErrorType.INTERNAL)
            return operation_id
        self._futures[operation_id] = future
        future.add_done_callback(lambda _f, op_id=operation_id: self._futures.pop(op_id, None))
        return operation_id

    def is_queued(self, operation_id: str) -> bool:
        """True while the operation's worker has been scheduled and has not returned."""
        future = self._futures.get(operation_id)
        return future is not None and not future.done()

    def wait(self, operation_id: str, timeout: Optional[float] = None) -> None:
        future = self._futures.get(operation_id)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


def percent(part: int, whole: int) -> int:
    """Integer percentage of `whole`; 0 when there is nothing to divide."""
    if whole <= 0:
        return 0
    return int(round(100 * part / whole))
