"""
Lifecycle Orchestrator

Generic engine that drives an operation from creation through polling to a
terminal stage. Kind-specific behaviour lives in LifecycleDefinition
subclasses (deployment, staking, bridge), registered by kind and dispatched
through the single poll() entry point.

Guarantees:
- One mutator per operation: poll / withdraw / cancel hold a per-operation lock
- One outstanding scheduled poll task per operation
- attempts +1 per poll cycle, never reset
- Attempt bound (and optional wall-clock bound) force PollingTimeout locally
- A rejected request never reaches the ledger
"""

import asyncio
import contextlib
import random
import re
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from loguru import logger

from .activity import ActivityRecorder, record_safely
from .chain_client import ChainClient
from .config import OrchestratorConfig
from .economics import EconomicsCalculator
from .errors import (
    CANCELLED,
    POLLING_TIMEOUT,
    REMOTE_ERROR,
    AllEndpointsUnavailable,
    InsufficientBalance,
    InvalidPayload,
    PreconditionFailed,
    RemoteError,
    UnknownOperation,
)
from .ledger import OperationLedger
from .models import Operation, OperationKind, Payload, Result, Stage, utcnow


PUBLIC_KEY_RE = re.compile(r'^(01[0-9a-fA-F]{64}|02[0-9a-fA-F]{66})$')


def new_tx_hash() -> str:
    return secrets.token_hex(32)


def validate_public_key(field_name: str, value: Any) -> str:
    """Casper public key: 01 + 32-byte ed25519 key, or 02 + 33-byte secp256k1 key"""
    if not isinstance(value, str) or not value:
        raise InvalidPayload(field_name, "public key is required")
    if not PUBLIC_KEY_RE.match(value):
        raise InvalidPayload(field_name, "expected 01 + 64 hex chars (ed25519) or 02 + 66 hex chars (secp256k1)")
    return value.lower()


@dataclass
class ActivityEvent:
    kind: str
    description: str
    status: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Transition:
    """A stage change decided by a lifecycle definition"""
    stage: Stage
    payload: Optional[Payload] = None
    result: Optional[Result] = None
    error: Optional[str] = None
    event: Optional[ActivityEvent] = None


class LifecycleDefinition(ABC):
    """
    Kind-specific part of an operation lifecycle

    Subclasses declare their stage graph and implement prepare() (validate +
    price + preconditions, no side effects) and step() (one remote check,
    returning None while still pending).
    """

    kind: OperationKind
    label: str
    first_stage: Stage
    success_stage: Stage
    graph: Dict[Stage, FrozenSet[Stage]]
    polled_stages: FrozenSet[Stage]

    def __init__(self, orchestrator: 'LifecycleOrchestrator'):
        self.orchestrator = orchestrator
        self.config = orchestrator.config
        self.client = orchestrator.client
        self.economics = orchestrator.economics

    @property
    def terminal_stages(self) -> FrozenSet[Stage]:
        return frozenset({self.success_stage, Stage.FAILED})

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    @abstractmethod
    async def prepare(self, request) -> Payload:
        """Validate a request and build its payload; raise a ValidationError to reject"""
        ...

    @abstractmethod
    async def step(self, operation: Operation) -> Optional[Transition]:
        """Advance one poll cycle; None means still pending"""
        ...

    def initiated_event(self, operation: Operation) -> Optional[ActivityEvent]:
        return None

    def failure_event(self, operation: Operation, error: str) -> ActivityEvent:
        return ActivityEvent(
            kind=f"{self.kind.value}_failed",
            description=f"{self.label} failed: {error}",
            status="failed",
            metadata={'operation_id': operation.id, 'error': error},
        )

    async def require_balance(self, owner_key: str, required_motes: int) -> None:
        """
        Check the owner can cover required_motes

        A degraded balance (zero substituted for an unknown value) cannot
        satisfy the check unless the orchestrator runs in sandbox mode.
        """
        balance = await self.client.get_balance(owner_key)

        if balance.degraded:
            if not self.config.sandbox:
                raise PreconditionFailed(f"Balance could not be confirmed: {balance.reason}")
            logger.warning(f"⚠ Sandbox mode: skipping balance check for {owner_key[:10]}... ({balance.reason})")
            return

        if balance.motes < required_motes:
            raise InsufficientBalance(required_motes, balance.motes)


class LifecycleOrchestrator:
    """
    Drives operations through their lifecycles

    Collaborators are injected: chain client, ledger, activity recorder and
    economics calculator. Bridge status for non-native chains comes from
    chain_clients (any object with an async get_operation_status(handle)).
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        client: ChainClient,
        ledger: OperationLedger,
        activity: Optional[ActivityRecorder] = None,
        economics: Optional[EconomicsCalculator] = None,
        chain_clients: Optional[Dict[str, Any]] = None,
        definitions: Optional[List[type]] = None,
    ):
        self.config = config
        self.client = client
        self.ledger = ledger
        self.activity = activity
        self.economics = economics or EconomicsCalculator(config)
        self.chain_clients: Dict[str, Any] = dict(chain_clients or {})
        self.chain_clients.setdefault(config.native_chain, client)

        self.definitions: Dict[OperationKind, LifecycleDefinition] = {}
        for definition_cls in (definitions or default_definitions()):
            self.register(definition_cls(self))

        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._subscribers: List[asyncio.Queue] = []

        logger.info("Lifecycle orchestrator initialized")
        logger.info(f"  Kinds: {[kind.value for kind in self.definitions]}")
        logger.info(f"  Poll interval: {config.poll_interval_ms}ms, max attempts: {config.max_attempts}")

    def register(self, definition: LifecycleDefinition):
        self.definitions[definition.kind] = definition

    def definition_for(self, kind: OperationKind) -> LifecycleDefinition:
        try:
            return self.definitions[OperationKind(kind)]
        except (KeyError, ValueError):
            raise InvalidPayload('kind', f"unsupported operation kind: {kind}")

    def status_source(self, chain: str):
        return self.chain_clients.get(chain)

    def _lock_for(self, handle: str) -> asyncio.Lock:
        lock = self._locks.get(handle)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[handle] = lock
        return lock

    @contextlib.asynccontextmanager
    async def _locked(self, handle: str):
        """
        Hold the operation's lock; unknown handles raise before a lock exists

        Locks of terminal operations are dropped on release. Terminal
        operations are never mutated again, so a late waiter on the old lock
        cannot race a new one.
        """
        self._load(handle)
        try:
            async with self._lock_for(handle):
                yield
        finally:
            self._discard_lock(handle)

    def _discard_lock(self, handle: str):
        lock = self._locks.get(handle)
        if lock is None or lock.locked():
            return
        operation = self.ledger.get(handle)
        if operation is None or operation.is_terminal:
            del self._locks[handle]

    def _load(self, handle: str) -> Operation:
        operation = self.ledger.get(handle)
        if operation is None:
            raise UnknownOperation(handle)
        return operation

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def start(self, kind: OperationKind, request) -> Operation:
        """
        Validate, price and persist a new operation, then schedule polling

        Raises:
            InvalidPayload, InsufficientBalance, PreconditionFailed: the
                request was rejected and nothing was written
        """
        definition = self.definition_for(kind)
        payload = await definition.prepare(request)

        operation = Operation(
            id=uuid.uuid4().hex,
            kind=definition.kind,
            owner_key=request.owner_key.lower(),
            stage=Stage.CREATED,
            payload=payload,
        )
        self.ledger.create(operation)
        logger.info(f"Created {definition.kind.value} operation {operation.id}")

        async with self._locked(operation.id):
            operation = self._apply(
                operation,
                Transition(stage=definition.first_stage, event=definition.initiated_event(operation)),
            )

        self._schedule(operation.id)
        return operation.snapshot()

    async def poll(self, handle: str) -> Operation:
        """
        Idempotent single-step advance

        No-op on terminal and resting stages. Pending answers and
        connectivity failures count an attempt; once the bound is reached
        the operation fails with PollingTimeout.
        """
        async with self._locked(handle):
            operation = self._load(handle)
            definition = self.definition_for(operation.kind)

            if operation.is_terminal or operation.stage not in definition.polled_stages:
                return operation.snapshot()

            now = utcnow()
            attempts = operation.attempts + 1
            changes = {'attempts': attempts, 'last_polled_at': now}
            transition: Optional[Transition] = None
            pending_reason = "still pending"

            try:
                transition = await definition.step(operation)
            except AllEndpointsUnavailable as e:
                pending_reason = str(e)
                logger.warning(f"Poll {attempts} of {handle} hit connectivity failure, will retry")
            except RemoteError as e:
                error = f"{REMOTE_ERROR}: {e}"
                transition = Transition(stage=Stage.FAILED, error=error,
                                        event=definition.failure_event(operation, error))
            except Exception as e:
                logger.exception(f"Unexpected error polling {handle}")
                error = f"InternalError: {e}"
                transition = Transition(stage=Stage.FAILED, error=error,
                                        event=definition.failure_event(operation, error))

            if transition is None:
                timeout_error = self._timeout_error(operation, definition, attempts, now, pending_reason)
                if timeout_error:
                    transition = Transition(stage=Stage.FAILED, error=timeout_error,
                                            event=definition.failure_event(operation, timeout_error))

            if transition is None:
                operation = self.ledger.update(handle, changes)
                logger.debug(f"{handle} {operation.stage.value}: attempt {attempts}/{definition.max_attempts}")
                return operation.snapshot()

            return self._apply(operation, transition, changes).snapshot()

    def get_status(self, handle: str) -> Operation:
        """Read-only snapshot"""
        return self._load(handle).snapshot()

    async def withdraw(self, handle: str, owner_key: Optional[str] = None,
                       now: Optional[datetime] = None) -> Operation:
        """
        Begin withdrawal of a stake (active -> unstaking)

        Raises:
            LockNotElapsed: lock period still running; stage untouched
            PreconditionFailed: not a stake, not active, or wrong owner
        """
        async with self._locked(handle):
            operation = self._load(handle)
            definition = self.definition_for(operation.kind)
            request_withdrawal = getattr(definition, 'request_withdrawal', None)
            if request_withdrawal is None:
                raise PreconditionFailed(f"{definition.label} operations cannot be withdrawn")

            transition = request_withdrawal(operation, owner_key, now or utcnow())
            operation = self._apply(operation, transition)

        self._schedule(handle)
        return operation.snapshot()

    async def cancel(self, handle: str, reason: str = "cancelled by request") -> Operation:
        """Move a non-terminal operation to failed (Cancelled) and stop polling it"""
        task = self._tasks.pop(handle, None)
        if task is not None and not task.done():
            task.cancel()

        async with self._locked(handle):
            operation = self._load(handle)
            if operation.is_terminal:
                return operation.snapshot()

            definition = self.definition_for(operation.kind)
            error = f"{CANCELLED}: {reason}"
            operation = self._apply(
                operation,
                Transition(stage=Stage.FAILED, error=error, event=definition.failure_event(operation, error)),
            )
            logger.info(f"Operation {handle} cancelled")
            return operation.snapshot()

    def list_operations(self, owner_key: str, kind: Optional[OperationKind] = None) -> List[Operation]:
        return self.ledger.list_by_owner(owner_key.lower(), kind)

    def subscribe(self) -> asyncio.Queue:
        """Queue receiving an Operation snapshot after every stage transition"""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def resume(self) -> int:
        """Reschedule polling for every non-terminal polled operation in the ledger"""
        resumed = 0
        for operation in self.ledger.list_all():
            definition = self.definitions.get(operation.kind)
            if definition and not operation.is_terminal and operation.stage in definition.polled_stages:
                self._schedule(operation.id)
                resumed += 1
        if resumed:
            logger.info(f"Resumed polling for {resumed} operations")
        return resumed

    async def wait_idle(self, handle: str):
        """Wait until the operation has no scheduled poll task"""
        task = self._tasks.get(handle)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self):
        """Cancel all scheduled polls; stages are left as they are"""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Orchestrator shut down ({len(tasks)} polls cancelled)")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _timeout_error(self, operation: Operation, definition: LifecycleDefinition,
                       attempts: int, now: datetime, pending_reason: str) -> Optional[str]:
        if attempts >= definition.max_attempts:
            return (f"{POLLING_TIMEOUT}: no final answer after {attempts} attempts "
                    f"in stage {operation.stage.value} ({pending_reason})")

        max_seconds = self.config.max_poll_seconds
        if max_seconds is not None:
            elapsed = (now - operation.stage_entered_at).total_seconds()
            if elapsed >= max_seconds:
                return (f"{POLLING_TIMEOUT}: no final answer after {elapsed:.0f}s "
                        f"in stage {operation.stage.value} ({pending_reason})")
        return None

    def _apply(self, operation: Operation, transition: Transition,
               changes: Optional[Dict[str, Any]] = None) -> Operation:
        """Persist a transition; caller holds the operation lock"""
        definition = self.definition_for(operation.kind)
        allowed = definition.graph.get(operation.stage, frozenset())
        if transition.stage not in allowed:
            raise RuntimeError(
                f"Illegal {operation.kind.value} transition {operation.stage.value} -> {transition.stage.value}"
            )

        is_success = transition.stage == definition.success_stage
        is_failure = transition.stage == Stage.FAILED
        if is_success and transition.result is None:
            raise RuntimeError(f"{definition.label} reached {transition.stage.value} without a result")

        now = utcnow()
        changes = dict(changes or {})
        changes['stage'] = transition.stage
        if transition.stage != operation.stage:
            changes['stage_entered_at'] = now
        if transition.payload is not None:
            changes['payload'] = transition.payload
        if is_success:
            changes['result'] = transition.result
        if is_failure:
            changes['error'] = transition.error or "failed"
        if is_success or is_failure:
            changes['terminal_at'] = now

        updated = self.ledger.update(operation.id, changes)

        if is_failure:
            logger.error(f"✗ {definition.label} {operation.id} failed: {updated.error}")
        else:
            logger.info(f"{definition.label} {operation.id}: {operation.stage.value} -> {transition.stage.value}")

        if transition.event is not None:
            event = transition.event
            metadata = dict(event.metadata)
            metadata.setdefault('operation_id', operation.id)
            record_safely(self.activity, event.kind, event.description, event.status, metadata)

        for queue in list(self._subscribers):
            queue.put_nowait(updated.snapshot())

        return updated

    def _next_delay(self, attempts: int) -> float:
        base = self.config.poll_interval_ms / 1000
        delay = min(base * (self.config.backoff_multiplier ** attempts),
                    self.config.max_poll_interval_ms / 1000)
        jitter = self.config.jitter_ratio
        if jitter:
            delay *= 1 + random.uniform(-jitter, jitter)
        return max(delay, 0.0)

    def _schedule(self, handle: str):
        task = self._tasks.get(handle)
        if task is not None and not task.done():
            return
        self._tasks[handle] = asyncio.ensure_future(self._run(handle))

    async def _run(self, handle: str):
        """Poll loop: one outstanding poll at a time, until terminal or resting"""
        try:
            while True:
                operation = self.ledger.get(handle)
                if operation is None:
                    return
                definition = self.definitions[operation.kind]
                if operation.is_terminal or operation.stage not in definition.polled_stages:
                    return

                await asyncio.sleep(self._next_delay(operation.attempts))
                await self.poll(handle)
        except asyncio.CancelledError:
            logger.debug(f"Polling of {handle} cancelled")
            raise
        except Exception as e:
            logger.error(f"Polling loop for {handle} stopped: {e}")
        finally:
            if self._tasks.get(handle) is asyncio.current_task():
                del self._tasks[handle]


def default_definitions() -> List[type]:
    from .bridge import BridgeLifecycle
    from .deployment import DeploymentLifecycle
    from .staking import StakeLifecycle

    return [DeploymentLifecycle, StakeLifecycle, BridgeLifecycle]
