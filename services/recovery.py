"""
Health polling and sandbox recovery.

SandboxStateMachine is a pure reducer over health and recovery events.
HealthRecoveryLoop polls each watched project, feeds health reports into
its state machine and re-provisions broken sandboxes:

    initializing -> healthy
    initializing -> unhealthy | expired | failed
    unhealthy | expired -> recovering -> healthy | failed

A recovery in progress is never interrupted: concurrent requests for the
same project are skipped, not queued.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from config import settings
from models import BuildStatus, Fragment
from .database import ProjectStore
from .errors import RestorationError, SandboxError
from .health import HealthReason, HealthReport, SandboxHealthChecker
from .sandbox_manager import ProvisionOptions, SandboxProvisioner
from .templates import FALLBACK_TEMPLATE, infer_template_from_files

logger = logging.getLogger(__name__)

REFRESH_DEBOUNCE_S = 0.5


# =============================================================================
# State
# =============================================================================

class SandboxStatus(str, Enum):
    INITIALIZING = "initializing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RECOVERING = "recovering"
    FAILED = "failed"
    EXPIRED = "expired"


class RecoveryStage(str, Enum):
    PREPARING = "preparing"
    CREATING = "creating"
    RESTORING = "restoring"
    VALIDATING = "validating"
    FINALIZING = "finalizing"


STAGE_MESSAGES = {
    RecoveryStage.PREPARING: "Preparing sandbox recovery...",
    RecoveryStage.CREATING: "Creating a new sandbox...",
    RecoveryStage.RESTORING: "Restoring project files...",
    RecoveryStage.VALIDATING: "Validating recovered sandbox...",
    RecoveryStage.FINALIZING: "Finalizing recovery...",
}


@dataclass(frozen=True)
class SandboxState:
    status: SandboxStatus = SandboxStatus.INITIALIZING
    sandbox_id: Optional[str] = None
    sandbox_url: Optional[str] = None
    can_recover: bool = False
    stage: Optional[RecoveryStage] = None
    attempt: int = 0
    error: Optional[str] = None
    can_retry: bool = False


class ActionType(str, Enum):
    HEALTH_CHECK_SUCCESS = "HEALTH_CHECK_SUCCESS"
    HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
    RECOVERY_STARTED = "RECOVERY_STARTED"
    RECOVERY_PROGRESS = "RECOVERY_PROGRESS"
    RECOVERY_SUCCESS = "RECOVERY_SUCCESS"
    RECOVERY_FAILED = "RECOVERY_FAILED"
    SANDBOX_EXPIRED = "SANDBOX_EXPIRED"
    RESET = "RESET"


@dataclass(frozen=True)
class Action:
    type: ActionType
    sandbox_id: Optional[str] = None
    sandbox_url: Optional[str] = None
    can_recover: bool = False
    stage: Optional[RecoveryStage] = None
    attempt: int = 0
    error: Optional[str] = None
    can_retry: bool = False


def reduce(state: SandboxState, action: Action) -> SandboxState:
    """Pure transition function."""
    kind = action.type

    if kind in (ActionType.HEALTH_CHECK_SUCCESS, ActionType.RECOVERY_SUCCESS):
        return SandboxState(
            status=SandboxStatus.HEALTHY,
            sandbox_id=action.sandbox_id,
            sandbox_url=action.sandbox_url,
        )

    if kind == ActionType.HEALTH_CHECK_FAILED:
        # Only a healthy sandbox degrades; other states wait for their own events
        if state.status != SandboxStatus.HEALTHY:
            return state
        return SandboxState(
            status=SandboxStatus.UNHEALTHY,
            sandbox_id=state.sandbox_id,
            can_recover=action.can_recover,
            error=action.error,
        )

    if kind == ActionType.RECOVERY_STARTED:
        return SandboxState(
            status=SandboxStatus.RECOVERING,
            sandbox_id=state.sandbox_id,
            stage=RecoveryStage.PREPARING,
            attempt=action.attempt,
        )

    if kind == ActionType.RECOVERY_PROGRESS:
        if state.status != SandboxStatus.RECOVERING:
            return state
        return replace(state, stage=action.stage)

    if kind == ActionType.RECOVERY_FAILED:
        return SandboxState(
            status=SandboxStatus.FAILED,
            error=action.error,
            can_retry=action.can_retry,
            attempt=state.attempt,
        )

    if kind == ActionType.SANDBOX_EXPIRED:
        return SandboxState(
            status=SandboxStatus.EXPIRED,
            sandbox_id=action.sandbox_id,
            can_recover=True,
        )

    if kind == ActionType.RESET:
        return SandboxState()

    return state


class SandboxStateMachine:
    """Holds one project's state and applies actions through reduce()."""

    def __init__(self, state: Optional[SandboxState] = None):
        self.state = state or SandboxState()

    def dispatch(self, action: Action) -> SandboxState:
        previous = self.state.status
        self.state = reduce(self.state, action)
        if self.state.status != previous:
            logger.debug(f"[SandboxState] {previous.value} -> {self.state.status.value} on {action.type.value}")
        return self.state

    @property
    def should_recover(self) -> bool:
        state = self.state
        return (
            (state.status in (SandboxStatus.UNHEALTHY, SandboxStatus.EXPIRED) and state.can_recover)
            or (state.status == SandboxStatus.FAILED and state.can_retry)
        )


# =============================================================================
# Strategies and UI status
# =============================================================================

@dataclass(frozen=True)
class RecoveryStrategy:
    base_delay_ms: int
    max_attempts: int
    backoff_multiplier: float

    def delay_s(self, attempts: int) -> float:
        return self.base_delay_ms * (self.backoff_multiplier ** attempts) / 1000


RECOVERY_STRATEGIES = {
    "immediate": RecoveryStrategy(base_delay_ms=1000, max_attempts=3, backoff_multiplier=1),
    "progressive": RecoveryStrategy(base_delay_ms=5000, max_attempts=5, backoff_multiplier=2),
    "manual": RecoveryStrategy(base_delay_ms=0, max_attempts=0, backoff_multiplier=1),
}


@dataclass(frozen=True)
class UIStatus:
    status: str
    description: str


def ui_status(state: SandboxState) -> UIStatus:
    """Map internal state to the status shown in the editor."""
    if state.status == SandboxStatus.INITIALIZING:
        return UIStatus("initializing", "Checking sandbox status")
    if state.status == SandboxStatus.HEALTHY:
        return UIStatus("ready", "Sandbox is running")
    if state.status == SandboxStatus.RECOVERING:
        stage = state.stage or RecoveryStage.PREPARING
        return UIStatus("recovering", STAGE_MESSAGES[stage])
    if state.status == SandboxStatus.EXPIRED:
        return UIStatus("needs-refresh", "Sandbox has expired")
    if state.status == SandboxStatus.UNHEALTHY:
        if state.can_recover:
            suffix = f": {state.error}" if state.error else ""
            return UIStatus("needs-refresh", f"Sandbox is unhealthy{suffix}")
        return UIStatus("needs-initialization", "Sandbox needs to be initialized")
    return UIStatus("error", f"Recovery failed: {state.error}")


# =============================================================================
# Recovery target search
# =============================================================================

@dataclass(frozen=True)
class RecoveryTarget:
    """What a recovered sandbox boots from."""
    source: str  # active-fragment | fallback-fragment | latest-snapshot | template
    image_id: Optional[str] = None
    fragment_id: Optional[str] = None
    template_name: Optional[str] = None


def resolve_template(template_name: Optional[str], fragment: Optional[Fragment]) -> str:
    if template_name:
        return template_name
    if fragment is not None:
        inferred = infer_template_from_files(fragment.files)
        if inferred:
            return inferred
    return FALLBACK_TEMPLATE


async def find_recovery_snapshot(
    store: ProjectStore,
    project_id: str,
    fragment_id: Optional[str] = None,
    template_name: Optional[str] = None,
) -> RecoveryTarget:
    """
    Pick the image a recovered sandbox should boot from.

    Order: the starting fragment's snapshot, the newest older fragment with a
    snapshot, the project's latest snapshot, then the template with the
    newest fragment restored on top.
    """
    fragments = await store.list_fragments(project_id)
    active = next((f for f in fragments if f.id == fragment_id), None) if fragment_id else None

    if fragment_id:
        if active is not None and active.snapshot_image_id:
            logger.info(f"[Recovery] Using snapshot of active fragment {active.id}")
            return RecoveryTarget("active-fragment", active.snapshot_image_id, active.id)

        for fragment in fragments:
            if not fragment.snapshot_image_id or fragment.id == fragment_id:
                continue
            if active is not None and active.created_at and fragment.created_at:
                if fragment.created_at > active.created_at:
                    continue
            logger.info(f"[Recovery] Active fragment has no snapshot, using fragment {fragment.id}")
            return RecoveryTarget("fallback-fragment", fragment.snapshot_image_id, fragment.id)

    for fragment in fragments:
        if fragment.snapshot_image_id:
            logger.info(f"[Recovery] Using latest snapshot from fragment {fragment.id}")
            return RecoveryTarget("latest-snapshot", fragment.snapshot_image_id, fragment.id)

    base = active or (fragments[0] if fragments else None)
    template = resolve_template(template_name, base)
    logger.warning(f"[Recovery] No snapshots for {project_id}, bootstrapping from template {template}")
    return RecoveryTarget("template", None, base.id if base else None, template)


# =============================================================================
# Loop
# =============================================================================

@dataclass
class RecoveryResult:
    recovered: bool
    sandbox_id: Optional[str] = None
    sandbox_url: Optional[str] = None
    source: Optional[str] = None


class HealthRecoveryLoop:
    """
    Per-project health polling with automatic recovery.

    Automatic recovery only runs for projects that have been healthy at least
    once, so brand new projects are never recovered before first generation.
    """

    def __init__(
        self,
        checker: SandboxHealthChecker,
        provisioner: SandboxProvisioner,
        store: ProjectStore,
        strategy: Optional[str] = None,
        poll_interval_s: Optional[float] = None,
        debounce_s: float = REFRESH_DEBOUNCE_S,
    ):
        self.checker = checker
        self.provisioner = provisioner
        self.store = store
        self.strategy_name = strategy or settings.recovery_strategy
        self.strategy = RECOVERY_STRATEGIES[self.strategy_name]
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.health_poll_interval_s
        self.debounce_s = debounce_s

        self._machines: dict[str, SandboxStateMachine] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._attempts: dict[str, int] = {}
        self._ever_healthy: set[str] = set()
        self._checks: dict[str, asyncio.Task] = {}
        self._last_refresh: dict[str, float] = {}
        self._pollers: dict[str, asyncio.Task] = {}
        self._reports: dict[str, HealthReport] = {}

    def machine(self, project_id: str) -> SandboxStateMachine:
        return self._machines.setdefault(project_id, SandboxStateMachine())

    def state(self, project_id: str) -> SandboxState:
        return self.machine(project_id).state

    def last_report(self, project_id: str) -> Optional[HealthReport]:
        return self._reports.get(project_id)

    def is_recovering(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()

    # =========================================================================
    # Health checks
    # =========================================================================

    def _apply_report(self, project_id: str, report: HealthReport, sandbox_url: Optional[str]) -> SandboxState:
        machine = self.machine(project_id)

        if report.reason == HealthReason.NO_GENERATION_YET:
            return machine.dispatch(Action(ActionType.RESET))

        if not report.is_broken:
            self._ever_healthy.add(project_id)
            return machine.dispatch(Action(
                ActionType.HEALTH_CHECK_SUCCESS,
                sandbox_id=report.sandbox_id,
                sandbox_url=sandbox_url,
            ))

        if report.reason in (HealthReason.MISSING_SANDBOX, HealthReason.SANDBOX_UNREACHABLE):
            return machine.dispatch(Action(ActionType.SANDBOX_EXPIRED, sandbox_id=report.sandbox_id))

        return machine.dispatch(Action(
            ActionType.HEALTH_CHECK_FAILED,
            can_recover=True,
            error=f"Sandbox is not responding ({report.reason.value})",
        ))

    async def _run_check(self, project_id: str) -> SandboxState:
        try:
            report = await self.checker.check(project_id)
        except SandboxError as e:
            logger.warning(f"[HealthRecovery] Health check errored for {project_id}: {e}")
            return self.machine(project_id).dispatch(Action(
                ActionType.HEALTH_CHECK_FAILED,
                can_recover=False,
                error=e.message,
            ))

        self._reports[project_id] = report
        project = await self.store.get_project(project_id)
        return self._apply_report(project_id, report, project.sandbox_url if project else None)

    async def check(self, project_id: str) -> SandboxState:
        """Run a health check now, joining one already in flight."""
        in_flight = self._checks.get(project_id)
        if in_flight is not None and not in_flight.done():
            return await asyncio.shield(in_flight)

        task = asyncio.create_task(self._run_check(project_id), name=f"health-check:{project_id}")
        self._checks[project_id] = task
        try:
            return await task
        finally:
            if self._checks.get(project_id) is task:
                del self._checks[project_id]

    async def refresh(self, project_id: str) -> Optional[SandboxState]:
        """
        On-demand check from user actions. Returns None when skipped because
        a check is in flight or the last refresh was under the debounce window.
        """
        in_flight = self._checks.get(project_id)
        if in_flight is not None and not in_flight.done():
            logger.debug(f"[HealthRecovery] Refresh skipped for {project_id}: check in flight")
            return None

        now = asyncio.get_running_loop().time()
        last = self._last_refresh.get(project_id)
        if last is not None and now - last < self.debounce_s:
            logger.debug(f"[HealthRecovery] Refresh debounced for {project_id}")
            return None

        self._last_refresh[project_id] = now
        return await self.check(project_id)

    # =========================================================================
    # Recovery
    # =========================================================================

    def _progress(self, project_id: str, stage: RecoveryStage) -> None:
        self.machine(project_id).dispatch(Action(ActionType.RECOVERY_PROGRESS, stage=stage))

    async def recover(
        self,
        project_id: str,
        fragment_id: Optional[str] = None,
        template_name: Optional[str] = None,
    ) -> Optional[RecoveryResult]:
        """Recover now. Returns None if a recovery for the project is already running."""
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        if lock.locked():
            logger.warning(f"[HealthRecovery] Recovery already in progress for {project_id}, skipping")
            return None

        async with lock:
            machine = self.machine(project_id)
            attempt = self._attempts.get(project_id, 0) + 1
            machine.dispatch(Action(ActionType.RECOVERY_STARTED, attempt=attempt))

            try:
                result = await self.ensure_sandbox_recovered(project_id, fragment_id, template_name)
            except SandboxError as e:
                attempts = self._attempts.get(project_id, 0) + 1
                self._attempts[project_id] = attempts
                can_retry = attempts < self.strategy.max_attempts
                logger.error(f"[HealthRecovery] Recovery attempt {attempt} failed for {project_id}: {e}")
                machine.dispatch(Action(ActionType.RECOVERY_FAILED, error=e.message, can_retry=can_retry))
                raise

            self._attempts[project_id] = 0
            self._ever_healthy.add(project_id)
            machine.dispatch(Action(
                ActionType.RECOVERY_SUCCESS,
                sandbox_id=result.sandbox_id,
                sandbox_url=result.sandbox_url,
            ))
            return result

    async def ensure_sandbox_recovered(
        self,
        project_id: str,
        fragment_id: Optional[str] = None,
        template_name: Optional[str] = None,
    ) -> RecoveryResult:
        """
        Re-provision a broken sandbox, verify it and mark the project READY.

        A healthy project is left untouched.
        """
        project = await self.store.get_project(project_id)
        if project is None:
            raise SandboxError(f"Project not found: {project_id}")

        health = await self.checker.check(project_id)
        if not health.is_broken:
            if health.reason == HealthReason.NO_GENERATION_YET:
                logger.info(f"[HealthRecovery] Skipping recovery for new project {project_id}")
            return RecoveryResult(recovered=False, sandbox_id=project.sandbox_id, sandbox_url=project.sandbox_url)

        previous_sandbox_id = project.sandbox_id
        start_fragment = fragment_id or project.active_fragment_id
        self._progress(project_id, RecoveryStage.PREPARING)
        target = await find_recovery_snapshot(
            self.store,
            project_id,
            start_fragment,
            template_name or project.template_name,
        )

        template = target.template_name
        if target.image_id is None and template is None:
            template = resolve_template(template_name or project.template_name, None)

        logger.info(
            f"[HealthRecovery] Recovering {project_id} ({health.reason.value}) from {target.source} "
            f"image={target.image_id} fragment={target.fragment_id or start_fragment}"
        )

        self._progress(project_id, RecoveryStage.CREATING)
        handle = await self.provisioner.get_or_create(
            project_id,
            ProvisionOptions(
                fragment_id=target.fragment_id or start_fragment,
                template_name=template,
                recovery_image_id=target.image_id,
                force_new=True,
                imported_from=project.imported_from,
            ),
        )

        self._progress(project_id, RecoveryStage.RESTORING)
        await self.store.update_build_status(project_id, BuildStatus.READY)

        self._progress(project_id, RecoveryStage.VALIDATING)
        verification = await self.checker.check(project_id)
        if verification.is_broken:
            logger.error(
                f"[HealthRecovery] Recovery verification failed for {project_id}: "
                f"{verification.reason.value} {verification.missing_files}"
            )
            raise RestorationError(
                "Sandbox recovery failed verification. Critical files still missing.",
                sandbox_id=handle.sandbox_id,
                details={"missing_files": verification.missing_files},
            )

        self._progress(project_id, RecoveryStage.FINALIZING)
        if previous_sandbox_id and previous_sandbox_id != handle.sandbox_id:
            await self._retire(previous_sandbox_id)

        refreshed = await self.store.get_project(project_id)
        logger.info(f"[HealthRecovery] Recovered {project_id} into sandbox {handle.sandbox_id}")
        return RecoveryResult(
            recovered=True,
            sandbox_id=handle.sandbox_id,
            sandbox_url=refreshed.sandbox_url if refreshed else None,
            source=target.source,
        )

    async def _retire(self, sandbox_id: str) -> None:
        """Terminate a replaced sandbox once no project points at it."""
        if await self.store.count_projects_with_sandbox(sandbox_id) > 0:
            return
        await self.provisioner.terminate(sandbox_id)

    async def maybe_auto_recover(self, project_id: str) -> Optional[RecoveryResult]:
        """Schedule a recovery attempt per the configured strategy, if one is due."""
        if self.strategy.max_attempts == 0:
            return None
        if project_id not in self._ever_healthy:
            logger.debug(f"[HealthRecovery] Skipping recovery for {project_id}: never had a healthy sandbox")
            return None
        if self.is_recovering(project_id) or not self.machine(project_id).should_recover:
            return None

        attempts = self._attempts.get(project_id, 0)
        if attempts >= self.strategy.max_attempts:
            return None

        delay = self.strategy.delay_s(attempts)
        logger.info(f"[HealthRecovery] Scheduling recovery attempt {attempts + 1} for {project_id} in {delay}s")
        await asyncio.sleep(delay)
        return await self.recover(project_id)

    # =========================================================================
    # Polling
    # =========================================================================

    async def _poll(self, project_id: str) -> None:
        while True:
            try:
                await self.check(project_id)
                await self.maybe_auto_recover(project_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[HealthRecovery] Poll iteration failed for {project_id}: {e}")
            await asyncio.sleep(self.poll_interval_s)

    def is_watching(self, project_id: str) -> bool:
        task = self._pollers.get(project_id)
        return task is not None and not task.done()

    def start(self, project_id: str) -> None:
        if self.is_watching(project_id):
            return
        self._pollers[project_id] = asyncio.create_task(self._poll(project_id), name=f"health-poll:{project_id}")
        logger.info(f"[HealthRecovery] Watching project {project_id} every {self.poll_interval_s}s")

    async def stop(self, project_id: str) -> None:
        task = self._pollers.pop(project_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop_all(self) -> None:
        for project_id in list(self._pollers):
            await self.stop(project_id)
