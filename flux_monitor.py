"""
flux_monitor.py

Live event monitor and readiness poller for Flux reconciliations.

Features:
- Watches Kubernetes events of exactly one Flux object (kustomization, helmrelease or source).
- Deduplicates the noisy event stream with a fingerprint of the most recent events.
- Promotes HealthCheckFailed / DependencyNotReady events to warnings.
- Polls the object's status.conditions until Ready=True, a deadline elapses, or the scope is cancelled.
- Every API call is bounded by its own request timeout and abandoned on cancellation.

Env vars (all prefixed with FLUX_MONITOR_):
- FLUX_MONITOR_EVENT_POLL_INTERVAL   (default: 3.0)
- FLUX_MONITOR_READY_POLL_INTERVAL   (default: 2.0)
- FLUX_MONITOR_EVENT_LIMIT           (default: 10)
- FLUX_MONITOR_REQUEST_TIMEOUT       (default: 10.0)
- FLUX_MONITOR_DEFAULT_NAMESPACE     (default: flux-system)
- FLUX_MONITOR_DEFAULT_TIMEOUT       (default: 300)
- FLUX_MONITOR_FLUX_BINARY           (default: flux)
- FLUX_MONITOR_LOG_LEVEL             (default: WARNING)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Protocol, Sequence, TypeVar

import kubernetes
from kubernetes.client import ApiClient, Configuration, CoreV1Api, CustomObjectsApi
from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings
from rich.logging import RichHandler

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =========================
# Settings
# =========================

class MonitorSettings(BaseSettings):
    event_poll_interval: float = 3.0
    ready_poll_interval: float = 2.0
    event_limit: int = 10
    request_timeout: float = 10.0
    default_namespace: str = "flux-system"
    default_timeout: float = 300.0
    flux_binary: str = "flux"
    log_level: str = "WARNING"

    class Config:
        env_prefix = "FLUX_MONITOR_"

    @field_validator(
        "event_poll_interval",
        "ready_poll_interval",
        "event_limit",
        "request_timeout",
        "default_timeout",
    )
    @classmethod
    def must_be_positive(cls, v, info: ValidationInfo):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("default_namespace", "flux_binary", "log_level")
    @classmethod
    def must_not_be_empty(cls, v: str, info: ValidationInfo):
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} must not be empty")
        return v.strip()


def setup_logging(level: str = "WARNING") -> None:
    """Route log records to stderr through rich."""
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(RichHandler(show_path=False, rich_tracebacks=True))
    root.setLevel(getattr(logging, level.upper(), logging.WARNING))


# =========================
# Constants
# =========================

class FluxResource(NamedTuple):
    group: str
    version: str
    plural: str


KIND_RESOURCES: Dict[str, FluxResource] = {
    "kustomization": FluxResource("kustomize.toolkit.fluxcd.io", "v1", "kustomizations"),
    "helmrelease": FluxResource("helm.toolkit.fluxcd.io", "v2beta1", "helmreleases"),
    "source": FluxResource("source.toolkit.fluxcd.io", "v1", "gitrepositories"),
    "gitrepository": FluxResource("source.toolkit.fluxcd.io", "v1", "gitrepositories"),
}

MONITORED_KINDS = ("kustomization", "helmrelease", "source")

# Reasons shown as warnings whatever severity the controller reports.
WATCHED_REASONS = frozenset({"HealthCheckFailed", "DependencyNotReady"})

READY_CONDITION = "Ready"
FINGERPRINT_WINDOW = 3
SHOWN_EVENTS = 2


# =========================
# Errors
# =========================

class FluxMonitorError(Exception):
    """Base class for terminal monitor outcomes."""


class UnsupportedKind(FluxMonitorError):
    def __init__(self, kind: str):
        super().__init__(f"unsupported resource kind: {kind}")
        self.kind = kind


class ReconcileTimeout(FluxMonitorError):
    def __init__(self, kind: str, timeout: float):
        super().__init__(f"timeout waiting for {kind} reconciliation after {timeout:g}s")
        self.kind = kind
        self.timeout = timeout


class ReconcileCancelled(FluxMonitorError):
    pass


class MonitorSetupError(FluxMonitorError):
    pass


# =========================
# Data model
# =========================

@dataclass(frozen=True)
class ReconcileTarget:
    kind: str
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass(frozen=True)
class EventRecord:
    reason: str
    message: str
    severity: str = "Normal"

    @property
    def is_warning(self) -> bool:
        return self.severity.lower() == "warning" or self.reason in WATCHED_REASONS


@dataclass(frozen=True)
class EventNotice:
    reason: str
    message: str
    is_warning: bool


class EventSource(Protocol):
    def list_recent_events(self, namespace: str, name: str, limit: int) -> List[EventRecord]:
        ...


class StatusAccessor(Protocol):
    def get_resource_status(
        self, group: str, version: str, plural: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        ...


# =========================
# Helper functions
# =========================

def resolve_kind(kind: str) -> FluxResource:
    """Map a resource kind to its Flux API coordinates."""
    try:
        return KIND_RESOURCES[kind]
    except KeyError:
        raise UnsupportedKind(kind) from None


def event_fingerprint(events: Sequence[EventRecord]) -> str:
    """Summarize the last few events, newest first, for change detection."""
    window = list(events)[-FINGERPRINT_WINDOW:]
    return "\n".join(f"{e.reason}:{e.severity}:{e.message}" for e in reversed(window))


def recent_notices(events: Sequence[EventRecord], count: int = SHOWN_EVENTS) -> List[EventNotice]:
    """Build notices for the newest events, newest first."""
    newest = list(reversed(events))[:count]
    return [EventNotice(e.reason, e.message, e.is_warning) for e in newest]


def is_ready(document: Any) -> bool:
    """
    Check whether a resource document reports Ready=True.

    Missing status, missing conditions and malformed entries all mean
    "not ready yet": the controller has not populated them.
    """
    if not isinstance(document, dict):
        return False
    status = document.get("status")
    if not isinstance(status, dict):
        return False
    conditions = status.get("conditions")
    if not isinstance(conditions, list):
        return False
    for cond in conditions:
        if not isinstance(cond, dict):
            continue
        if cond.get("type") == READY_CONDITION and cond.get("status") == "True":
            return True
    return False


# =========================
# Cancellation
# =========================

class CancelScope:
    """
    A cancellation signal shared by every activity of one reconciliation.

    Cancelling a scope cancels all scopes derived from it. A scope may be
    armed to cancel itself after a delay (the overall timeout).
    """

    def __init__(self, parent: Optional["CancelScope"] = None):
        self._event = asyncio.Event()
        self._children: List["CancelScope"] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._event.is_set():
            return
        self._event.set()
        for child in self._children:
            child.cancel()

    def cancel_after(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.cancel)

    async def sleep(self, delay: float) -> bool:
        """Sleep for delay seconds. Returns True if the scope got cancelled instead."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, aw: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await aw unless the scope is cancelled or timeout elapses first.

        Raises ReconcileCancelled on cancellation and asyncio.TimeoutError on timeout;
        in both cases aw is abandoned.
        """
        task = asyncio.ensure_future(aw)
        if self.cancelled:
            task.cancel()
            raise ReconcileCancelled("operation cancelled")
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        if self.cancelled:
            raise ReconcileCancelled("operation cancelled")
        raise asyncio.TimeoutError()


# =========================
# Kubernetes access
# =========================

class KubeAccessor:
    """Event source and status accessor backed by the Kubernetes API."""

    def __init__(self, api_client: ApiClient, request_timeout: float = 10.0):
        self.core = CoreV1Api(api_client)
        self.custom = CustomObjectsApi(api_client)
        self.request_timeout = request_timeout

    @classmethod
    def from_environment(cls, request_timeout: float = 10.0) -> "KubeAccessor":
        """Load in-cluster config first, then fall back to the kubeconfig file."""
        configuration = Configuration()
        try:
            kubernetes.config.load_incluster_config(client_configuration=configuration)
        except kubernetes.config.ConfigException:
            try:
                kubernetes.config.load_kube_config(client_configuration=configuration)
            except (kubernetes.config.ConfigException, OSError) as exc:
                raise MonitorSetupError(f"failed to get kubeconfig: {exc}") from exc
        return cls(ApiClient(configuration), request_timeout=request_timeout)

    def list_recent_events(self, namespace: str, name: str, limit: int) -> List[EventRecord]:
        field_selector = f"involvedObject.name={name},involvedObject.namespace={namespace}"
        items = self.core.list_namespaced_event(
            namespace=namespace,
            field_selector=field_selector,
            limit=limit,
            _request_timeout=self.request_timeout,
        ).items
        return [
            EventRecord(
                reason=evt.reason or "",
                message=evt.message or "",
                severity=evt.type or "Normal",
            )
            for evt in items
        ]

    def get_resource_status(
        self, group: str, version: str, plural: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        return self.custom.get_namespaced_custom_object(
            group=group,
            version=version,
            namespace=namespace,
            plural=plural,
            name=name,
            _request_timeout=self.request_timeout,
        )


# =========================
# Readiness polling
# =========================

async def wait_for_ready(
    target: ReconcileTarget,
    statuses: StatusAccessor,
    scope: CancelScope,
    timeout: float,
    poll: float = 2.0,
    request_timeout: float = 10.0,
) -> None:
    """
    Poll the target's status until its Ready condition is True.

    Raises UnsupportedKind before any poll, ReconcileCancelled when the scope
    is cancelled, and ReconcileTimeout once the deadline has passed. Failed
    fetches are retried on the next tick.
    """
    resource = resolve_kind(target.kind)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        if await scope.sleep(poll):
            raise ReconcileCancelled(f"wait for {target} cancelled")
        now = loop.time()
        if now > deadline:
            raise ReconcileTimeout(target.kind, timeout)

        call = asyncio.to_thread(
            statuses.get_resource_status,
            resource.group,
            resource.version,
            resource.plural,
            target.namespace,
            target.name,
        )
        try:
            document = await scope.run(call, timeout=min(request_timeout, deadline - now))
        except ReconcileCancelled:
            raise
        except Exception as exc:
            logger.debug(f"[{target}] Status fetch failed, retrying: {exc}")
            continue

        if is_ready(document):
            return


# =========================
# Monitor session
# =========================

class MonitorSession:
    """
    Monitoring state of one reconciliation: target, event fingerprint and
    cancellation scope. Created by start(), torn down by stop().
    """

    def __init__(
        self,
        target: ReconcileTarget,
        events: EventSource,
        statuses: StatusAccessor,
        scope: CancelScope,
        on_event: Callable[[EventNotice], None],
        settings: MonitorSettings,
    ):
        self.target = target
        self.events = events
        self.statuses = statuses
        self.scope = scope
        self.on_event = on_event
        self.settings = settings
        self._lock = asyncio.Lock()
        self._last_fingerprint = ""

    async def check(self) -> None:
        """Report the newest events if the recent event window changed. Never raises."""
        call = asyncio.to_thread(
            self.events.list_recent_events,
            self.target.namespace,
            self.target.name,
            self.settings.event_limit,
        )
        try:
            events = await self.scope.run(call, timeout=self.settings.request_timeout)
        except ReconcileCancelled:
            return
        except Exception as exc:
            logger.debug(f"[{self.target}] Event listing failed: {exc}")
            return

        if not events:
            return

        fingerprint = event_fingerprint(events)
        async with self._lock:
            if fingerprint == self._last_fingerprint:
                return
            self._last_fingerprint = fingerprint

        for notice in recent_notices(events):
            self.on_event(notice)

    async def run(self) -> None:
        """Check events every tick until the scope is cancelled."""
        logger.debug(f"[{self.target}] Watching events every {self.settings.event_poll_interval}s.")
        while not await self.scope.sleep(self.settings.event_poll_interval):
            await self.check()
        logger.debug(f"[{self.target}] Event watch stopped.")

    async def wait_for_ready(self, timeout: float, scope: Optional[CancelScope] = None) -> None:
        """Wait for Ready under scope, or the session's own scope when none is given."""
        await wait_for_ready(
            self.target,
            self.statuses,
            scope or self.scope,
            timeout,
            poll=self.settings.ready_poll_interval,
            request_timeout=self.settings.request_timeout,
        )

    def stop(self) -> None:
        self.scope.cancel()


def start(
    kind: str,
    name: str,
    namespace: str,
    scope: CancelScope,
    on_event: Callable[[EventNotice], None],
    settings: Optional[MonitorSettings] = None,
    accessor: Optional[Any] = None,
) -> MonitorSession:
    """
    Start monitoring a reconciliation target under a child of scope.

    Without an explicit accessor, Kubernetes credentials are loaded from the
    environment; MonitorSetupError is raised if none are available.
    """
    settings = settings or MonitorSettings()
    if accessor is None:
        accessor = KubeAccessor.from_environment(settings.request_timeout)
    return MonitorSession(
        target=ReconcileTarget(kind=kind, name=name, namespace=namespace),
        events=accessor,
        statuses=accessor,
        scope=CancelScope(parent=scope),
        on_event=on_event,
        settings=settings,
    )
