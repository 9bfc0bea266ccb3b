"""Connection orchestrator - picks an engine and keeps the connection alive."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

from proxyhelm.core.engine.daemon import DaemonEngine
from proxyhelm.core.engine.ephemeral import EphemeralProcessEngine
from proxyhelm.core.engine.selection import detect_capabilities, select_engine_type
from proxyhelm.core.engine.state import InvalidStateError, StatusChannel, StatusHandler
from proxyhelm.core.engine.tunnel import TunnelEngine
from proxyhelm.core.events.bus import LifecycleEvents
from proxyhelm.core.events.types import EventType
from proxyhelm.core.ipc.client import DaemonClient
from proxyhelm.core.models.config import Config
from proxyhelm.core.models.configuration import LogLevel, ProxyConfiguration
from proxyhelm.core.models.errors import ProxyError, ProxyErrorKind
from proxyhelm.core.models.status import (
    ConnectionInfo,
    ConnectionStatus,
    EngineType,
    StatusKind,
)
from proxyhelm.core.runtime.binaries import CoreBinaryResolver
from proxyhelm.core.runtime.materializer import (
    ConfigMaterializer,
    InboundSummary,
    analyze_config_file,
)
from proxyhelm.core.runtime.system_proxy import SystemProxyError

if TYPE_CHECKING:
    from proxyhelm.core.engine.elevation import Elevator
    from proxyhelm.core.interfaces.collaborators import ISystemProxyController, ITunnelProvider
    from proxyhelm.core.interfaces.engine import IProxyEngine
    from proxyhelm.core.models.profile import Profile

logger = structlog.get_logger(__name__)

EngineFactory = Callable[[EngineType], "IProxyEngine"]


class NoActiveProfileError(RuntimeError):
    """restart() was called before any profile was connected."""


class ConnectionOrchestrator:
    """
    Single entry point for connecting a profile.

    Owns at most one engine at a time, mirrors its status to subscribers and
    schedules one delayed reconnect when an established connection drops
    without being asked to.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        events: LifecycleEvents | None = None,
        daemon_client: DaemonClient | None = None,
        tunnel_provider: ITunnelProvider | None = None,
        system_proxy: ISystemProxyController | None = None,
        materializer: ConfigMaterializer | None = None,
        binaries: CoreBinaryResolver | None = None,
        elevator: Elevator | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self.config = config or Config()
        self.id = str(uuid4())[:8]
        self.events = events or LifecycleEvents()

        daemon = self.config.daemon
        self.daemon_client = daemon_client or DaemonClient(
            daemon.socket_path,
            timeout=daemon.request_timeout,
            probe_timeout=daemon.probe_timeout,
            auth_token=daemon.auth_token,
        )
        self.tunnel_provider = tunnel_provider
        self.system_proxy = system_proxy
        self.materializer = materializer or ConfigMaterializer(self.config.paths.configs_dir)
        self.binaries = binaries or CoreBinaryResolver(self.config.core)
        self._elevator = elevator
        self._engine_factory = engine_factory or self._create_engine

        self._channel = StatusChannel("orchestrator", strict=False)
        self._engine: IProxyEngine | None = None
        self._unsubscribe_engine: Callable[[], None] | None = None
        self._last_profile: Profile | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._attempt = 0
        self._was_connected = False
        self._user_stopping = False
        self._proxy_applied = False
        self._fallback_armed = False

    # Read-only state

    @property
    def status(self) -> ConnectionStatus:
        return self._channel.current

    @property
    def connection_info(self) -> ConnectionInfo | None:
        return self._channel.current.info

    @property
    def engine(self) -> IProxyEngine | None:
        return self._engine

    @property
    def last_profile(self) -> Profile | None:
        return self._last_profile

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]:
        return self._channel.subscribe(handler)

    def watch(self) -> AsyncIterator[ConnectionStatus]:
        return self._channel.watch()

    # Lifecycle

    async def start(self) -> None:
        """Start event delivery and adopt a core the helper service already runs."""
        await self.events.start()
        logger.info("Orchestrator started", id=self.id)

        if self._engine is not None or not await self.daemon_client.is_available():
            return
        engine = self._engine_factory(EngineType.DAEMON)
        if not isinstance(engine, DaemonEngine):
            return
        self._bind(engine)
        await engine.sync_initial_state()
        if not engine.status.is_connected:
            await self._unbind()

    async def close(self) -> None:
        """Stop background work. A running core is left running."""
        self._cancel_reconnect()
        await self._unbind()
        await self.events.stop()
        logger.info("Orchestrator closed", id=self.id)

    # Engine binding

    def _create_engine(self, engine_type: EngineType) -> IProxyEngine:
        if engine_type == EngineType.DAEMON:
            return DaemonEngine(self.config, client=self.daemon_client)
        if engine_type == EngineType.TUNNEL:
            if self.tunnel_provider is None:
                raise ProxyError.tunnel_not_installed()
            return TunnelEngine(self.tunnel_provider, self.config)
        return EphemeralProcessEngine(self.config, elevator=self._elevator)

    def _bind(self, engine: IProxyEngine) -> None:
        self._engine = engine
        self._unsubscribe_engine = engine.subscribe(self._on_engine_status)

    async def _unbind(self) -> None:
        engine = self._engine
        if self._unsubscribe_engine is not None:
            self._unsubscribe_engine()
            self._unsubscribe_engine = None
        self._engine = None
        if engine is not None:
            await engine.close()

    def _on_engine_status(self, previous: ConnectionStatus, current: ConnectionStatus) -> None:
        held = current.is_error and current.error.kind == ProxyErrorKind.SERVICE_UNAVAILABLE
        if held and self._fallback_armed:
            # The fallback engine reports the outcome instead
            logger.debug("Holding back helper service error during fallback")
            return
        self._channel.publish(current)
        self._emit(EventType.CONNECTION_STATUS_CHANGED, current.to_dict())

        if current.is_connected:
            self._was_connected = True
            return
        dropped = current.kind in (StatusKind.DISCONNECTED, StatusKind.ERROR)
        if dropped and self._was_connected and not self._user_stopping:
            self._was_connected = False
            logger.warning(
                "Connection dropped unexpectedly",
                status=current.kind.value,
                error=current.error.description if current.error else None,
            )
            self._schedule_reconnect()

    def _emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        self.events.publish(event_type, data)

    # Connect

    async def connect(self, profile: Profile) -> None:
        """
        Connect ``profile`` through the best available engine.

        Raises:
            InvalidStateError: If a connection exists or is in transition
            ProxyError: If the connection could not be established
        """
        status = self._channel.current
        if not status.accepts_start:
            raise InvalidStateError("connect", status)

        self._cancel_reconnect()
        self._attempt += 1
        attempt = self._attempt
        self._last_profile = profile
        self._was_connected = False
        self._channel.publish(ConnectionStatus.connecting())
        self._emit(EventType.CONNECTION_REQUESTED, {"profile": profile.to_dict()})
        logger.info("Connecting", profile=profile.name, preferred=profile.preferred_engine)

        try:
            await self._teardown_previous()
            capabilities = await detect_capabilities(
                self.daemon_client, self.tunnel_provider, profile.preferred_engine
            )
            engine_type = select_engine_type(profile.preferred_engine, capabilities)
            config, summary = await self._prepare(profile)
            self._emit(EventType.ENGINE_SELECTED, {"engine": engine_type.value})
            logger.info("Engine selected", engine=engine_type.value)
            if attempt != self._attempt:
                raise ProxyError.unknown("Connection attempt cancelled")

            engine_type = await self._start_engine(engine_type, config)
        except (ProxyError, InvalidStateError) as e:
            if attempt != self._attempt:
                raise
            error = e if isinstance(e, ProxyError) else ProxyError.unknown(str(e))
            self._channel.publish(ConnectionStatus.failed(error))
            self._emit(EventType.CONNECTION_FAILED, error.to_dict())
            logger.error("Connect failed", profile=profile.name, error=error.description)
            raise
        except Exception as e:
            logger.exception("Unexpected error connecting", profile=profile.name, error=str(e))
            error = ProxyError.unknown(str(e))
            if attempt == self._attempt:
                self._channel.publish(ConnectionStatus.failed(error))
                self._emit(EventType.CONNECTION_FAILED, error.to_dict())
            raise error from e

        if attempt != self._attempt:
            return
        if summary.system_proxy is not None and engine_type != EngineType.DAEMON:
            await self._apply_system_proxy(summary)
        self._emit(EventType.CONNECTION_ESTABLISHED, self._channel.current.to_dict())

    async def _teardown_previous(self) -> None:
        """Release an engine left behind by a failed attempt or a drop."""
        engine = self._engine
        if engine is None:
            return
        if self._unsubscribe_engine is not None:
            self._unsubscribe_engine()
            self._unsubscribe_engine = None
        if engine.status.kind != StatusKind.DISCONNECTED:
            with contextlib.suppress(InvalidStateError):
                await engine.stop()
        await self._unbind()
        await self._restore_system_proxy()

    async def _prepare(self, profile: Profile) -> tuple[ProxyConfiguration, InboundSummary]:
        config_path = await asyncio.to_thread(self.materializer.materialize, profile)
        core_path = self.binaries.resolve()
        summary = await asyncio.to_thread(analyze_config_file, config_path)
        config = ProxyConfiguration(
            profile_id=profile.id,
            config_path=config_path,
            core_path=core_path,
            log_level=LogLevel(self.config.core.log_level),
            display_name=profile.name,
        )
        return config, summary

    async def _start_engine(self, engine_type: EngineType, config: ProxyConfiguration) -> EngineType:
        engine = self._engine_factory(engine_type)
        self._bind(engine)
        self._fallback_armed = engine_type == EngineType.DAEMON
        try:
            await engine.start(config)
            return engine_type
        except ProxyError as e:
            if engine_type != EngineType.DAEMON or e.kind != ProxyErrorKind.SERVICE_UNAVAILABLE:
                raise
            logger.warning("Helper service unreachable, falling back", error=e.description)
            self._emit(
                EventType.ENGINE_FALLBACK,
                {"from": EngineType.DAEMON.value, "to": EngineType.EPHEMERAL.value},
            )
        finally:
            self._fallback_armed = False

        await self._unbind()
        self._channel.publish(ConnectionStatus.connecting())
        fallback = self._engine_factory(EngineType.EPHEMERAL)
        self._bind(fallback)
        await fallback.start(config)
        return EngineType.EPHEMERAL

    # Disconnect

    async def disconnect(self) -> None:
        """
        Tear the connection down. No-op when already disconnected.

        Raises:
            InvalidStateError: If a disconnect is already in progress
        """
        status = self._channel.current
        if status.kind == StatusKind.DISCONNECTED:
            return
        if status.kind == StatusKind.DISCONNECTING:
            raise InvalidStateError("disconnect", status)

        self._cancel_reconnect()
        self._attempt += 1
        self._user_stopping = True
        self._was_connected = False
        self._channel.publish(ConnectionStatus.disconnecting())
        logger.info("Disconnecting", engine=self._engine.engine_type.value if self._engine else None)

        try:
            if self._engine is not None:
                await self._engine.stop()
        finally:
            await self._restore_system_proxy()
            await self._unbind()
            self._user_stopping = False
            self._channel.publish(ConnectionStatus.disconnected())
            self._emit(EventType.CONNECTION_CLOSED)

    async def restart(self) -> None:
        """
        Disconnect if connected, then connect the last profile again.

        Raises:
            NoActiveProfileError: If nothing was connected before
        """
        profile = self._last_profile
        if profile is None:
            raise NoActiveProfileError("No profile has been connected")
        if self._channel.current.kind in (StatusKind.CONNECTED, StatusKind.CONNECTING):
            await self.disconnect()
        await self.connect(profile)

    # Auto-reconnect

    def _schedule_reconnect(self) -> None:
        if not self.config.reconnect.enabled or self._last_profile is None:
            return
        if self.reconnect_pending:
            return
        delay = self.config.reconnect.delay
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))
        self._emit(EventType.RECONNECT_SCHEDULED, {"delay": delay})
        logger.info("Reconnect scheduled", delay=delay)

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            self._emit(EventType.RECONNECT_CANCELLED)
            logger.debug("Pending reconnect cancelled")

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        profile = self._last_profile
        if profile is None or not self._channel.current.accepts_start:
            return
        self._emit(EventType.RECONNECT_STARTED, {"profile": profile.to_dict()})
        logger.info("Reconnecting", profile=profile.name)
        try:
            await self.connect(profile)
        except (ProxyError, InvalidStateError) as e:
            logger.error("Reconnect failed", error=str(e))

    # System proxy

    async def _apply_system_proxy(self, summary: InboundSummary) -> None:
        if self.system_proxy is None or summary.system_proxy is None:
            return
        try:
            await self.system_proxy.apply(summary.system_proxy)
        except (SystemProxyError, OSError) as e:
            logger.warning("Could not apply system proxy", error=str(e))
            return
        self._proxy_applied = True
        self._emit(EventType.SYSTEM_PROXY_APPLIED, summary.system_proxy.model_dump())

    async def _restore_system_proxy(self) -> None:
        if not self._proxy_applied or self.system_proxy is None:
            return
        self._proxy_applied = False
        try:
            await self.system_proxy.restore()
        except (SystemProxyError, OSError) as e:
            logger.warning("Could not restore system proxy", error=str(e))
            return
        self._emit(EventType.SYSTEM_PROXY_RESTORED)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for display."""
        return {
            "id": self.id,
            "status": self._channel.current.to_dict(),
            "engine": self._engine.engine_type.value if self._engine else None,
            "profile": self._last_profile.to_dict() if self._last_profile else None,
            "reconnect_pending": self.reconnect_pending,
            "timestamp": datetime.now().isoformat(),
        }
