"""OS-managed tunnel engine.

The platform owns the tunnel process; this engine installs or loads the
tunnel profile, hands it the configuration and maps its state changes onto
the shared status machine.
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import structlog

from proxyhelm.core.engine.state import InvalidStateError, StatusChannel, StatusHandler
from proxyhelm.core.interfaces.collaborators import ITunnelProfile, ITunnelProvider, TunnelState
from proxyhelm.core.models.config import Config
from proxyhelm.core.models.configuration import ProxyConfiguration
from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.status import (
    ConnectionInfo,
    ConnectionStatus,
    EngineType,
    StatusKind,
)
from proxyhelm.core.runtime.materializer import analyze_config_file

logger = structlog.get_logger(__name__)

# Grace period for the OS to report the tunnel down after a stop request
STOP_WAIT_TIMEOUT = 5.0


class TunnelEngine:
    """Runs the core inside an OS tunnel provided by the platform."""

    def __init__(self, provider: ITunnelProvider, config: Config | None = None) -> None:
        self.provider = provider
        self.config = config or Config()
        self.settings = self.config.tunnel
        self._channel = StatusChannel(EngineType.TUNNEL.value)
        self._profile: ITunnelProfile | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._start_task: asyncio.Task[ConnectionInfo] | None = None
        self._start_failure: str | None = None
        self._stopping = False

    @property
    def engine_type(self) -> EngineType:
        return EngineType.TUNNEL

    @property
    def status(self) -> ConnectionStatus:
        return self._channel.current

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]:
        return self._channel.subscribe(handler)

    def watch(self) -> AsyncIterator[ConnectionStatus]:
        return self._channel.watch()

    async def check_prerequisites(self) -> None:
        """
        Raises:
            ProxyError: tunnel_not_installed or tunnel_not_approved
        """
        if not await self.provider.is_installed():
            raise ProxyError.tunnel_not_installed()
        if not await self.provider.is_approved():
            raise ProxyError.tunnel_not_approved()

    async def validate(self, config: ProxyConfiguration) -> list[ProxyError]:
        errors: list[ProxyError] = []
        try:
            config.validate()
            await asyncio.to_thread(analyze_config_file, config.config_path)
        except ProxyError as e:
            errors.append(e)
        try:
            await self.check_prerequisites()
        except ProxyError as e:
            errors.append(e)
        return errors

    # Start

    async def start(self, config: ProxyConfiguration) -> None:
        """
        Bring the tunnel up with ``config``.

        Raises:
            InvalidStateError: If not disconnected or errored; nothing changes
            ProxyError: On failure; the engine ends in the error state
        """
        status = self._channel.current
        if not status.accepts_start:
            raise InvalidStateError("start", status)

        self._stopping = False
        self._start_failure = None
        self._channel.publish(ConnectionStatus.connecting())
        self._start_task = asyncio.create_task(self._begin(config))
        try:
            info = await self._start_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._stopping and current is not None and not current.cancelling():
                raise ProxyError.unknown("Connection attempt cancelled") from None
            await self._abort()
            if self._channel.kind == StatusKind.CONNECTING:
                self._channel.publish(ConnectionStatus.disconnecting())
                self._channel.publish(ConnectionStatus.disconnected())
            raise
        except ProxyError as e:
            await self._abort()
            logger.error("Tunnel start failed", error=e.description)
            self._channel.publish(ConnectionStatus.failed(e))
            raise
        except Exception as e:
            logger.exception("Unexpected error starting tunnel", error=str(e))
            await self._abort()
            error = ProxyError.unknown(str(e))
            self._channel.publish(ConnectionStatus.failed(error))
            raise error from e
        finally:
            self._start_task = None

        self._channel.publish(ConnectionStatus.connected(info))
        logger.info("Tunnel connected", config=info.config_name)

    async def _begin(self, config: ProxyConfiguration) -> ConnectionInfo:
        config.validate()
        summary = await asyncio.to_thread(analyze_config_file, config.config_path)
        await self.check_prerequisites()

        profile = await self._load_profile()
        shared = await asyncio.to_thread(self._share_config, config.config_path)

        self._attach(profile)
        try:
            await profile.start({"ConfigPath": str(shared)})
        except ProxyError:
            raise
        except Exception as e:
            raise ProxyError.tunnel_start_failed(str(e)) from e

        await self._wait_connected(profile)
        return ConnectionInfo(
            engine_type=EngineType.TUNNEL,
            config_name=config.display_name,
            listen_ports=summary.listen_ports,
        )

    async def _load_profile(self) -> ITunnelProfile:
        try:
            profile = await self.provider.load()
            if profile is None:
                logger.info("Installing tunnel profile")
                await self.provider.install()
                profile = await self.provider.load()
        except ProxyError:
            raise
        except Exception as e:
            raise ProxyError.tunnel_load_failed(str(e)) from e
        if profile is None:
            raise ProxyError.tunnel_load_failed("Tunnel profile missing after install")
        return profile

    def _share_config(self, config_path: Path) -> Path:
        shared = self.provider.shared_config_path
        try:
            shared.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(config_path, shared)
        except OSError as e:
            raise ProxyError.tunnel_start_failed(f"Cannot share configuration: {e}") from e
        return shared

    async def _wait_connected(self, profile: ITunnelProfile) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.connect_timeout
        while loop.time() < deadline:
            if profile.state == TunnelState.CONNECTED:
                return
            if self._start_failure is not None:
                raise ProxyError.tunnel_start_failed(self._start_failure)
            await asyncio.sleep(self.settings.poll_interval)
        raise ProxyError.timeout(f"Tunnel did not connect within {self.settings.connect_timeout:g}s")

    # Tunnel state mapping

    def _attach(self, profile: ITunnelProfile) -> None:
        self._detach()
        self._profile = profile
        self._unsubscribe = profile.subscribe(self._on_tunnel_state)

    def _detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_tunnel_state(self, state: TunnelState) -> None:
        kind = self._channel.kind
        logger.debug("Tunnel state changed", tunnel=state.value, status=kind.value)

        if state == TunnelState.DISCONNECTING and kind == StatusKind.CONNECTED:
            self._channel.publish(ConnectionStatus.disconnecting())
            return

        if state not in (TunnelState.DISCONNECTED, TunnelState.INVALID):
            return

        reason = self._profile.last_error if self._profile else None
        if kind == StatusKind.CONNECTING:
            self._start_failure = reason or "Tunnel disconnected during start"
        elif kind in (StatusKind.CONNECTED, StatusKind.DISCONNECTING) and not self._stopping:
            detail = "Tunnel disconnected unexpectedly"
            if reason:
                detail = f"{detail}: {reason}"
            self._detach()
            self._channel.publish(ConnectionStatus.failed(ProxyError.tunnel_start_failed(detail)))
        elif kind == StatusKind.DISCONNECTING:
            self._channel.publish(ConnectionStatus.disconnected())

    # Stop

    async def _abort(self) -> None:
        profile = self._profile
        self._detach()
        if profile is not None and profile.state not in (TunnelState.DISCONNECTED, TunnelState.INVALID):
            try:
                await profile.stop()
            except Exception as e:
                logger.warning("Tunnel stop after failed start errored", error=str(e))

    async def stop(self) -> None:
        """
        Ask the OS to tear the tunnel down.

        Raises:
            InvalidStateError: If a stop is already in progress
        """
        status = self._channel.current
        if status.kind == StatusKind.DISCONNECTED:
            return
        if status.kind == StatusKind.DISCONNECTING:
            raise InvalidStateError("stop", status)

        self._stopping = True
        self._channel.publish(ConnectionStatus.disconnecting())

        task = self._start_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

        profile = self._profile
        if profile is not None:
            try:
                await profile.stop()
            except Exception as e:
                logger.warning("Tunnel stop request failed", error=str(e))
            loop = asyncio.get_running_loop()
            deadline = loop.time() + STOP_WAIT_TIMEOUT
            while loop.time() < deadline and profile.state not in (
                TunnelState.DISCONNECTED,
                TunnelState.INVALID,
            ):
                await asyncio.sleep(self.settings.poll_interval)
        self._detach()

        if self._channel.kind != StatusKind.DISCONNECTED:
            self._channel.publish(ConnectionStatus.disconnected())
        logger.info("Tunnel stopped")

    async def close(self) -> None:
        self._detach()
