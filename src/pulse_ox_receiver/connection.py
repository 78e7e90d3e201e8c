"""BLE oximeter connection lifecycle.

``ConnectionManager`` drives one logical device handle through

    Disconnected -> Connecting -> Probing -> Streaming(protocol) -> Disconnected

with ``Error(reason)`` reachable from any non-terminal state. All per-session
state (transport, subscription, smoothing history) lives in a ``_Session``
created by ``connect()`` and released on ``disconnect()``, on any failure
during setup, and on an external disconnect reported by the transport.
Nothing is cached across sessions: every ``connect()`` re-runs the full probe
from the highest-priority protocol.

The manager is single-threaded and event-loop bound. Notification payloads
are decoded synchronously in the transport callback; malformed or
out-of-range packets are dropped without affecting the stream.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Set

from bleak.exc import BleakError

from .config import OximeterConfig
from .decoders import Decoder, OximeterReading, ProtocolId
from .errors import (
    ConnectionFailedError,
    ConnectionInProgressError,
    OutOfRangeReading,
    SensorError,
    TransientDecodeError,
    UnsupportedDeviceError,
    UserCancelled,
)
from .probe import ProbeUnsupported, ProtocolProbe
from .smoothing import ReadingSmoother, median_smoother
from .transport import NotifyingCharacteristic, OximeterTransport

logger = logging.getLogger(__name__)


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    PROBING = "probing"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """State-machine value; ``protocol`` is set only while streaming."""

    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    protocol: Optional[ProtocolId] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class OximeterState:
    """Immutable snapshot published to UI collaborators.

    Attributes:
        spo2: Median-smoothed SpO2, None until the first valid packet.
        pulse_rate: Median-smoothed pulse rate, None until the first packet.
        is_connected: True while streaming.
        is_connecting: True while connecting or probing.
        device_name: Name of the streaming device.
        error: User-facing message of the last terminal failure.
        protocol: Protocol of the latest reading; ``HEURISTIC`` readings are
            low confidence.
        updated_at: Timestamp of the latest accepted reading.
    """

    spo2: Optional[int] = None
    pulse_rate: Optional[int] = None
    is_connected: bool = False
    is_connecting: bool = False
    device_name: Optional[str] = None
    error: Optional[str] = None
    protocol: Optional[ProtocolId] = None
    updated_at: Optional[float] = None


StateListener = Callable[[OximeterState], None]


class _Session:
    """Everything owned by one connection attempt."""

    def __init__(self, transport: OximeterTransport, window: int):
        self.transport: Optional[OximeterTransport] = transport
        self.subscription: Optional[NotifyingCharacteristic] = None
        self.protocol: Optional[ProtocolId] = None
        self.device_name: Optional[str] = None
        self.spo2_history: ReadingSmoother = median_smoother(window)
        self.pulse_history: ReadingSmoother = median_smoother(window)


class ConnectionManager:
    """Owns the connection to one oximeter and publishes its readings.

    Args:
        transport_factory: Returns a fresh (unopened) transport for each
            ``connect()``.
        config: Discovery/connection settings.
        probe: Protocol probe; defaults to the standard priority order.
    """

    def __init__(
        self,
        transport_factory: Callable[[], OximeterTransport],
        config: Optional[OximeterConfig] = None,
        probe: Optional[ProtocolProbe] = None,
    ) -> None:
        self.config = config if config else OximeterConfig()
        self._transport_factory = transport_factory
        self._probe = probe if probe else ProtocolProbe()

        self._session: Optional[_Session] = None
        self._connection = ConnectionState()
        self._state = OximeterState()
        self._listeners: List[StateListener] = []
        self._teardowns: Set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> OximeterState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        self._listeners.remove(listener)

    def _publish(self, state: OximeterState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Oximeter state listener failed")

    def _set_phase(
        self,
        phase: ConnectionPhase,
        protocol: Optional[ProtocolId] = None,
        reason: Optional[str] = None,
    ) -> None:
        if phase is not self._connection.phase:
            logger.info("Oximeter connection: %s -> %s", self._connection.phase.value, phase.value)
        self._connection = ConnectionState(phase, protocol, reason)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Discover, connect, and negotiate a protocol.

        Returns normally once streaming, or when the device chooser was
        dismissed (state goes back to Disconnected with no error).

        Raises:
            ConnectionInProgressError: Another attempt is connecting/probing.
            ConnectionFailedError: The transport could not be opened, the
                connect timeout elapsed, or the device went away mid-setup.
            UnsupportedDeviceError: No decoder matched the device.
        """
        if self._connection.phase in (ConnectionPhase.CONNECTING, ConnectionPhase.PROBING):
            raise ConnectionInProgressError("Oximeter connection already in progress")

        if self._session is not None:
            await self.disconnect()
        await self._drain_teardowns()

        session = _Session(self._transport_factory(), self.config.smoothing_window)
        self._session = session
        session.transport.set_disconnect_handler(lambda: self._on_external_disconnect(session))

        self._set_phase(ConnectionPhase.CONNECTING)
        self._publish(OximeterState(is_connecting=True))

        established = False
        try:
            if self.config.connect_timeout is not None:
                await asyncio.wait_for(self._establish(session), self.config.connect_timeout)
            else:
                await self._establish(session)
            established = True
        except UserCancelled:
            logger.info("Device chooser dismissed")
            await self._abort(session, None)
        except asyncio.TimeoutError as e:
            failure = ConnectionFailedError()
            logger.error("Oximeter connect timed out after %.1fs", self.config.connect_timeout)
            await self._abort(session, str(failure))
            raise failure from e
        except SensorError as e:
            logger.error("Oximeter connect failed: %s", e)
            await self._abort(session, str(e))
            raise
        finally:
            if not established:
                if self._session is session:
                    # Cancelled or unexpected failure
                    logger.warning("Oximeter connect interrupted; resetting")
                    await self._abort(session, None)
                elif session.transport is not None:
                    await self._release(session)

    async def _establish(self, session: _Session) -> None:
        name = await session.transport.open()
        self._ensure_live(session)
        session.device_name = name or self.config.default_device_name

        self._set_phase(ConnectionPhase.PROBING)
        result = await self._probe.run(
            session.transport,
            lambda payload, decoder, _protocol: self._on_payload(session, payload, decoder),
        )
        if isinstance(result, ProbeUnsupported):
            self._ensure_live(session)
            raise UnsupportedDeviceError()

        session.subscription = result.subscription
        self._ensure_live(session)
        session.protocol = result.protocol

        self._set_phase(ConnectionPhase.STREAMING, protocol=result.protocol)
        self._publish(
            OximeterState(
                is_connected=True,
                device_name=session.device_name,
                protocol=result.protocol,
            )
        )
        logger.info(
            "Oximeter streaming: %s via %s", session.device_name, result.protocol.value
        )

    def _ensure_live(self, session: _Session) -> None:
        if self._session is not session:
            raise ConnectionFailedError("Oximeter disconnected during setup")

    async def disconnect(self) -> None:
        """Release the subscription and transport. Idempotent."""
        session, self._session = self._session, None
        if session is None and self._connection.phase is ConnectionPhase.DISCONNECTED:
            await self._drain_teardowns()
            return

        self._set_phase(ConnectionPhase.DISCONNECTED)
        self._publish(OximeterState())
        if session is not None:
            await self._release(session)
        await self._drain_teardowns()

    async def _abort(self, session: _Session, error: Optional[str]) -> None:
        await self._release(session)
        if self._session is not session:
            # Already torn down by an external disconnect or disconnect()
            return
        self._session = None
        if error is None:
            self._set_phase(ConnectionPhase.DISCONNECTED)
        else:
            self._set_phase(ConnectionPhase.ERROR, reason=error)
        self._publish(OximeterState(error=error))

    async def _release(self, session: _Session) -> None:
        subscription, session.subscription = session.subscription, None
        transport, session.transport = session.transport, None
        try:
            if subscription is not None:
                try:
                    await subscription.stop_notifications()
                except (BleakError, OSError) as e:
                    logger.warning("Failed to stop notifications: %s", e)
        finally:
            if transport is not None:
                transport.set_disconnect_handler(None)
                await transport.close()
            session.spo2_history.clear()
            session.pulse_history.clear()

    async def _drain_teardowns(self) -> None:
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns))

    def _on_external_disconnect(self, session: _Session) -> None:
        if self._session is not session:
            return
        logger.warning("Oximeter %s disconnected", session.device_name or "device")
        self._session = None
        self._set_phase(ConnectionPhase.DISCONNECTED)
        self._publish(OximeterState())

        task = asyncio.ensure_future(self._release(session))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    # ------------------------------------------------------------------
    # Notification path (synchronous, never suspends)
    # ------------------------------------------------------------------

    def _on_payload(self, session: _Session, payload: bytes, decoder: Decoder) -> None:
        if self._session is not session or self._connection.phase is not ConnectionPhase.STREAMING:
            logger.debug("Notification ignored outside streaming: %d bytes", len(payload))
            return
        try:
            reading: OximeterReading = decoder(payload)
        except (TransientDecodeError, OutOfRangeReading) as e:
            logger.debug("Notification dropped: %s", e)
            return

        spo2 = session.spo2_history.add(reading.spo2)
        pulse_rate = session.pulse_history.add(reading.pulse_rate)
        self._publish(
            replace(
                self._state,
                spo2=spo2,
                pulse_rate=pulse_rate,
                protocol=reading.protocol,
                updated_at=reading.timestamp,
            )
        )
