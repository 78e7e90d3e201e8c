"""Protocol auto-negotiation against a live oximeter connection.

The probe walks a fixed, priority-ordered list of strategies. Each strategy
names one (service, characteristic) pair and the decoder for its payloads,
and reports either ``ProbeSuccess`` with the live subscription or
``ProbeUnsupported`` with a reason. Transport exceptions are translated into
``ProbeUnsupported`` inside ``ProbeStrategy.attempt`` so the probe loop itself
is a plain first-success search.

Attempts are strictly sequential: overlapping service discovery or
subscription requests against one GATT connection are unsafe on several
platforms.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from bleak.exc import BleakError

from .decoders import (
    Decoder,
    ProtocolId,
    decode_berrymed,
    decode_heuristic,
    decode_plx,
    decode_sync_framed,
)
from .errors import CharacteristicUnavailableError
from .transport import (
    BERRYMED_NOTIFY,
    BERRYMED_SERVICE,
    HM10_CHAR,
    HM10_SERVICE,
    NUS_SERVICE,
    NUS_TX,
    PLX_CONTINUOUS,
    PLX_SERVICE,
    PLX_SPOT_CHECK,
    NotifyingCharacteristic,
    OximeterTransport,
)

logger = logging.getLogger(__name__)

# Receives (payload, decoder, protocol) for every notification
PayloadHandler = Callable[[bytes, Decoder, ProtocolId], None]


@dataclass(frozen=True)
class ProbeSuccess:
    """The strategy subscribed successfully; ``subscription`` is now live."""

    strategy: "ProbeStrategy"
    subscription: NotifyingCharacteristic

    @property
    def protocol(self) -> ProtocolId:
        return self.strategy.protocol


@dataclass(frozen=True)
class ProbeUnsupported:
    """The strategy does not apply to this device."""

    strategy: Optional["ProbeStrategy"]
    reason: str


ProbeResult = Union[ProbeSuccess, ProbeUnsupported]


@dataclass(frozen=True)
class ProbeStrategy:
    """One candidate wire format: where to subscribe and how to decode."""

    name: str
    protocol: ProtocolId
    service_uuid: str
    char_uuid: str
    decoder: Decoder

    async def attempt(
        self, transport: OximeterTransport, on_payload: PayloadHandler
    ) -> ProbeResult:
        """Look up the characteristic and subscribe to its notifications."""
        try:
            characteristic = await transport.get_characteristic(
                self.service_uuid, self.char_uuid
            )
        except CharacteristicUnavailableError as e:
            return ProbeUnsupported(self, str(e))
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            return ProbeUnsupported(self, f"lookup failed: {type(e).__name__}: {e}")

        def handle(payload: bytes) -> None:
            on_payload(payload, self.decoder, self.protocol)

        try:
            await characteristic.start_notifications(handle)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            return ProbeUnsupported(self, f"subscribe failed: {type(e).__name__}: {e}")

        return ProbeSuccess(self, characteristic)


DEFAULT_STRATEGIES: Sequence[ProbeStrategy] = (
    ProbeStrategy("plx-continuous", ProtocolId.PLX, PLX_SERVICE, PLX_CONTINUOUS, decode_plx),
    ProbeStrategy("plx-spot-check", ProtocolId.PLX, PLX_SERVICE, PLX_SPOT_CHECK, decode_plx),
    ProbeStrategy(
        "berrymed", ProtocolId.BERRYMED, BERRYMED_SERVICE, BERRYMED_NOTIFY, decode_berrymed
    ),
    ProbeStrategy("nus", ProtocolId.SYNC_FRAMED, NUS_SERVICE, NUS_TX, decode_sync_framed),
    ProbeStrategy("hm10", ProtocolId.HEURISTIC, HM10_SERVICE, HM10_CHAR, decode_heuristic),
)


class ProtocolProbe:
    """Tries strategies in priority order and stops at the first success."""

    def __init__(self, strategies: Sequence[ProbeStrategy] = DEFAULT_STRATEGIES):
        self.strategies: List[ProbeStrategy] = list(strategies)

    async def run(
        self, transport: OximeterTransport, on_payload: PayloadHandler
    ) -> ProbeResult:
        """Probe the open transport.

        Returns:
            The first ``ProbeSuccess``, or ``ProbeUnsupported`` (with no
            strategy) once every strategy has been exhausted.
        """
        for strategy in self.strategies:
            logger.debug("Probing %s (%s)", strategy.name, strategy.char_uuid)
            result = await strategy.attempt(transport, on_payload)
            if isinstance(result, ProbeSuccess):
                logger.info("Protocol negotiated: %s", strategy.name)
                return result
            logger.debug("Probe %s unsupported: %s", strategy.name, result.reason)
        return ProbeUnsupported(None, "all decoders exhausted")
