"""Wire decoders for the supported BLE pulse-oximeter notification formats.

Each decoder is a pure function from one raw notification payload to an
``OximeterReading``. Four formats are supported, listed in the order the
protocol probe tries them:

1. **PLX (standard SFLOAT profile)**: Bluetooth SIG Pulse Oximeter Service,
   continuous or spot-check measurement. SpO2 and pulse rate are IEEE-11073
   16-bit SFLOATs at byte offsets 1 and 3.
2. **BerryMed vendor packet**: 5-byte proprietary packet; pulse rate uses
   bit 6 of byte 2 as its 8th bit.
3. **Sync-word framed serial packet**: Viatom/Wellue devices tunnelling a
   serial protocol over the Nordic UART Service, framed by ``0xAA 0x55``.
4. **Heuristic fallback**: cheap HM-10 based clips with no known layout.
   Approximate by construction; readings are tagged ``ProtocolId.HEURISTIC``
   so consumers can discount them.

Decoders never return a value outside the physiological bounds. A payload
that can't be decoded raises ``TransientDecodeError``; a decoded pair that
fails the bounds check raises ``OutOfRangeReading``. Both are per-packet
anomalies that the notification handler drops without interrupting the
stream.
"""

from __future__ import annotations

import math
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .errors import OutOfRangeReading, TransientDecodeError
from .smoothing import round_half_up

SPO2_MIN = 50
SPO2_MAX = 100
PULSE_RATE_MIN = 30
PULSE_RATE_MAX = 250

# Heuristic decoder only accepts SpO2 candidates in this narrower band
HEURISTIC_SPO2_MIN = 85

SYNC_WORD = (0xAA, 0x55)
SYNC_TYPE_INDICATORS = (0x0F, 0xF0)
SYNC_DATA_TYPE_SPO2 = 8

# IEEE-11073 SFLOAT reserved codes
SFLOAT_NAN = 0x07FF
SFLOAT_NRES = 0x0800
SFLOAT_RESERVED = 0x0801
SFLOAT_POS_INFINITY = 0x07FE
SFLOAT_NEG_INFINITY = 0x0802


class ProtocolId(str, Enum):
    """Identifies which wire format produced a reading."""

    PLX = "plx"
    BERRYMED = "berrymed"
    SYNC_FRAMED = "nus"
    HEURISTIC = "heuristic"


@dataclass(frozen=True)
class OximeterReading:
    """A decoded, bounds-checked oximeter measurement.

    Attributes:
        spo2: Blood-oxygen saturation percentage, within ``[50, 100]``.
        pulse_rate: Pulse rate in beats per minute, within ``[30, 250]``.
        protocol: Wire format the values were decoded from.
        timestamp: Wall-clock time (seconds) at which the payload was decoded.
    """

    spo2: int
    pulse_rate: int
    protocol: ProtocolId
    timestamp: float = field(default_factory=time.time)


Decoder = Callable[[bytes], OximeterReading]


def is_valid_spo2(value: float) -> bool:
    return math.isfinite(value) and SPO2_MIN <= value <= SPO2_MAX


def is_valid_pulse_rate(value: float) -> bool:
    return math.isfinite(value) and PULSE_RATE_MIN <= value <= PULSE_RATE_MAX


def _checked(
    spo2: float, pulse_rate: float, protocol: ProtocolId, timestamp: Optional[float]
) -> OximeterReading:
    if not is_valid_spo2(spo2) or not is_valid_pulse_rate(pulse_rate):
        raise OutOfRangeReading(
            f"{protocol.value}: spo2={spo2} pulse_rate={pulse_rate} outside bounds"
        )
    return OximeterReading(
        spo2=int(spo2),
        pulse_rate=int(pulse_rate),
        protocol=protocol,
        timestamp=time.time() if timestamp is None else timestamp,
    )


def decode_sfloat(raw: int) -> float:
    """Decode a 16-bit IEEE-11073 SFLOAT.

    The top 4 bits hold a two's-complement exponent and the low 12 bits a
    two's-complement mantissa; the value is ``mantissa * 10 ** exponent``.

    Args:
        raw: Unsigned 16-bit integer as read from the wire (little-endian
            already applied).

    Returns:
        The decoded value. Reserved codes map to NaN (``0x07FF``, ``0x0800``,
        ``0x0801``), positive infinity (``0x07FE``) or negative infinity
        (``0x0802``).

    Example:
        >>> decode_sfloat(0x0064)
        100.0
        >>> decode_sfloat(0xF3D6)  # 982 * 10**-1
        98.2
    """
    if raw in (SFLOAT_NAN, SFLOAT_NRES, SFLOAT_RESERVED):
        return math.nan
    if raw == SFLOAT_POS_INFINITY:
        return math.inf
    if raw == SFLOAT_NEG_INFINITY:
        return -math.inf

    exponent = raw >> 12
    if exponent >= 8:
        exponent -= 16

    mantissa = raw & 0x0FFF
    if mantissa >= 0x0800:
        mantissa -= 0x1000

    # round() keeps 982e-1 from becoming 98.20000000000001
    return float(round(mantissa * 10.0 ** exponent, max(0, -exponent)))


def decode_plx(payload: bytes, timestamp: Optional[float] = None) -> OximeterReading:
    """Decode a standard PLX continuous or spot-check measurement.

    Layout: byte 0 is the flags field, bytes 1-2 the SpO2 SFLOAT and bytes
    3-4 the pulse-rate SFLOAT, both little-endian. Decoded values are rounded
    to whole units.

    Raises:
        TransientDecodeError: Payload shorter than 5 bytes.
        OutOfRangeReading: NaN/infinite or out-of-bounds values.
    """
    if len(payload) < 5:
        raise TransientDecodeError(f"PLX payload too short: {len(payload)} bytes")

    spo2_raw, pr_raw = struct.unpack_from("<HH", payload, 1)
    spo2 = decode_sfloat(spo2_raw)
    pulse_rate = decode_sfloat(pr_raw)

    if not is_valid_spo2(spo2) or not is_valid_pulse_rate(pulse_rate):
        raise OutOfRangeReading(f"plx: spo2={spo2} pulse_rate={pulse_rate} outside bounds")
    return _checked(
        round_half_up(spo2), round_half_up(pulse_rate), ProtocolId.PLX, timestamp
    )


def decode_berrymed(payload: bytes, timestamp: Optional[float] = None) -> OximeterReading:
    """Decode a BerryMed 5-byte vendor packet.

    ``pulse_rate = byte[3] | ((byte[2] & 0x40) << 1)`` and ``spo2 = byte[4]``.

    Raises:
        TransientDecodeError: Payload shorter than 5 bytes.
        OutOfRangeReading: Values outside bounds (e.g. 127 "no finger" codes).
    """
    if len(payload) < 5:
        raise TransientDecodeError(f"BerryMed payload too short: {len(payload)} bytes")

    pulse_rate = payload[3] | ((payload[2] & 0x40) << 1)
    spo2 = payload[4]
    return _checked(spo2, pulse_rate, ProtocolId.BERRYMED, timestamp)


def decode_sync_framed(payload: bytes, timestamp: Optional[float] = None) -> OximeterReading:
    """Decode a sync-word framed serial packet.

    The payload is scanned for ``0xAA 0x55``. At a match, the byte two
    positions later must be a type indicator (``0x0F`` or ``0xF0``) and the
    byte at offset +5 a data type of 8; SpO2 and pulse rate are then at
    offsets +7 and +8. Non-matching windows, truncated frames and
    out-of-range frames are skipped and the scan continues.

    Raises:
        TransientDecodeError: Payload shorter than 8 bytes or no usable frame.
        OutOfRangeReading: Only out-of-bounds frames were found.
    """
    n = len(payload)
    if n < 8:
        raise TransientDecodeError(f"Framed payload too short: {n} bytes")

    rejected = False
    for i in range(n - 7):
        if payload[i] != SYNC_WORD[0] or payload[i + 1] != SYNC_WORD[1]:
            continue
        if payload[i + 2] not in SYNC_TYPE_INDICATORS:
            continue
        if i + 6 >= n or payload[i + 5] != SYNC_DATA_TYPE_SPO2:
            continue
        if i + 8 >= n:
            continue

        spo2 = payload[i + 7]
        pulse_rate = payload[i + 8]
        if not is_valid_spo2(spo2) or not is_valid_pulse_rate(pulse_rate):
            rejected = True
            continue
        return _checked(spo2, pulse_rate, ProtocolId.SYNC_FRAMED, timestamp)

    if rejected:
        raise OutOfRangeReading("nus: every framed reading was outside bounds")
    raise TransientDecodeError("No SpO2 frame in payload")


def decode_heuristic(payload: bytes, timestamp: Optional[float] = None) -> OximeterReading:
    """Best-effort decode for devices with an unknown layout.

    The first byte in ``[85, 100]`` is taken as SpO2; the first byte at any
    other index within the pulse-rate bounds is taken as the pulse rate.
    This can misread arbitrary bytes, hence the ``HEURISTIC`` protocol tag.

    Raises:
        TransientDecodeError: Payload shorter than 4 bytes.
        OutOfRangeReading: No plausible SpO2/pulse pair present.
    """
    n = len(payload)
    if n < 4:
        raise TransientDecodeError(f"Heuristic payload too short: {n} bytes")

    for spo2_idx, candidate in enumerate(payload):
        if not HEURISTIC_SPO2_MIN <= candidate <= SPO2_MAX:
            continue
        for pr_idx, pr_candidate in enumerate(payload):
            if pr_idx != spo2_idx and is_valid_pulse_rate(pr_candidate):
                return _checked(candidate, pr_candidate, ProtocolId.HEURISTIC, timestamp)

    raise OutOfRangeReading("heuristic: no plausible SpO2/pulse pair")
