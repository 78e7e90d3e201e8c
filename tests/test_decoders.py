import math

import pytest

from pulse_ox_receiver.decoders import (
    OximeterReading,
    ProtocolId,
    decode_berrymed,
    decode_heuristic,
    decode_plx,
    decode_sfloat,
    decode_sync_framed,
    is_valid_pulse_rate,
    is_valid_spo2,
)
from pulse_ox_receiver.errors import OutOfRangeReading, TransientDecodeError


class TestSfloat:
    def test_plain_integer(self):
        assert decode_sfloat(0x0064) == 100.0

    def test_negative_exponent(self):
        assert decode_sfloat(0xF3D6) == 98.2

    def test_negative_mantissa(self):
        assert decode_sfloat(0x0FFF) == -1.0

    @pytest.mark.parametrize("raw", [0x07FF, 0x0800, 0x0801])
    def test_nan_codes(self, raw):
        assert math.isnan(decode_sfloat(raw))

    def test_infinities(self):
        assert decode_sfloat(0x07FE) == math.inf
        assert decode_sfloat(0x0802) == -math.inf


def test_bounds_helpers():
    assert is_valid_spo2(50) and is_valid_spo2(100)
    assert not is_valid_spo2(45)
    assert not is_valid_spo2(math.nan)
    assert is_valid_pulse_rate(30) and is_valid_pulse_rate(250)
    assert not is_valid_pulse_rate(300)
    assert not is_valid_pulse_rate(math.inf)


class TestPlx:
    def test_integer_values(self):
        reading = decode_plx(b"\x00\x62\x00\x48\x00", timestamp=1.0)
        assert reading == OximeterReading(98, 72, ProtocolId.PLX, 1.0)

    def test_fractional_values_are_rounded(self):
        reading = decode_plx(b"\x00\xd6\xf3\xd0\xf2")
        assert (reading.spo2, reading.pulse_rate) == (98, 72)

    def test_half_values_round_up(self):
        # 98.5 and 72.5
        reading = decode_plx(b"\x00\xd9\xf3\xd5\xf2")
        assert (reading.spo2, reading.pulse_rate) == (99, 73)

    def test_short_payload(self):
        with pytest.raises(TransientDecodeError):
            decode_plx(b"\x00\x62\x00\x48")

    def test_pulse_rate_above_bounds(self):
        with pytest.raises(OutOfRangeReading):
            decode_plx(b"\x00\x62\x00\x2c\x01")  # 300 bpm

    def test_nan_spo2(self):
        with pytest.raises(OutOfRangeReading):
            decode_plx(b"\x00\xff\x07\x48\x00")


class TestBerryMed:
    def test_basic_packet(self):
        reading = decode_berrymed(bytes([0x80, 0x00, 0x00, 72, 98]))
        assert (reading.spo2, reading.pulse_rate, reading.protocol) == (98, 72, ProtocolId.BERRYMED)

    def test_pulse_rate_high_bit(self):
        reading = decode_berrymed(bytes([0x80, 0x00, 0x40, 10, 97]))
        assert reading.pulse_rate == 138

    def test_spo2_below_bounds(self):
        with pytest.raises(OutOfRangeReading):
            decode_berrymed(bytes([0x80, 0x00, 0x00, 72, 45]))

    def test_no_finger_code(self):
        with pytest.raises(OutOfRangeReading):
            decode_berrymed(bytes([0x80, 0x00, 0x00, 127, 127]))

    def test_short_payload(self):
        with pytest.raises(TransientDecodeError):
            decode_berrymed(bytes([0x80, 0x00, 0x00, 72]))


FRAME = bytes([0xAA, 0x55, 0x0F, 0x00, 0x00, 0x08, 0x00, 97, 75])


class TestSyncFramed:
    def test_frame_at_start(self):
        reading = decode_sync_framed(FRAME)
        assert (reading.spo2, reading.pulse_rate, reading.protocol) == (97, 75, ProtocolId.SYNC_FRAMED)

    def test_frame_after_garbage(self):
        reading = decode_sync_framed(bytes([0x01, 0xAA, 0x00]) + FRAME)
        assert reading.spo2 == 97

    def test_alternate_type_indicator(self):
        frame = bytearray(FRAME)
        frame[2] = 0xF0
        assert decode_sync_framed(bytes(frame)).pulse_rate == 75

    def test_wrong_data_type_is_skipped(self):
        frame = bytearray(FRAME)
        frame[5] = 0x07
        with pytest.raises(TransientDecodeError):
            decode_sync_framed(bytes(frame))

    def test_out_of_range_frame_continues_scan(self):
        bad = bytes([0xAA, 0x55, 0x0F, 0x00, 0x00, 0x08, 0x00, 20, 75])
        reading = decode_sync_framed(bad + FRAME)
        assert reading.spo2 == 97

    def test_only_out_of_range_frames(self):
        bad = bytes([0xAA, 0x55, 0x0F, 0x00, 0x00, 0x08, 0x00, 20, 75])
        with pytest.raises(OutOfRangeReading):
            decode_sync_framed(bad)

    def test_truncated_frame(self):
        with pytest.raises(TransientDecodeError):
            decode_sync_framed(FRAME[:8])

    def test_short_payload(self):
        with pytest.raises(TransientDecodeError):
            decode_sync_framed(FRAME[:7])


class TestHeuristic:
    def test_pair_is_found(self):
        reading = decode_heuristic(bytes([0x01, 0x02, 97, 72]))
        assert (reading.spo2, reading.pulse_rate) == (97, 72)

    def test_readings_are_tagged(self):
        assert decode_heuristic(bytes([0x01, 0x02, 97, 72])).protocol is ProtocolId.HEURISTIC

    def test_pulse_rate_may_precede_spo2(self):
        reading = decode_heuristic(bytes([72, 0x00, 97, 0x00]))
        assert (reading.spo2, reading.pulse_rate) == (97, 72)

    def test_no_plausible_pair(self):
        with pytest.raises(OutOfRangeReading):
            decode_heuristic(bytes([0x00, 0x00, 0x00, 0x00]))

    def test_short_payload(self):
        with pytest.raises(TransientDecodeError):
            decode_heuristic(bytes([97, 72, 0x00]))
