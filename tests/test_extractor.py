# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

import gzip
import os
import stat
from pathlib import Path

import pytest

from keystick_core.errors import ExtentConflict, ExtentOutOfRange, MalformedInput, OutputWriteFailure
from keystick_core.extractor import (
    ExtractRequest,
    Extractor,
    format_output,
    keystream_limit_from_trailer,
    parse_non_negative,
)
from keystick_core.layout import compute_layout
from keystick_core.ledger import FileLedgerStore, MemoryLedgerStore
from keystick_core.trailer import TrailerWriter


def _dev(fake_device, size: int = 4096):
    d = fake_device(size)
    d.buf[:] = bytes(i % 251 for i in range(size))
    return d


def test_auto_offset_and_default_length(tmp_path: Path, fake_device) -> None:
    dev = _dev(fake_device)
    ledger = FileLedgerStore(str(tmp_path / "ledger.log"))
    ext = Extractor(ledger, dev, device_id="/dev/sdc")

    out = tmp_path / "key1.bin"
    res = ext.extract(ExtractRequest(output=str(out)))

    assert res.auto_offset and res.default_length
    assert (res.start, res.length, res.next_offset) == (0, 32, 32)
    assert out.read_bytes() == bytes(dev.buf[0:32])
    assert stat.S_IMODE(os.stat(out).st_mode) == 0o600

    res2 = ext.extract(ExtractRequest(output=str(tmp_path / "key2.bin")))
    assert res2.start == 32
    assert res2.next_offset == 64


def test_overlap_conflict_reports_record_and_suggestion(tmp_path: Path, fake_device) -> None:
    ledger = MemoryLedgerStore()
    ledger.append("/dev/sdc", 0, 32, "key1.bin")
    ledger.append("/dev/sdc", 32, 32, "key2.bin")
    ext = Extractor(ledger, _dev(fake_device), device_id="/dev/sdc")

    out = tmp_path / "key3.bin"
    with pytest.raises(ExtentConflict) as ei:
        ext.extract(ExtractRequest(output=str(out), start=16, length=32))

    assert ei.value.record.start == 0
    assert ei.value.suggested_offset == 64
    assert "key1.bin" in ei.value.message
    assert not out.exists()
    assert len(ledger) == 2


def test_same_range_twice_is_refused(tmp_path: Path, fake_device) -> None:
    ext = Extractor(MemoryLedgerStore(), _dev(fake_device), device_id="/dev/sdc")
    ext.extract(ExtractRequest(output=str(tmp_path / "a.bin"), start="100", length="32"))
    with pytest.raises(ExtentConflict):
        ext.extract(ExtractRequest(output=str(tmp_path / "b.bin"), start="100", length="32"))


def test_explicit_range_past_watermark_leaves_gap(tmp_path: Path, fake_device) -> None:
    ledger = MemoryLedgerStore()
    ext = Extractor(ledger, _dev(fake_device), device_id="/dev/sdc")
    res = ext.extract(ExtractRequest(output=str(tmp_path / "a.bin"), start=1000, length=24))
    assert res.next_offset == 1024
    assert not res.auto_offset


def test_hex_output(tmp_path: Path, fake_device) -> None:
    dev = _dev(fake_device)
    ext = Extractor(MemoryLedgerStore(), dev, device_id="/dev/sdc")
    out = tmp_path / "k.hex"
    ext.extract(ExtractRequest(output=str(out), start=0, length=4, hex_output=True))
    assert out.read_text(encoding="ascii") == bytes(dev.buf[0:4]).hex() + "\n"


def test_gzip_output_gets_suffix_and_ledger_label(tmp_path: Path, fake_device) -> None:
    dev = _dev(fake_device)
    ledger = MemoryLedgerStore()
    ext = Extractor(ledger, dev, device_id="/dev/sdc")
    out = tmp_path / "k.bin"
    res = ext.extract(ExtractRequest(output=str(out), compress=True))

    assert res.output_path == str(out) + ".gz"
    assert not out.exists()
    assert gzip.decompress((tmp_path / "k.bin.gz").read_bytes()) == bytes(dev.buf[0:32])
    assert ledger.records("/dev/sdc")[0].label == res.output_path


def test_hex_then_gzip(tmp_path: Path, fake_device) -> None:
    dev = _dev(fake_device)
    ext = Extractor(MemoryLedgerStore(), dev, device_id="/dev/sdc")
    res = ext.extract(ExtractRequest(output=str(tmp_path / "k.hex"), hex_output=True, compress=True))
    text = gzip.decompress(Path(res.output_path).read_bytes()).decode("ascii")
    assert text == bytes(dev.buf[0:32]).hex() + "\n"


def test_format_output_is_deterministic() -> None:
    a = format_output(b"\x01\x02", hex_output=False, compress=True)
    b = format_output(b"\x01\x02", hex_output=False, compress=True)
    assert a == b


@pytest.mark.parametrize(
    "start,length",
    [("abc", "32"), ("0", "-5"), ("0", "0"), ("1.5", "32"), (-1, 32)],
)
def test_malformed_requests(tmp_path: Path, fake_device, start, length) -> None:
    ledger = MemoryLedgerStore()
    ext = Extractor(ledger, _dev(fake_device), device_id="/dev/sdc")
    with pytest.raises(MalformedInput):
        ext.extract(ExtractRequest(output=str(tmp_path / "k.bin"), start=start, length=length))
    assert len(ledger) == 0


def test_output_name_with_separator_is_rejected(tmp_path: Path, fake_device) -> None:
    ext = Extractor(MemoryLedgerStore(), _dev(fake_device), device_id="/dev/sdc")
    with pytest.raises(MalformedInput):
        ext.extract(ExtractRequest(output=str(tmp_path / "a|b.bin")))


def test_parse_non_negative() -> None:
    assert parse_non_negative("start", "42") == 42
    assert parse_non_negative("start", 7) == 7
    with pytest.raises(MalformedInput):
        parse_non_negative("start", True)


def test_range_past_keystream_limit(tmp_path: Path, fake_device) -> None:
    ext = Extractor(MemoryLedgerStore(), _dev(fake_device), device_id="/dev/sdc", keystream_limit=1000)
    with pytest.raises(ExtentOutOfRange) as ei:
        ext.extract(ExtractRequest(output=str(tmp_path / "k.bin"), start=990, length=32))
    assert ei.value.limit == 1000
    ext.extract(ExtractRequest(output=str(tmp_path / "k.bin"), start=968, length=32))


def test_range_past_device_without_trailer(tmp_path: Path, fake_device) -> None:
    ext = Extractor(MemoryLedgerStore(), _dev(fake_device, 100), device_id="/dev/sdc")
    with pytest.raises(ExtentOutOfRange):
        ext.extract(ExtractRequest(output=str(tmp_path / "k.bin"), start=80, length=32))


def test_devices_are_isolated(tmp_path: Path, fake_device) -> None:
    ledger = MemoryLedgerStore()
    a = Extractor(ledger, _dev(fake_device), device_id="/dev/sdc")
    b = Extractor(ledger, _dev(fake_device), device_id="/dev/sdd")
    a.extract(ExtractRequest(output=str(tmp_path / "a.bin"), start=0, length=64))
    res = b.extract(ExtractRequest(output=str(tmp_path / "b.bin")))
    assert res.start == 0


def test_failed_output_write_records_nothing(tmp_path: Path, fake_device) -> None:
    ledger = MemoryLedgerStore()
    ext = Extractor(ledger, _dev(fake_device), device_id="/dev/sdc")
    with pytest.raises(OutputWriteFailure):
        ext.extract(ExtractRequest(output=str(tmp_path / "missing-dir" / "k.bin")))
    assert len(ledger) == 0


def test_device_id_defaults_to_path(tmp_path: Path, fake_device) -> None:
    ledger = MemoryLedgerStore()
    ext = Extractor(ledger, _dev(fake_device))
    ext.extract(ExtractRequest(output=str(tmp_path / "k.bin")))
    assert ledger.records("/dev/fake")[0].start == 0


def test_keystream_limit_from_trailer(fake_device) -> None:
    dev = fake_device(100_000)
    layout = compute_layout(dev.size, 10_000)
    TrailerWriter(dev, layout, 4096).write(b"helper")

    assert keystream_limit_from_trailer(dev) == 90_000
    assert keystream_limit_from_trailer(fake_device(100_000)) is None

    dev.buf[-1] ^= 0xFF
    assert keystream_limit_from_trailer(dev) is None


def test_existing_output_is_never_overwritten(tmp_path: Path, fake_device) -> None:
    dev = _dev(fake_device)
    ledger = MemoryLedgerStore()
    ext = Extractor(ledger, dev, device_id="/dev/sdc")
    out = tmp_path / "key.bin"
    ext.extract(ExtractRequest(output=str(out)))

    with pytest.raises(OutputWriteFailure):
        ext.extract(ExtractRequest(output=str(out)))

    assert out.read_bytes() == bytes(dev.buf[0:32])
    assert len(ledger) == 1
    assert ledger.next_offset("/dev/sdc") == 32
