# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

from pathlib import Path

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from keystick_core.device import BlockDevice
from keystick_core.errors import DeviceNotFound
from keystick_core.key_material import KeyMaterial
from keystick_core.keystream import FillResult, KeystreamGenerator, PartialWrite, fill_device
from keystick_core.layout import compute_layout
from keystick_core.verify import PREVIEW_BYTES, verify_layout


def _zeros(n: int) -> bytes:
    return bytes(n)


def _material() -> KeyMaterial:
    return KeyMaterial(bytes(range(32)), bytes(range(16)))


def _ctr_stream(m: KeyMaterial, n: int) -> bytes:
    enc = Cipher(algorithms.AES(m.key), modes.CTR(m.iv)).encryptor()
    return enc.update(bytes(n)) + enc.finalize()


def test_generator_is_aes_ctr_over_entropy() -> None:
    m = _material()
    gen = KeystreamGenerator(m, entropy=_zeros)
    out = gen.read(100) + gen.read(50)
    gen.close()
    assert out == _ctr_stream(m, 150)


def test_generator_rejects_negative_reads() -> None:
    gen = KeystreamGenerator(_material())
    with pytest.raises(ValueError):
        gen.read(-1)
    assert gen.read(0) == b""


def test_fill_writes_blocks_then_remainder(fake_device) -> None:
    dev = fake_device(10_000)
    layout = compute_layout(dev.size, 1_000)
    m = _material()

    res = fill_device(dev, layout, 4096, m, entropy=_zeros)

    assert type(res) is FillResult and res.complete
    assert (res.block_count, res.remainder) == (2, 808)
    assert res.written_bytes == res.expected_bytes == 9_000
    assert dev.writes == [(0, 4096), (4096, 4096), (8192, 808)]
    assert bytes(dev.buf[:9_000]) == _ctr_stream(m, 9_000)
    assert bytes(dev.buf[9_000:]) == bytes(1_000)
    assert dev.syncs == 1


def test_failed_block_yields_partial_write(fake_device) -> None:
    dev = fake_device(10_000, fail_at={4096})
    layout = compute_layout(dev.size, 1_000)

    res = fill_device(dev, layout, 4096, _material())

    assert isinstance(res, PartialWrite)
    assert not res.complete
    assert res.missing == ((4096, 4096),)
    assert res.written_bytes == 4904
    assert len(res.warnings) == 1
    # the remainder after the failed block was still written
    assert dev.writes[-1] == (8192, 808)


def test_short_write_is_reported(fake_device) -> None:
    dev = fake_device(10_000, short_at=0)
    res = fill_device(dev, compute_layout(dev.size, 1_000), 4096, _material())
    assert isinstance(res, PartialWrite)
    assert res.missing == ((3996, 100),)
    assert res.written_bytes == 8900


def test_fill_of_empty_region(fake_device) -> None:
    dev = fake_device(4096)
    res = fill_device(dev, compute_layout(4096, 4096), 512, _material())
    assert res.complete and res.written_bytes == 0
    assert dev.writes == []


def test_fill_disk_image(tmp_path: Path) -> None:
    img = tmp_path / "stick.img"
    img.write_bytes(bytes(20_000))
    m = _material()

    with BlockDevice(str(img), writable=True) as dev:
        layout = compute_layout(dev.size, 4_000)
        res = fill_device(dev, layout, 4096, m, entropy=_zeros)
        samples = verify_layout(dev, layout)

    assert res.complete
    data = img.read_bytes()
    assert data[:16_000] == _ctr_stream(m, 16_000)
    assert data[16_000:] == bytes(4_000)

    fill, reserved = samples
    assert fill.preview == data[:PREVIEW_BYTES]
    assert reserved.offset == 16_000
    assert reserved.preview == bytes(PREVIEW_BYTES)
    assert fill.hexdump()[0].startswith("00000000  ")


def test_block_device_checks(tmp_path: Path) -> None:
    with pytest.raises(DeviceNotFound):
        BlockDevice(str(tmp_path / "nope"))
    img = tmp_path / "x.img"
    img.write_bytes(b"\x00" * 10)
    with pytest.raises(DeviceNotFound):
        BlockDevice(str(img), require_block=True)
    with pytest.raises(DeviceNotFound):
        BlockDevice(str(tmp_path))
