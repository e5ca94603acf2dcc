import math

import numpy as np
import pytest
import torch
from PIL import Image

from bitstream import BLANK_OCTET, assemble_bitstream, decode_octets
from errors import ConfigError, MalformedStream
from frames import (
    BLANK_PIXEL_VALUE,
    frame_count,
    frames_to_raw_bytes,
    rasterize_bitstream,
    save_frame_previews,
    threshold_frames,
)


def _raw_frame(values, width, height):
    channel = np.array(values, dtype=np.uint8).reshape(height, width, 1)
    return np.repeat(channel, 3, axis=2).tobytes()


def test_bit_to_pixel_mapping_and_row_major_order():
    bits = np.array([0, 1, 1, 0, 0, 0], dtype=np.uint8)
    frames = rasterize_bitstream(bits, width=3, height=2)
    assert frames.shape == (1, 2, 3, 3)
    assert frames[0, 0, :, 0].tolist() == [255, 0, 0]
    assert frames[0, 1, :, 0].tolist() == [255, 255, 255]
    # every channel carries the same value
    assert torch.equal(frames[..., 0], frames[..., 1])
    assert torch.equal(frames[..., 0], frames[..., 2])


@pytest.mark.parametrize("num_bits, width, height", [(40, 4, 4), (48, 4, 3), (8, 640, 480), (1000, 7, 5)])
def test_frame_count_and_buffer_size(num_bits, width, height):
    bits = np.zeros(num_bits, dtype=np.uint8)
    frames = rasterize_bitstream(bits, width, height)
    expected_frames = math.ceil(num_bits / (width * height))
    assert frame_count(num_bits, width, height) == expected_frames
    assert frames.shape[0] == expected_frames
    assert len(frames_to_raw_bytes(frames)) == expected_frames * width * height * 3


def test_padding_pixels_are_blank():
    frames = rasterize_bitstream(np.zeros(5, dtype=np.uint8), width=4, height=2)
    flat = frames[..., 0].reshape(-1)
    assert flat[:5].tolist() == [255] * 5
    assert flat[5:].tolist() == [BLANK_PIXEL_VALUE] * 3


@pytest.mark.parametrize("width, height", [(0, 4), (4, -1), (2.5, 2)])
def test_non_positive_geometry_raises(width, height):
    with pytest.raises(ConfigError):
        rasterize_bitstream(np.zeros(8, dtype=np.uint8), width, height)


def test_threshold_boundary():
    raw = _raw_frame([127, 128, 0, 255, 200, 30, 127, 128], width=4, height=2)
    assert threshold_frames(raw, 4, 2) == bytes([0b10100110])


def test_threshold_drops_trailing_partial_octet():
    # 2 frames of 3x3 = 18 bits -> two whole octets
    raw = _raw_frame([0] * 9, 3, 3) + _raw_frame([255] * 9, 3, 3)
    assert threshold_frames(raw, 3, 3) == bytes([0xFF, 0b10000000])


def test_threshold_rejects_partial_frame():
    with pytest.raises(MalformedStream):
        threshold_frames(b"\x00" * 47, 4, 4)


def test_concrete_scenario_round_trip():
    buffer = assemble_bitstream(bytes([0x41, 0x00, 0x42]), "t")
    frames = rasterize_bitstream(buffer.to_bits(), width=4, height=4)
    assert frames.shape == (3, 4, 4, 3)

    last_frame = frames[2, ..., 0].reshape(-1)
    assert last_frame[8:].tolist() == [BLANK_PIXEL_VALUE] * 8

    octets = threshold_frames(frames_to_raw_bytes(frames), 4, 4)
    assert octets == buffer.octets + bytes([BLANK_OCTET])
    assert decode_octets(octets) == (bytes([0x41, 0x00, 0x42]), "t")
    assert decode_octets(octets, payload_bits=40) == (bytes([0x41, 0x00, 0x42]), "t")


def test_threshold_tolerates_colour_drift():
    buffer = assemble_bitstream(b"drift", "bin")
    frames = rasterize_bitstream(buffer.to_bits(), width=8, height=8).to(torch.int16)
    drifted = torch.where(frames > 127, frames - 40, frames + 40).to(torch.uint8)
    octets = threshold_frames(frames_to_raw_bytes(drifted), 8, 8)
    assert decode_octets(octets) == (b"drift", "bin")


@pytest.mark.parametrize("data, ext, width, height", [
    (b"", "txt", 4, 4),
    (bytes(range(256)), "bin", 16, 9),
    (b"\x00\x00\x00", "z", 5, 3),
    (b"ends with ff \xff\xff", "dat", 6, 4),
    (b"no extension", "", 8, 8),
])
def test_round_trip_identity(data, ext, width, height):
    buffer = assemble_bitstream(data, ext)
    raw = frames_to_raw_bytes(rasterize_bitstream(buffer.to_bit_tensor(torch.device("cpu")), width, height))
    octets = threshold_frames(raw, width, height)
    assert decode_octets(octets) == (data, ext)
    assert decode_octets(octets, buffer.bit_length) == (data, ext)


def test_save_frame_previews(tmp_path):
    frames = rasterize_bitstream(np.array([1, 0] * 20, dtype=np.uint8), width=4, height=4)
    paths = save_frame_previews(frames, tmp_path / "previews")
    assert [p.name for p in paths] == ["frame_00000.png", "frame_00001.png", "frame_00002.png"]
    with Image.open(paths[0]) as img:
        assert img.size == (4, 4)
        assert img.convert("RGB").getpixel((0, 0)) == (0, 0, 0)
        assert img.convert("RGB").getpixel((1, 0)) == (255, 255, 255)
