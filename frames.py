# frames.py

import logging
import math
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import torch
from PIL import Image

from bitstream import bits_to_bytes
from errors import ConfigError, MalformedStream

# --- Constants ---
PIXEL_CHANNELS = 3
WHITE = 255  # bit 0
BLACK = 0    # bit 1
# Unused pixels decode to bit 1, so padding octets read back as the blank sentinel
BLANK_PIXEL_VALUE = BLACK
THRESHOLD = 127

def check_geometry(width: int, height: int) -> None:
    for name, value in (("width", width), ("height", height)):
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigError(f"Frame {name} must be a positive integer, got {value!r}")

def frame_count(bit_length: int, width: int, height: int) -> int:
    check_geometry(width, height)
    return math.ceil(bit_length / (width * height))

def frame_size_bytes(width: int, height: int) -> int:
    return width * height * PIXEL_CHANNELS

# --- Encode Side ---

def rasterize_bitstream(bits: Union[np.ndarray, torch.Tensor], width: int, height: int, device: Optional[torch.device] = None) -> torch.Tensor:
    """Map one bit per pixel, row-major, onto (num_frames, height, width, 3) uint8 frames."""
    if not isinstance(bits, torch.Tensor):
        bits = torch.from_numpy(np.ascontiguousarray(bits, dtype=np.uint8))
    if device is None:
        device = bits.device
    bits = bits.view(-1).to(device)

    num_bits = bits.numel()
    num_frames = frame_count(num_bits, width, height)
    num_pixels = width * height

    pixels = torch.full((num_frames * num_pixels,), BLANK_PIXEL_VALUE, dtype=torch.uint8, device=device)
    if num_bits:
        on_colors = torch.tensor([WHITE, BLACK], dtype=torch.uint8, device=device)
        pixels[:num_bits] = on_colors[bits.long()]

    frames = pixels.view(num_frames, height, width, 1).expand(-1, -1, -1, PIXEL_CHANNELS)
    logging.debug(f"Rasterized {num_bits} bits into {num_frames} frame(s) of {width}x{height}.")
    return frames.contiguous()

def frames_to_raw_bytes(frames: torch.Tensor) -> bytes:
    return frames.contiguous().cpu().numpy().tobytes()

# --- Decode Side ---

def raw_bytes_to_frames(raw: bytes, width: int, height: int, device: Optional[torch.device] = None) -> torch.Tensor:
    check_geometry(width, height)
    bytes_per_frame = frame_size_bytes(width, height)
    if len(raw) % bytes_per_frame != 0:
        raise MalformedStream(f"Decoded buffer of {len(raw)} bytes is not a whole number of {width}x{height} RGB frames.")
    num_frames = len(raw) // bytes_per_frame
    np_buffer = np.frombuffer(raw, dtype=np.uint8).copy()
    frames = torch.from_numpy(np_buffer).view(num_frames, height, width, PIXEL_CHANNELS)
    if device is not None:
        frames = frames.to(device)
    return frames

def frames_to_bits(frames: torch.Tensor) -> torch.Tensor:
    # All three channels were written identically; channel 0 is representative
    channel = frames[..., 0].reshape(-1)
    return (channel <= THRESHOLD).to(torch.uint8)

def threshold_frames(raw: bytes, width: int, height: int, device: Optional[torch.device] = None) -> bytes:
    """Turn raw RGB24 frames back into octets, dropping a trailing partial octet."""
    frames = raw_bytes_to_frames(raw, width, height, device)
    bits = frames_to_bits(frames)
    whole = (bits.numel() // 8) * 8
    octets = bits_to_bytes(bits[:whole])
    logging.debug(f"Thresholded {frames.shape[0]} frame(s) into {len(octets)} octets.")
    return octets

# --- Previews ---

def save_frame_previews(frames: torch.Tensor, output_dir: Path, limit: Optional[int] = None) -> List[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    np_frames = frames.cpu().numpy()
    count = np_frames.shape[0] if limit is None else min(limit, np_frames.shape[0])
    paths = []
    for i in range(count):
        path = output_dir / f"frame_{i:05d}.png"
        Image.fromarray(np_frames[i]).save(path)
        paths.append(path)
    logging.info(f"Wrote {len(paths)} frame preview(s) to '{output_dir}'")
    return paths
