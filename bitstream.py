# bitstream.py

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
import torch

from errors import MalformedStream, TrailerNotFound

# --- Constants ---
TRAILER_OCTET = 0x00  # separates file data from the extension
BLANK_OCTET = 0xFF    # what a fully padded octet decodes to
DEFAULT_READ_CHUNK_BYTES = 1024

# --- Byte/Bit Conversion ---

def bytes_to_bits(data: bytes) -> np.ndarray:
    return np.unpackbits(np.frombuffer(data, dtype=np.uint8))

def bits_to_bytes(bits: Union[np.ndarray, torch.Tensor]) -> bytes:
    """Pack a 1-D array of 0/1 values (MSB-first per byte) into bytes.
    Matches the order used by np.unpackbits.
    """
    if isinstance(bits, torch.Tensor):
        bits = bits.cpu().numpy()
    bits_np = np.asarray(bits, dtype=np.uint8).reshape(-1)
    if bits_np.size % 8 != 0:
        raise MalformedStream(f"Bit count {bits_np.size} is not a multiple of 8.")
    return np.packbits(bits_np).tobytes()

def bytes_to_bit_tensor(data_bytes: bytes, device: torch.device) -> torch.Tensor:
    return torch.from_numpy(bytes_to_bits(data_bytes).copy()).to(device)

def file_extension(path: Union[str, Path]) -> str:
    name = Path(path).name
    if "." not in name:
        return ""
    return name[name.rindex(".") + 1:]

def _extension_to_bytes(ext: str) -> bytes:
    try:
        ext_bytes = ext.encode("ascii")
    except UnicodeEncodeError:
        raise MalformedStream(f"File extension {ext!r} is not ASCII.")
    if bytes([TRAILER_OCTET]) in ext_bytes:
        raise MalformedStream("File extension must not contain a NUL byte.")
    return ext_bytes

# --- Bitstream Assembly ---

class BitstreamBuffer:
    """Octet-aligned bitstream: file data, one trailer octet, extension."""

    def __init__(self):
        self._octets = bytearray()

    def append_bytes(self, chunk: bytes) -> None:
        self._octets += chunk

    def append_trailer(self) -> None:
        self._octets.append(TRAILER_OCTET)

    def append_extension(self, ext: str) -> None:
        self._octets += _extension_to_bytes(ext)

    @property
    def octets(self) -> bytes:
        return bytes(self._octets)

    @property
    def bit_length(self) -> int:
        return len(self._octets) * 8

    def to_bits(self) -> np.ndarray:
        return bytes_to_bits(bytes(self._octets))

    def to_bit_tensor(self, device: torch.device) -> torch.Tensor:
        return bytes_to_bit_tensor(bytes(self._octets), device)

    def __len__(self) -> int:
        return len(self._octets)

def assemble_bitstream(data: bytes, ext: str) -> BitstreamBuffer:
    ext_bytes = _extension_to_bytes(ext)
    buffer = BitstreamBuffer()
    buffer.append_bytes(data)
    buffer.append_trailer()
    buffer.append_bytes(ext_bytes)
    return buffer

def read_file_bitstream(path: Path, chunk_size: int = DEFAULT_READ_CHUNK_BYTES) -> Tuple[BitstreamBuffer, str]:
    ext = file_extension(path)
    # Validate before reading so a bad name fails without touching the file
    _extension_to_bytes(ext)
    buffer = BitstreamBuffer()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            buffer.append_bytes(chunk)
    data_size = len(buffer)
    buffer.append_trailer()
    buffer.append_extension(ext)
    logging.info(f"Read '{Path(path).name}': {data_size} bytes, file type: '{ext}', bitstream: {buffer.bit_length} bits")
    return buffer, ext

# --- Decode Side ---

def trim_padding(octets: bytes, payload_bits: Optional[int] = None) -> bytes:
    """Strip the frame padding that follows the bitstream.

    With a known payload_bits the stream is cut to exactly that length;
    otherwise trailing blank sentinel octets are removed.
    """
    if payload_bits is not None:
        if payload_bits <= 0 or payload_bits % 8 != 0:
            raise MalformedStream(f"Invalid payload bit length: {payload_bits}")
        payload_octets = payload_bits // 8
        if payload_octets > len(octets):
            raise MalformedStream(f"Stream holds {len(octets)} octets but {payload_octets} were written.")
        return bytes(octets[:payload_octets])

    trimmed = bytes(octets).rstrip(bytes([BLANK_OCTET]))
    if not trimmed:
        raise MalformedStream("Stream contains only padding; no data to recover.")
    logging.debug(f"Trimmed {len(octets) - len(trimmed)} padding octets.")
    return trimmed

def split_bitstream(octets: bytes) -> Tuple[bytes, str]:
    # The extension never holds a NUL, so the rightmost one is the trailer
    for i in range(len(octets) - 1, -1, -1):
        if octets[i] == TRAILER_OCTET:
            data = bytes(octets[:i])
            ext_bytes = bytes(octets[i + 1:])
            try:
                ext = ext_bytes.decode("ascii")
            except UnicodeDecodeError:
                raise MalformedStream(f"Recovered extension is not ASCII: {ext_bytes!r}")
            return data, ext
    raise TrailerNotFound("No trailer octet found in the decoded stream.")

def decode_octets(octets: bytes, payload_bits: Optional[int] = None) -> Tuple[bytes, str]:
    return split_bitstream(trim_padding(octets, payload_bits))
