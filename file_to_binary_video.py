# file_to_binary_video.py

import argparse
import filecmp
import json
import logging
import re
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import torch

from bitstream import decode_octets, read_file_bitstream
from errors import BinaryVideoError, ConfigError, MalformedStream
from frames import check_geometry, frame_size_bytes, frames_to_raw_bytes, rasterize_bitstream, save_frame_previews, threshold_frames
from transcode import decode_video, encode_video, probe_ffmpeg

# --- Constants ---
CONFIG_FILENAME = "binary_video_config.json"
MANIFEST_SUFFIX = ".json"
MANIFEST_VERSION = "BinaryVideo_v1.0.0"
SAFE_EXTENSION_RE = re.compile(r'[a-zA-Z0-9_-][a-zA-Z0-9\._-]*')

DEFAULT_CONFIG = {
    "FFMPEG_PATH": "ffmpeg",
    "VIDEO_WIDTH": 640,
    "VIDEO_HEIGHT": 480,
    "VIDEO_FPS": 24,
    "X264_PRESET": "ultrafast",
    "X264_QP": 0,
    "OUTPUT_VIDEO": "binaryVideo.mp4",
    "OUTPUT_FILE_BASE": "decodedFile",
    "READ_CHUNK_BYTES": 1024,
    "TRANSCODE_TIMEOUT_SEC": None,
    "WRITE_MANIFEST": True
}

# Geometry the decoder must share with the encoder
MANIFEST_CONFIG_KEYS = {"width": "VIDEO_WIDTH", "height": "VIDEO_HEIGHT", "fps": "VIDEO_FPS"}

# --- Setup and Configuration ---

def setup_logging(level=logging.INFO):
    logging.basicConfig(level=level, format="[%(levelname)s] %(asctime)s - %(message)s", datefmt="%H:%M:%S", stream=sys.stdout)

def setup_pytorch() -> torch.device:
    if torch.cuda.is_available():
        device = torch.device("cuda")
        props = torch.cuda.get_device_properties(device)
        logging.info(f"Found GPU: {props.name} with {props.total_memory / 1e9:.2f} GB of memory.")
    else:
        logging.info("CUDA is not available. Rasterizing on CPU.")
        device = torch.device("cpu")
    return device

def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    if config_path is None:
        config_path = Path(__file__).resolve().parent / CONFIG_FILENAME

    default_config = dict(DEFAULT_CONFIG)

    if not config_path.exists():
        logging.info(f"Config file not found. Creating default at '{config_path}'")
        try:
            with open(config_path, 'w') as f: json.dump(default_config, f, indent=4)
            return default_config
        except IOError as e:
            logging.error(f"Could not create default config file: {e}")
            logging.warning("Using internal default configuration."); return default_config
    logging.info(f"Loading configuration from '{config_path}'")
    try:
        with open(config_path, 'r') as f: user_config = json.load(f)
        default_config.update(user_config)
        return default_config
    except (IOError, json.JSONDecodeError) as e:
        logging.error(f"Failed to load or parse config file: {e}")
        logging.warning("Using internal default configuration."); return dict(DEFAULT_CONFIG)

def validate_config(config: Dict[str, Any]) -> None:
    check_geometry(config.get("VIDEO_WIDTH"), config.get("VIDEO_HEIGHT"))
    fps = config.get("VIDEO_FPS")
    if isinstance(fps, bool) or not isinstance(fps, (int, float)) or fps <= 0:
        raise ConfigError(f"VIDEO_FPS must be a positive number, got {fps!r}")
    chunk = config.get("READ_CHUNK_BYTES")
    if isinstance(chunk, bool) or not isinstance(chunk, int) or chunk <= 0:
        raise ConfigError(f"READ_CHUNK_BYTES must be a positive integer, got {chunk!r}")
    # yuv420p needs even dimensions
    if config["VIDEO_WIDTH"] % 2 or config["VIDEO_HEIGHT"] % 2:
        logging.warning(f"Odd frame size {config['VIDEO_WIDTH']}x{config['VIDEO_HEIGHT']} may be rejected by libx264 with yuv420p.")

# --- Manifest ---

def manifest_path_for(video_path: Path) -> Path:
    return video_path.with_name(video_path.name + MANIFEST_SUFFIX)

def write_manifest(video_path: Path, config: Dict[str, Any], payload_bits: int, num_frames: int) -> Path:
    manifest = {
        "version": MANIFEST_VERSION,
        "width": config["VIDEO_WIDTH"],
        "height": config["VIDEO_HEIGHT"],
        "fps": config["VIDEO_FPS"],
        "payload_bits": payload_bits,
        "frame_count": num_frames
    }
    path = manifest_path_for(video_path)
    with open(path, 'w') as f: json.dump(manifest, f, indent=4)
    logging.info(f"Wrote manifest: {path}")
    return path

def read_manifest(video_path: Path) -> Optional[Dict[str, Any]]:
    path = manifest_path_for(video_path)
    if not path.exists():
        return None
    try:
        with open(path, 'r') as f: manifest = json.load(f)
    except json.JSONDecodeError as e:
        raise MalformedStream(f"Manifest '{path}' is not valid JSON: {e}")
    logging.info(f"Loaded manifest from '{path}'")
    return manifest

def apply_manifest_to_config(config: Dict[str, Any], manifest: Optional[Dict[str, Any]]) -> Optional[int]:
    """Override local geometry with the encoder's and return the exact payload bit length."""
    if not manifest:
        logging.warning("No manifest found; using local geometry and trimming padding by sentinel.")
        return None
    applied_keys = []
    for manifest_key, config_key in MANIFEST_CONFIG_KEYS.items():
        if manifest_key in manifest:
            config[config_key] = manifest[manifest_key]
            applied_keys.append(config_key)
    if applied_keys:
        logging.info(f"Applied decode settings from manifest: {', '.join(applied_keys)}")
    payload_bits = manifest.get("payload_bits")
    if payload_bits is not None and (isinstance(payload_bits, bool) or not isinstance(payload_bits, int)):
        raise MalformedStream(f"Manifest payload_bits must be an integer, got {payload_bits!r}")
    return payload_bits

def check_manifest_frame_count(manifest: Optional[Dict[str, Any]], num_frames: int) -> None:
    if not manifest or "frame_count" not in manifest:
        return
    if manifest["frame_count"] != num_frames:
        raise MalformedStream(f"Manifest expects {manifest['frame_count']} frame(s) but the video holds {num_frames}; it belongs to a different encode.")

# --- Pipelines ---

def encode_file(input_path: Path, config: Dict[str, Any], device: torch.device, output_dir: Path, preview_dir: Optional[Path] = None) -> Dict[str, Any]:
    encode_start = time.perf_counter()
    validate_config(config)
    width, height = config["VIDEO_WIDTH"], config["VIDEO_HEIGHT"]
    logging.info(f"Starting encoding for '{input_path}' at {width}x{height}...")

    bitstream, ext = read_file_bitstream(input_path, config["READ_CHUNK_BYTES"])
    frames = rasterize_bitstream(bitstream.to_bit_tensor(device), width, height, device)
    num_frames = frames.shape[0]
    payload_bits = bitstream.bit_length
    del bitstream
    logging.info(f"Bitstream of {payload_bits} bits needs {num_frames} frame(s) ({width * height} bits per frame).")

    if preview_dir is not None:
        save_frame_previews(frames, preview_dir)

    frame_bytes = frames_to_raw_bytes(frames)
    del frames
    video_path = output_dir / config["OUTPUT_VIDEO"]
    encode_video(frame_bytes, video_path, config)

    manifest_path = None
    if config.get("WRITE_MANIFEST", True):
        manifest_path = write_manifest(video_path, config, payload_bits, num_frames)
    else:
        stale_manifest = manifest_path_for(video_path)
        if stale_manifest.exists():
            stale_manifest.unlink()
            logging.info(f"Removed manifest from an earlier encode: {stale_manifest}")

    video_size = video_path.stat().st_size
    logging.info("--- ENCODING SUMMARY ---")
    logging.info(f"Raw frame data: {len(frame_bytes) / 1024:.2f} KB, video: {video_size / 1024:.2f} KB")
    logging.info(f"Encoding completed in {time.perf_counter() - encode_start:.2f}s.")
    return {
        "video_path": video_path,
        "manifest_path": manifest_path,
        "extension": ext,
        "payload_bits": payload_bits,
        "frame_count": num_frames
    }

def decode_frames_to_file_data(raw: bytes, width: int, height: int, device: Optional[torch.device] = None, payload_bits: Optional[int] = None) -> Tuple[bytes, str]:
    octets = threshold_frames(raw, width, height, device)
    return decode_octets(octets, payload_bits)

def output_file_path(output_dir: Path, base_name: str, ext: str) -> Path:
    if not ext:
        return output_dir / base_name
    # The extension comes out of the video, so it must not steer the path
    if not SAFE_EXTENSION_RE.fullmatch(ext):
        raise MalformedStream(f"Recovered extension {ext!r} is not a safe file name suffix.")
    return output_dir / f"{base_name}.{ext}"

def decode_video_file(video_path: Path, config: Dict[str, Any], device: torch.device, output_dir: Path) -> Path:
    decode_start = time.perf_counter()
    logging.info(f"Starting decoding for '{video_path}'...")
    manifest = read_manifest(video_path)
    payload_bits = apply_manifest_to_config(config, manifest)
    validate_config(config)
    width, height = config["VIDEO_WIDTH"], config["VIDEO_HEIGHT"]

    raw = decode_video(video_path, config)
    num_frames = len(raw) // frame_size_bytes(width, height)
    logging.info(f"Received {num_frames} frame(s) of {width}x{height}.")
    check_manifest_frame_count(manifest, num_frames)
    file_data, ext = decode_frames_to_file_data(raw, width, height, device, payload_bits)

    out_path = output_file_path(output_dir, config["OUTPUT_FILE_BASE"], ext)
    with open(out_path, 'wb') as f:
        f.write(file_data)
    logging.info(f"Output decoded file from video: {out_path} ({len(file_data)} bytes, file type: '{ext}')")
    logging.info(f"Decoding completed in {time.perf_counter() - decode_start:.2f}s.")
    return out_path

def roundtrip(input_path: Path, config: Dict[str, Any], device: torch.device, output_dir: Path, preview_dir: Optional[Path] = None) -> Path:
    start_time = time.perf_counter()
    logging.info("File encode to BinaryVideo -> Decode back to file!")
    result = encode_file(input_path, config, device, output_dir, preview_dir)
    out_path = decode_video_file(result["video_path"], config, device, output_dir)
    if filecmp.cmp(input_path, out_path, shallow=False):
        logging.info(f"Round trip verified: '{out_path.name}' matches '{input_path.name}'.")
    else:
        raise MalformedStream(f"Recovered file '{out_path}' differs from '{input_path}'.")
    logging.info(f"Time taken for encode-decode: {time.perf_counter() - start_time:.2f}s")
    return out_path

# --- Main Entry Point ---

def main(argv=None):
    parser = argparse.ArgumentParser(description="Encode a file into a black/white binary video and decode it back.")
    parser.add_argument("-mode", default="roundtrip", choices=["encode", "decode", "roundtrip"], help="The operation to perform.")
    parser.add_argument("-input", required=True, help="File to encode (encode/roundtrip) or video file (decode).")
    parser.add_argument("-output", help="Output directory. Defaults to the current directory.")
    parser.add_argument("-config", help=f"Path to a JSON config file. Defaults to {CONFIG_FILENAME} next to this script.")
    parser.add_argument("-width", type=int, help="Frame width of the video.")
    parser.add_argument("-height", type=int, help="Frame height of the video.")
    parser.add_argument("-fps", type=int, help="Frame rate of the video.")
    parser.add_argument("-dump-frames", dest="dump_frames", help="Write PNG previews of the encoded frames to this directory.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = load_config(Path(args.config) if args.config else None)
        for key, value in (("VIDEO_WIDTH", args.width), ("VIDEO_HEIGHT", args.height), ("VIDEO_FPS", args.fps)):
            if value is not None:
                config[key] = value
        # decode validates once the manifest has supplied the encoder's geometry
        if args.mode != "decode":
            validate_config(config)
        probe_ffmpeg(config)
        device = setup_pytorch()

        output_dir = Path(args.output).resolve() if args.output else Path.cwd()
        output_dir.mkdir(parents=True, exist_ok=True)
        input_path = Path(args.input).resolve()
        preview_dir = Path(args.dump_frames).resolve() if args.dump_frames else None

        if args.mode == "encode":
            encode_file(input_path, config, device, output_dir, preview_dir)
        elif args.mode == "decode":
            decode_video_file(input_path, config, device, output_dir)
        else:
            roundtrip(input_path, config, device, output_dir, preview_dir)
    except BinaryVideoError as e:
        logging.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except OSError as e:
        logging.error(f"I/O error: {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"A critical error occurred: {e}", exc_info=True)
        sys.exit(1)

if __name__ == "__main__":
    main()
