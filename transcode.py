# transcode.py

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import TranscodeError

def _timeout(config: Dict[str, Any]) -> Optional[float]:
    value = config.get("TRANSCODE_TIMEOUT_SEC")
    return float(value) if value else None

def build_encode_command(output_path: Path, config: Dict[str, Any]) -> List[str]:
    width, height, fps = config["VIDEO_WIDTH"], config["VIDEO_HEIGHT"], config["VIDEO_FPS"]
    # qp 0 keeps libx264 lossless so every pixel survives the round trip
    return [
        config["FFMPEG_PATH"], '-y', '-hide_banner', '-loglevel', 'error',
        '-f', 'rawvideo', '-pix_fmt', 'rgb24',
        '-s', f'{width}x{height}', '-r', str(fps), '-i', '-',
        '-c:v', 'libx264',
        '-preset', str(config.get("X264_PRESET", "ultrafast")),
        '-qp', str(config.get("X264_QP", 0)),
        '-pix_fmt', 'yuv420p',
        str(output_path)
    ]

def build_decode_command(video_path: Path, config: Dict[str, Any]) -> List[str]:
    return [
        config["FFMPEG_PATH"], '-hide_banner', '-loglevel', 'error',
        '-i', str(video_path),
        '-f', 'rawvideo', '-vcodec', 'rawvideo', '-pix_fmt', 'rgb24',
        '-vsync', '0',
        '-'
    ]

def probe_ffmpeg(config: Dict[str, Any]) -> str:
    command = [config["FFMPEG_PATH"], '-version']
    try:
        proc = subprocess.run(command, capture_output=True, text=True, check=False, timeout=10)
    except FileNotFoundError:
        raise TranscodeError(f"Command not found: '{command[0]}'. Please check your PATH or FFMPEG_PATH.")
    except subprocess.TimeoutExpired:
        raise TranscodeError("ffmpeg -version did not answer within 10s.")
    if proc.returncode != 0:
        raise TranscodeError(f"ffmpeg -version exited with code {proc.returncode}.", proc.stderr)
    first_line = proc.stdout.splitlines()[0] if proc.stdout else ""
    logging.debug(f"Using {first_line}")
    return first_line

def encode_video(frame_bytes: bytes, output_path: Path, config: Dict[str, Any]) -> Path:
    """Pipe raw RGB24 frames into ffmpeg and produce a lossless video file."""
    command = build_encode_command(output_path, config)
    logging.info(f"Running command: {shlex.join(command)}")
    try:
        process = subprocess.run(command, input=frame_bytes, capture_output=True, check=False, timeout=_timeout(config))
    except FileNotFoundError:
        raise TranscodeError(f"Command not found: '{command[0]}'. Please check your PATH or FFMPEG_PATH.")
    except subprocess.TimeoutExpired:
        raise TranscodeError(f"ffmpeg did not finish encoding within {_timeout(config)}s.")

    stderr = process.stderr.decode('utf-8', 'ignore').strip()
    if process.returncode != 0:
        logging.error(f"FFmpeg STDERR:\n{stderr}")
        raise TranscodeError(f"ffmpeg encode exited with code {process.returncode}.", stderr)
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise TranscodeError(f"ffmpeg reported success but produced no video at '{output_path}'.", stderr)
    logging.info(f"Video created successfully: {output_path}")
    return output_path

def decode_video(video_path: Path, config: Dict[str, Any]) -> bytes:
    """Decode a video file back into a raw RGB24 frame buffer in display order."""
    if not video_path.exists():
        raise TranscodeError(f"Input video not found: {video_path}")
    command = build_decode_command(video_path, config)
    logging.info(f"Running command: {shlex.join(command)}")
    try:
        process = subprocess.run(command, capture_output=True, check=False, timeout=_timeout(config))
    except FileNotFoundError:
        raise TranscodeError(f"Command not found: '{command[0]}'. Please check your PATH or FFMPEG_PATH.")
    except subprocess.TimeoutExpired:
        raise TranscodeError(f"ffmpeg did not finish decoding within {_timeout(config)}s.")

    stderr = process.stderr.decode('utf-8', 'ignore').strip()
    if process.returncode != 0:
        logging.error(f"FFmpeg STDERR:\n{stderr}")
        raise TranscodeError(f"ffmpeg decode exited with code {process.returncode}.", stderr)
    if not process.stdout:
        raise TranscodeError(f"ffmpeg produced no frames for '{video_path}'.", stderr)
    logging.info(f"Decoded {len(process.stdout)} bytes of raw frame data from {video_path.name}")
    return process.stdout
