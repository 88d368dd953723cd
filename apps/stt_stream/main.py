"""
STT stream runner.

Алгоритм:
- читаем PCM (raw s16le или WAV) из файла или stdin
- режем на блоки и отдаём в StreamingTranscriptionService (в реальном времени или как можно быстрее)
- исходящие события печатаем в stdout JSON-строками
- по EOF останавливаем стриминг (остаток буфера уходит последним чанком)

Пример:
    python -m apps.stt_stream.main --input meeting.wav --provider mock --realtime
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import wave
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

from prometheus_client import start_http_server

from stt_orchestrator.audio.buffer import AudioBufferOptions
from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import AppError
from stt_orchestrator.common.logging import get_project_logger, setup_logging
from stt_orchestrator.domain.enums import ProviderType
from stt_orchestrator.services.streaming_service import (
    StreamingTranscriptionService,
    buffer_options_from_settings,
)

log = get_project_logger()


def _args() -> argparse.Namespace:
    s = get_settings()
    p = argparse.ArgumentParser(description="Stream PCM audio through the STT orchestrator")
    p.add_argument("--input", default="-", help="WAV/raw PCM file, '-' for stdin (raw s16le)")
    p.add_argument(
        "--provider",
        choices=[t.value for t in ProviderType],
        default=None,
        help="Provider when no current profile exists",
    )
    p.add_argument("--profile", default=None, help="Profile id to switch to before streaming")
    p.add_argument("--profiles-path", default=None, help="Override STT_PROFILES_PATH")
    p.add_argument("--language", default=None)
    p.add_argument("--chunk-sec", type=float, default=s.audio_chunk_duration_sec)
    p.add_argument("--block-ms", type=int, default=100, help="Size of a write block")
    p.add_argument("--realtime", action="store_true", help="Feed audio at wall-clock speed")
    p.add_argument("--metrics-port", type=int, default=0, help="Expose Prometheus metrics")
    return p.parse_args()


def _open_audio(path: str, opts: AudioBufferOptions) -> tuple[AudioBufferOptions, Iterator[bytes]]:
    if path == "-":
        return opts, _iter_stream(sys.stdin.buffer)

    if Path(path).suffix.lower() == ".wav":
        wf = wave.open(path, "rb")
        opts = AudioBufferOptions(
            sample_rate=wf.getframerate(),
            channels=wf.getnchannels(),
            bit_depth=wf.getsampwidth() * 8,
            chunk_duration=opts.chunk_duration,
            overlap_duration=opts.overlap_duration,
        )

        def _frames() -> Iterator[bytes]:
            with wf:
                while True:
                    block = wf.readframes(4096)
                    if not block:
                        return
                    yield block

        return opts, _frames()

    return opts, _iter_stream(open(path, "rb"))


def _iter_stream(fh) -> Iterator[bytes]:
    with fh:
        while True:
            block = fh.read(65536)
            if not block:
                return
            yield block


def _print_event(event) -> None:
    sys.stdout.write(json.dumps(event.to_dict(), ensure_ascii=False, default=str) + "\n")
    sys.stdout.flush()


async def _run(args: argparse.Namespace) -> int:
    base = replace(buffer_options_from_settings(), chunk_duration=args.chunk_sec)
    opts, source = _open_audio(args.input, base)

    service = StreamingTranscriptionService.from_settings(
        profiles_path=args.profiles_path,
        default_provider=ProviderType(args.provider) if args.provider else None,
        buffer_options=opts,
    )
    service.subscribe(_print_event)

    block_bytes = max(opts.frame_size, int(opts.sample_rate * args.block_ms / 1000) * opts.frame_size)
    block_sec = block_bytes / (opts.sample_rate * opts.frame_size)

    try:
        if args.profile:
            await service.switch_profile(args.profile)
        await service.start_streaming({"language": args.language} if args.language else None)

        pending = b""
        for data in source:
            pending += data
            while len(pending) >= block_bytes:
                service.add_audio_data(pending[:block_bytes])
                pending = pending[block_bytes:]
                # отдаём управление задачам распознавания
                await asyncio.sleep(block_sec if args.realtime else 0)
        if pending:
            service.add_audio_data(pending)

        transcript = await service.stop_streaming()
    except AppError as e:
        log.error("stt_stream_failed", extra={"payload": {"code": e.code, "message": e.message}})
        return 1
    finally:
        await service.close()

    stats = service.get_error_stats()
    log.info(
        "stt_stream_done",
        extra={
            "payload": {
                "words": transcript.word_count,
                "segments": len(transcript.segments),
                "errors": stats.total_errors,
            }
        },
    )
    return 0


def main() -> None:
    setup_logging()
    args = _args()
    if args.metrics_port:
        start_http_server(args.metrics_port)
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
