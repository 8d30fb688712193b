"""Accepted payload formats per job kind."""

from __future__ import annotations

from transcribe_pipeline.pipeline.models import JobKind

MEDIA_EXTENSIONS: frozenset[str] = frozenset(
    {"m4a", "mp3", "wav", "mp4", "mpeg", "mpga", "webm", "flac", "ogg"},
)
MEDIA_MIME_TYPES: frozenset[str] = frozenset(
    {
        "audio/mp4",
        "audio/x-m4a",
        "audio/m4a",
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/wave",
        "audio/x-wav",
        "audio/webm",
        "audio/flac",
        "audio/ogg",
        "video/mp4",
        "video/webm",
    },
)
TEXT_EXTENSIONS: frozenset[str] = frozenset({"txt", "json", "vtt", "srt", "md"})
TEXT_MIME_TYPES: frozenset[str] = frozenset(
    {"text/plain", "application/json", "text/vtt", "application/x-subrip", "text/markdown"},
)


def normalize_format(value: str) -> str:
    """Lower-case a format token; extensions lose their leading dot, MIME params are dropped."""

    token = value.strip().lower()
    if "/" in token:
        return token.split(";", 1)[0].strip()
    return token.lstrip(".")


def is_supported_format(kind: JobKind, value: str) -> bool:
    token = normalize_format(value)
    if kind is JobKind.TRANSCRIBE:
        return token in MEDIA_EXTENSIONS or token in MEDIA_MIME_TYPES
    return token in TEXT_EXTENSIONS or token in TEXT_MIME_TYPES
