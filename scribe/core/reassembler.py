"""Merging per-chunk fragments into one transcript."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace

from scribe.data_models import Segment, TranscriptFragment, TranscriptResult

logger = logging.getLogger(__name__)


def error_marker(chunk_index: int) -> str:
    return f"[Error transcribing part {chunk_index + 1}]"


def error_fragment(chunk_index: int) -> TranscriptFragment:
    return TranscriptFragment(chunk_index=chunk_index, text=error_marker(chunk_index))


def merge_fragments(fragments: Iterable[TranscriptFragment]) -> TranscriptResult:
    """Concatenate fragments in chunk order, shifting segments onto one timeline.

    Each fragment's segments are offset by the end time of the previous
    fragment's last shifted segment. Fragments without segments contribute
    text only and leave the offset untouched.

    Texts are joined with single spaces exactly as given; only whitespace at
    the very start and end of the joined transcript is trimmed.
    """
    ordered = sorted(fragments, key=lambda f: f.chunk_index)
    texts: list[str] = []
    segments: list[Segment] = []
    time_offset = 0.0

    for fragment in ordered:
        texts.append(fragment.text)
        if not fragment.segments:
            continue

        shifted = [
            replace(
                seg,
                id=f"segment-{len(segments) + n}",
                start=seg.start + time_offset,
                end=seg.end + time_offset,
            )
            for n, seg in enumerate(fragment.segments)
        ]
        segments.extend(shifted)
        time_offset = shifted[-1].end

    text = " ".join(texts).strip()
    logger.debug(
        "Merged %d fragments into %d characters and %d segments",
        len(ordered), len(text), len(segments),
    )
    if not segments:
        return TranscriptResult(text=text)
    return TranscriptResult(text=text, segments=segments)
