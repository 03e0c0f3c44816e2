"""Suppress pathological repetition at the end of model output.

Models occasionally fall into a loop, emitting the same closing sentence over
and over until the output budget runs out. :func:`truncate_repetition_loop`
detects a trailing run of identical sentences and cuts the text at the first
repetition.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?…])\s+")

MIN_TEXT_LENGTH = 500
MIN_SENTENCES = 5
MIN_SENTENCE_LENGTH = 20
MIN_REPEATS = 3


def split_sentences(text: str) -> list[str]:
    return _SENTENCE_BOUNDARY.split(text)


def truncate_repetition_loop(
    text: str,
    *,
    min_length: int = MIN_TEXT_LENGTH,
    min_sentences: int = MIN_SENTENCES,
    min_sentence_length: int = MIN_SENTENCE_LENGTH,
    min_repeats: int = MIN_REPEATS,
) -> str:
    """Truncate a trailing run of repeated sentences.

    When the last sentence occurs ``min_repeats`` or more times in a row at
    the end of *text*, everything after its first repetition is dropped:
    the original occurrence and one repeat survive. Short texts, texts with
    few sentences and texts whose last sentence is very short are returned
    unchanged. Trailing whitespace is ignored when looking for the run.
    """
    body = text.rstrip()
    if len(body) < min_length:
        return text

    sentences = split_sentences(body)
    if len(sentences) < min_sentences:
        return text

    last = sentences[-1].strip()
    if len(last) < min_sentence_length:
        return text

    repeats = 0
    for sentence in reversed(sentences):
        if sentence.strip() != last:
            break
        repeats += 1

    if repeats < min_repeats:
        return text

    logger.warning("Detected repetition loop (%dx), truncating", repeats)
    cut = len(sentences) - repeats + 2
    return " ".join(sentences[:cut])
