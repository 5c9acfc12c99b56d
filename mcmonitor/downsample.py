"""
Design (downsample.py)
- Purpose: Shrink week/month histories for charting without hiding outages.
- Inputs: PingRecords ascending by id (one server), chunk size and blip threshold in seconds.
- Outputs: A shorter list of PingRecords, still ascending.
- Side effects: None.

Rules, applied per run of equal online state ("segment"):
    short segment (<= blip): kept whole if 1-2 points, else its two edges
    long offline segment: its two edges
    long online segment: one point per chunk, player_count averaged over the chunk
"""

from dataclasses import replace
from itertools import groupby
from typing import List, Sequence

from .models import PingRecord


def _compress_segment(segment: List[PingRecord], chunk_sec: int, blip_sec: int) -> List[PingRecord]:
    first, last = segment[0], segment[-1]
    duration = (last.observed_at - first.observed_at).total_seconds()

    if duration <= blip_sec:
        return list(segment) if len(segment) <= 2 else [first, last]
    if not first.online:
        return [first, last]

    out: List[PingRecord] = []
    chunk_ref = first
    total = count = 0
    for record in segment:
        total += record.player_count or 0
        count += 1
        if (record.observed_at - chunk_ref.observed_at).total_seconds() >= chunk_sec:
            out.append(replace(chunk_ref, player_count=total // count, observed_at=record.observed_at))
            chunk_ref = record
            total = count = 0
    if count:
        out.append(replace(chunk_ref, player_count=total // count))
    return out


def downsample(records: Sequence[PingRecord], chunk_sec: int, blip_sec: int) -> List[PingRecord]:
    out: List[PingRecord] = []
    for _, group in groupby(records, key=lambda r: r.online):
        out.extend(_compress_segment(list(group), chunk_sec, blip_sec))
    return out
