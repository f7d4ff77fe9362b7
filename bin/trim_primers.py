#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "intervaltree",
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Trim amplicon primers from reads post-alignment.

Takes SAM/BAM/CRAM of aligned paired-end amplicon reads and a tab-delimited
primer table with five columns (`chrom`, `left_start`, `left_end`,
`right_start`, `right_end`) giving the 1-based inclusive primer positions of
each amplicon, e.g.:

    chrom  left_start  left_end  right_start  right_end
    chr1   1010873     1010894   1011118      1011137

FR pairs whose insert matches an amplicon (within the slop) have exactly that
amplicon's primers clipped from the 5' end of each read. Every other read has
the longest primer length in the table clipped. Mate information is rebuilt
after clipping, and reads of fully overlapping pairs are trimmed back so
neither extends past its mate.

Clipped reads lose their NM, MD and UQ tags. If a reference is given the reads
are coordinate sorted after trimming and those tags are recalculated.
"""

from __future__ import annotations

import argparse
import os
import sys
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import polars as pl
import pysam
from intervaltree import IntervalTree
from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass as config_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

__version__ = "0.1.0"

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
REF_CONSUME = {0, 2, 3, 7, 8}
QRY_CONSUME = {0, 1, 4, 7, 8}
BOTH_CONSUME = {0, 7, 8}
CLIP_OPS = {4, 5}
SOFT_CLIP = 4
HARD_CLIP = 5

PRIMER_HEADERS: tuple[str, ...] = (
    "chrom",
    "left_start",
    "left_end",
    "right_start",
    "right_end",
)

# Tags that are no longer valid once a read's alignment changes
INVALIDATED_TAGS: tuple[str, ...] = ("NM", "MD", "UQ")

# Emit a progress debug line after processing this many records
PROGRESS_EVERY: int = 100_000

_COMPLEMENT = str.maketrans("ACGTNacgtnRYKMBVDHrykmbvdh", "TGCANtgcanYRMKVBHDyrmkvbhd")


# ------------------------------- DATA TYPES -------------------------------- #


class ClippingMode(Enum):
    """Defines how clipped bases are represented."""

    SOFT = auto()  # Bases kept in the record, marked with S operations
    HARD = auto()  # Bases removed from the record, marked with H operations


class SortOrder(Enum):
    """SAM header sort orders that the pipeline distinguishes between."""

    QUERYNAME = "queryname"
    COORDINATE = "coordinate"
    UNSORTED = "unsorted"
    UNKNOWN = "unknown"

    @staticmethod
    def from_header(header: pysam.AlignmentHeader | dict) -> SortOrder:
        """Read the @HD SO value, treating anything unrecognised as unknown."""
        hd = header.to_dict() if isinstance(header, pysam.AlignmentHeader) else header
        value = hd.get("HD", {}).get("SO", "unknown")
        try:
            return SortOrder(value)
        except ValueError:
            return SortOrder.UNKNOWN


@config_dataclass(frozen=True)
class TrimConfig:
    """Validated run options for the primer trimming engine."""

    slop: int = Field(default=5, ge=0)  # Match to primer locations +/- this many bases
    clipping_mode: ClippingMode = ClippingMode.SOFT
    auto_trim_attributes: bool = False  # Trim per-base tags alongside bases (hard clipping)


@dataclass(frozen=True)
class Amplicon:
    """
    An amplicon bounded by a left and right primer, all coordinates 1-based
    inclusive. The amplicon spans `left_start..right_end` on `chrom`.
    """

    chrom: str
    left_start: int
    left_end: int
    right_start: int
    right_end: int

    def __post_init__(self) -> None:
        if self.left_end < self.left_start or self.right_end < self.right_start:
            msg = f"Primer ends before it starts in amplicon {self}"
            raise ValueError(msg)
        if self.right_end < self.left_start:
            msg = f"Right primer ends before left primer starts in amplicon {self}"
            raise ValueError(msg)

    @property
    def left_primer_length(self) -> int:
        return self.left_end - self.left_start + 1

    @property
    def right_primer_length(self) -> int:
        return self.right_end - self.right_start + 1

    @property
    def longest_primer_length(self) -> int:
        return max(self.left_primer_length, self.right_primer_length)

    @property
    def contig(self) -> str:
        return self.chrom

    @property
    def start(self) -> int:
        return self.left_start

    @property
    def end(self) -> int:
        return self.right_end


@dataclass(frozen=True)
class Template:
    """All records sharing one query name: primary pair, secondary and supplementary."""

    name: str
    records: list[pysam.AlignedSegment]

    def __post_init__(self) -> None:
        assert self.records, f"Template '{self.name}' has no records"

    @property
    def r1(self) -> pysam.AlignedSegment | None:
        """The primary first-of-pair record, if present."""
        return next(
            (r for r in self.records if r.is_paired and r.is_read1 and _is_primary(r)),
            None,
        )

    @property
    def r2(self) -> pysam.AlignedSegment | None:
        """The primary second-of-pair record, if present."""
        return next(
            (r for r in self.records if r.is_paired and r.is_read2 and _is_primary(r)),
            None,
        )

    @property
    def supplementals(self) -> list[pysam.AlignedSegment]:
        return [r for r in self.records if r.is_supplementary]


@dataclass
class TrimStats:
    """Counters reported at the end of a run."""

    templates: int = 0
    records: int = 0
    matched: int = 0  # FR pairs matched to an amplicon
    unmatched: int = 0  # FR pairs with no amplicon within slop
    ineligible: int = 0  # pairs that are unmapped, cross-contig or not FR
    unpaired: int = 0  # templates without a primary R1/R2 pair
    overlap_trimmed: int = 0  # pairs trimmed back at their 3' ends


def _is_primary(aln: pysam.AlignedSegment) -> bool:
    return not aln.is_secondary and not aln.is_supplementary


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for conversion and compaction."""

    @classmethod
    def from_pysam(cls, cig_raw: list[tuple[int, int]] | None) -> Cigar | None:
        """
        Convert pysam's list[(op, len)] to a Cigar. Returns None if input is None.
        """
        if cig_raw is None:
            return None
        return cls(CigarOp(op, ln) for op, ln in cig_raw)

    def to_pysam(self) -> list[tuple[int, int]]:
        """Convert this Cigar back to list[(op, len)] for pysam."""
        return [(run.op, run.length) for run in self]

    def push_compact(self, op: int, ln: int) -> None:
        """
        Append (op, ln), merging with the last run if `op` matches.
        Ignores non-positive lengths.
        """
        assert 0 <= op <= 8, (  # noqa: PLR2004
            f"Invalid CIGAR operation code {op}: must be 0-8 (M,I,D,N,S,H,P,=,X)"
        )
        if ln <= 0:
            return
        if self and self[-1].op == op:
            self[-1] = CigarOp(op, self[-1].length + ln)
            return
        self.append(CigarOp(op, ln))

    def query_length(self) -> int:
        """Number of bases the CIGAR expects in SEQ."""
        return sum(run.length for run in self if run.op in QRY_CONSUME)


class ClippedCigar(NamedTuple):
    """A CIGAR split into its clipping at each end and the alignment body."""

    lead_hard: int
    lead_soft: int
    body: Cigar
    trail_soft: int
    trail_hard: int

    @staticmethod
    def split(cig: Cigar) -> ClippedCigar:
        runs = list(cig)
        lead_hard = runs.pop(0).length if runs and runs[0].op == HARD_CLIP else 0
        lead_soft = runs.pop(0).length if runs and runs[0].op == SOFT_CLIP else 0
        trail_hard = runs.pop().length if runs and runs[-1].op == HARD_CLIP else 0
        trail_soft = runs.pop().length if runs and runs[-1].op == SOFT_CLIP else 0
        return ClippedCigar(lead_hard, lead_soft, Cigar(runs), trail_soft, trail_hard)

    def join(self) -> Cigar:
        out = Cigar()
        out.push_compact(HARD_CLIP, self.lead_hard)
        out.push_compact(SOFT_CLIP, self.lead_soft)
        for run in self.body:
            out.push_compact(run.op, run.length)
        out.push_compact(SOFT_CLIP, self.trail_soft)
        out.push_compact(HARD_CLIP, self.trail_hard)
        return out


def _clip_body_from_left(body: Cigar, trim_q: int) -> tuple[Cigar, int, int]:
    """
    Remove `trim_q` query bases from the LEFT edge of an alignment body (a
    CIGAR without clipping operators).

    Returns
    -------
    new_body : Cigar
        What is left of the body; empty if nothing aligned remains.
    ref_advance : int
        Reference bases consumed by the removed runs. Add to `reference_start`.
    clipped : int
        Query bases removed. Can exceed `trim_q` because insertions left at
        the new alignment edge are removed as well.

    Deletions and skips left at the new edge are dropped (advancing the
    reference), so the body always starts with an M/=/X run.
    """
    assert trim_q >= 0, f"Clip amount must be non-negative, got {trim_q}"

    runs = list(body)
    remaining = trim_q
    ref_advance = 0
    clipped = 0
    while runs and (remaining > 0 or runs[0].op not in BOTH_CONSUME):
        run = runs.pop(0)
        if run.op in BOTH_CONSUME:
            take = min(run.length, remaining)
            if take < run.length:
                runs.insert(0, CigarOp(run.op, run.length - take))
            ref_advance += take
            clipped += take
            remaining -= take
        elif run.op in QRY_CONSUME:  # I
            clipped += run.length
            remaining = max(0, remaining - run.length)
        elif run.op in REF_CONSUME:  # D/N
            ref_advance += run.length
        # P: dropped

    out = Cigar()
    for run in runs:
        out.push_compact(run.op, run.length)
    return out, ref_advance, clipped


def _clip_body_from_right(body: Cigar, trim_q: int) -> tuple[Cigar, int]:
    """Remove `trim_q` query bases from the RIGHT edge of an alignment body."""
    rev, _, clipped = _clip_body_from_left(Cigar(reversed(body)), trim_q)
    return Cigar(reversed(rev)), clipped


# --------------------------- ALIGNMENT GEOMETRY ---------------------------- #


def alignment_start(aln: pysam.AlignedSegment) -> int:
    """1-based inclusive alignment start."""
    return aln.reference_start + 1


def alignment_end(aln: pysam.AlignedSegment) -> int:
    """1-based inclusive alignment end."""
    return aln.reference_end


def unclipped_start(aln: pysam.AlignedSegment) -> int:
    """1-based alignment start extended over leading soft and hard clips."""
    clipped = ClippedCigar.split(Cigar.from_pysam(aln.cigartuples))
    return alignment_start(aln) - clipped.lead_hard - clipped.lead_soft


def unclipped_end(aln: pysam.AlignedSegment) -> int:
    """1-based alignment end extended over trailing soft and hard clips."""
    clipped = ClippedCigar.split(Cigar.from_pysam(aln.cigartuples))
    return alignment_end(aln) + clipped.trail_soft + clipped.trail_hard


def is_fr_pair(r1: pysam.AlignedSegment, r2: pysam.AlignedSegment) -> bool:
    """True for two mapped mates on one contig, facing inward toward each other."""
    if r1.is_unmapped or r2.is_unmapped or r1.reference_id != r2.reference_id:
        return False
    if r1.is_reverse == r2.is_reverse:
        return False
    plus, minus = (r2, r1) if r1.is_reverse else (r1, r2)
    return alignment_start(plus) < alignment_end(minus)


def reverse_complement(seq: str) -> str:
    return seq.translate(_COMPLEMENT)[::-1]


# ------------------------------- CLIPPING ---------------------------------- #


def clear_invalidated_tags(aln: pysam.AlignedSegment) -> None:
    for tag in INVALIDATED_TAGS:
        if aln.has_tag(tag):
            aln.set_tag(tag, None)


def make_read_unmapped(aln: pysam.AlignedSegment) -> None:
    """
    Unmap a read whose alignment was clipped away entirely. Bases are kept and
    returned to read orientation; the placement (reference and position) is
    left for the mate fixup to settle. An unmapped record is never secondary,
    supplementary or a duplicate, and carries no insert size.
    """
    if aln.is_reverse:
        seq = aln.query_sequence
        qual = aln.query_qualities
        if seq is not None:
            aln.query_sequence = reverse_complement(seq)
            aln.query_qualities = None if qual is None else qual[::-1]
        aln.is_reverse = False
    aln.is_unmapped = True
    aln.cigartuples = None
    aln.mapping_quality = 0
    aln.template_length = 0
    aln.is_proper_pair = False
    aln.is_duplicate = False
    aln.is_secondary = False
    aln.is_supplementary = False
    clear_invalidated_tags(aln)


def _hard_clip_bases(
    aln: pysam.AlignedSegment,
    count: int,
    from_start: bool,  # noqa: FBT001
    auto_trim_attributes: bool,  # noqa: FBT001
) -> None:
    """Remove `count` bases (and qualities, and optionally per-base tags) from one end."""
    seq = aln.query_sequence
    if seq is None or count <= 0:
        return
    qual = aln.query_qualities
    qlen = len(seq)
    keep = slice(count, qlen) if from_start else slice(0, max(qlen - count, 0))

    if auto_trim_attributes:
        for tag, value, value_type in aln.get_tags(with_value_type=True):
            if isinstance(value, (int, float)) or len(value) != qlen:
                continue
            # B arrays: pysam infers the element type from the array itself
            aln.set_tag(
                tag,
                value[keep],
                value_type=None if value_type == "B" else value_type,
            )

    aln.query_sequence = seq[keep]
    aln.query_qualities = None if qual is None else qual[keep]


def _clip_alignment(
    aln: pysam.AlignedSegment,
    n: int,
    mode: ClippingMode,
    from_start: bool,  # noqa: FBT001
    auto_trim_attributes: bool = False,  # noqa: FBT001, FBT002
) -> int:
    """
    Clip `n` aligned bases from the start or end of the alignment (reference
    orientation) and return how many query bases were clipped. A clip that
    would leave nothing aligned unmaps the read instead.
    """
    if aln.is_unmapped or not aln.cigartuples or n <= 0:
        return 0

    before = ClippedCigar.split(Cigar.from_pysam(aln.cigartuples))
    if from_start:
        body, ref_advance, clipped = _clip_body_from_left(before.body, n)
    else:
        body, clipped = _clip_body_from_right(before.body, n)
        ref_advance = 0

    if not body:
        logger.debug(
            f"Clipping {n} bases leaves nothing aligned for '{aln.query_name}'; unmapping it.",
        )
        make_read_unmapped(aln)
        return clipped

    match mode, from_start:
        case ClippingMode.SOFT, True:
            after = before._replace(body=body, lead_soft=before.lead_soft + clipped)
        case ClippingMode.SOFT, False:
            after = before._replace(body=body, trail_soft=before.trail_soft + clipped)
        case ClippingMode.HARD, True:
            removed = before.lead_soft + clipped
            _hard_clip_bases(aln, removed, True, auto_trim_attributes)
            after = before._replace(
                body=body, lead_soft=0, lead_hard=before.lead_hard + removed
            )
        case ClippingMode.HARD, False:
            removed = before.trail_soft + clipped
            _hard_clip_bases(aln, removed, False, auto_trim_attributes)
            after = before._replace(
                body=body, trail_soft=0, trail_hard=before.trail_hard + removed
            )

    new_cigar = after.join()
    seq = aln.query_sequence
    if seq is not None:
        assert len(seq) == new_cigar.query_length(), (
            f"CIGAR/sequence mismatch after clipping '{aln.query_name}': "
            f"seq_len={len(seq)}, cigar_query_len={new_cigar.query_length()}"
        )

    aln.reference_start += ref_advance
    aln.cigartuples = new_cigar.to_pysam()
    clear_invalidated_tags(aln)
    return clipped


def _upgrade_soft_clips(
    aln: pysam.AlignedSegment,
    count: int,
    from_start: bool,  # noqa: FBT001
    auto_trim_attributes: bool,  # noqa: FBT001
) -> None:
    """Turn up to `count` existing soft-clipped bases at one end into hard clips."""
    before = ClippedCigar.split(Cigar.from_pysam(aln.cigartuples))
    soft = before.lead_soft if from_start else before.trail_soft
    count = min(count, soft)
    if count <= 0:
        return
    _hard_clip_bases(aln, count, from_start, auto_trim_attributes)
    if from_start:
        after = before._replace(
            lead_soft=soft - count, lead_hard=before.lead_hard + count
        )
    else:
        after = before._replace(
            trail_soft=soft - count, trail_hard=before.trail_hard + count
        )
    aln.cigartuples = after.join().to_pysam()


def _clip_read(
    aln: pysam.AlignedSegment,
    n: int,
    mode: ClippingMode,
    from_start: bool,  # noqa: FBT001
    auto_trim_attributes: bool = False,  # noqa: FBT001, FBT002
) -> int:
    """
    Ensure at least `n` bases are clipped at one end of the read, counting
    clipping that is already there. Only the shortfall is clipped from the
    alignment.
    """
    if aln.is_unmapped or not aln.cigartuples or n <= 0:
        return 0
    existing = ClippedCigar.split(Cigar.from_pysam(aln.cigartuples))
    hard = existing.lead_hard if from_start else existing.trail_hard
    soft = existing.lead_soft if from_start else existing.trail_soft

    if n > hard + soft:
        return _clip_alignment(aln, n - hard - soft, mode, from_start, auto_trim_attributes)
    if mode is ClippingMode.HARD and n > hard:
        _upgrade_soft_clips(aln, n - hard, from_start, auto_trim_attributes)
    return 0


def clip_5prime_end_of_read(
    aln: pysam.AlignedSegment,
    n: int,
    mode: ClippingMode = ClippingMode.SOFT,
    auto_trim_attributes: bool = False,  # noqa: FBT001, FBT002
) -> int:
    """Clip the 5' end of the read: the alignment start for forward reads, the end for reverse."""
    return _clip_read(aln, n, mode, not aln.is_reverse, auto_trim_attributes)


def clip_3prime_end_of_alignment(
    aln: pysam.AlignedSegment,
    n: int,
    mode: ClippingMode = ClippingMode.SOFT,
    auto_trim_attributes: bool = False,  # noqa: FBT001, FBT002
) -> int:
    """Clip `n` more aligned bases from the 3' end of the read."""
    return _clip_alignment(aln, n, mode, aln.is_reverse, auto_trim_attributes)


# ---------------------------- AMPLICON CATALOG ----------------------------- #


class AmpliconCatalog:
    """Amplicons indexed by genomic span for overlap queries."""

    def __init__(self, amplicons: Iterable[Amplicon]) -> None:
        self._amplicons: list[Amplicon] = []
        self._order: dict[Amplicon, int] = {}
        self._trees: dict[str, IntervalTree] = {}
        for amp in amplicons:
            self._order.setdefault(amp, len(self._amplicons))
            self._amplicons.append(amp)
            tree = self._trees.setdefault(amp.contig, IntervalTree())
            # intervaltree intervals are half-open
            tree.addi(amp.start, amp.end + 1, amp)

    @classmethod
    def load(cls, path: str | Path) -> AmpliconCatalog:
        """
        Load amplicons from a tab-delimited primer table with a header row.
        Extra columns are ignored.
        """
        path = Path(path)
        if not path.is_file():
            msg = f"Primer file does not exist or is not a file: {path}"
            logger.error(msg)
            raise FileNotFoundError(msg)

        logger.info(f"Loading primers from {path}")
        try:
            df = pl.read_csv(path, separator="\t", infer_schema_length=0)
        except pl.exceptions.NoDataError as e:
            msg = (
                f"Could not find column headers in {path}; expected "
                f"{', '.join(PRIMER_HEADERS)}."
            )
            logger.error(msg)
            raise ValueError(msg) from e
        for header in PRIMER_HEADERS:
            if header not in df.columns:
                msg = f"Could not find column header '{header}' in {path}."
                logger.error(msg)
                raise ValueError(msg)
        if df.height == 0:
            msg = f"Primer file contained no data: {path}"
            logger.error(msg)
            raise ValueError(msg)

        try:
            df = df.select(
                pl.col("chrom").str.strip_chars(),
                *(pl.col(h).str.strip_chars().cast(pl.Int64) for h in PRIMER_HEADERS[1:]),
            )
        except (pl.exceptions.InvalidOperationError, pl.exceptions.ComputeError) as e:
            msg = f"Primer coordinates must be integers in {path}: {e}"
            logger.error(msg)
            raise ValueError(msg) from e

        for header in PRIMER_HEADERS:
            missing = df.get_column(header).is_null().arg_true()
            if missing.len() > 0:
                # Line 1 is the header row
                msg = f"Empty '{header}' value on line {missing[0] + 2} of {path}."
                logger.error(msg)
                raise ValueError(msg)

        catalog = cls(Amplicon(**row) for row in df.iter_rows(named=True))
        logger.info(
            f"Loaded {len(catalog)} amplicons; longest primer is "
            f"{catalog.longest_primer_length()} bp",
        )
        return catalog

    def __len__(self) -> int:
        return len(self._amplicons)

    def __iter__(self) -> Iterator[Amplicon]:
        return iter(self._amplicons)

    def query(self, chrom: str, start: int, end: int) -> set[Amplicon]:
        """Every amplicon whose span overlaps the 1-based closed interval [start, end]."""
        tree = self._trees.get(chrom)
        if tree is None or end < start:
            return set()
        return {iv.data for iv in tree.overlap(start, end + 1)}

    def longest_primer_length(self) -> int:
        return max(amp.longest_primer_length for amp in self._amplicons)

    def find_amplicon(self, chrom: str, start: int, end: int, slop: int) -> Amplicon | None:
        """
        The amplicon whose outer primer ends lie within `slop` of `start` and
        `end`, or None. If several qualify, the smallest total deviation wins,
        then the earliest in the primer table.
        """
        candidates = [
            amp
            for amp in self.query(chrom, start, end)
            if abs(amp.left_start - start) <= slop and abs(amp.right_end - end) <= slop
        ]
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.debug(
                f"{len(candidates)} amplicons match {chrom}:{start}-{end} within slop {slop}",
            )
        return min(
            candidates,
            key=lambda a: (
                abs(a.left_start - start) + abs(a.right_end - end),
                self._order[a],
            ),
        )


# --------------------------- TEMPLATE ASSEMBLY ----------------------------- #


class PeekableIterator:
    """An iterator over records that can show the next record without consuming it."""

    def __init__(self, records: Iterable[pysam.AlignedSegment]) -> None:
        self._it = iter(records)
        self._next = next(self._it, None)

    def peek(self) -> pysam.AlignedSegment | None:
        return self._next

    def __iter__(self) -> PeekableIterator:
        return self

    def __next__(self) -> pysam.AlignedSegment:
        if self._next is None:
            raise StopIteration
        rec = self._next
        self._next = next(self._it, None)
        return rec


class TemplateIterator:
    """
    Groups a query-name grouped stream of records into Templates. Only
    contiguity of each name matters, not the ordering between names.
    Single pass; not restartable.
    """

    def __init__(self, records: Iterable[pysam.AlignedSegment]) -> None:
        self._records = PeekableIterator(records)

    def __iter__(self) -> TemplateIterator:
        return self

    def __next__(self) -> Template:
        first = next(self._records)
        name = first.query_name
        reads = [first]
        while (rec := self._records.peek()) is not None and rec.query_name == name:
            reads.append(next(self._records))
        return Template(name, reads)


# ------------------------------- MATE FIXUP -------------------------------- #


def compute_insert_size(rec1: pysam.AlignedSegment, rec2: pysam.AlignedSegment) -> int:
    """Signed insert size from rec1's 5' end to rec2's, 0 unless both map to one contig."""
    if rec1.is_unmapped or rec2.is_unmapped or rec1.reference_id != rec2.reference_id:
        return 0
    five1 = alignment_end(rec1) if rec1.is_reverse else alignment_start(rec1)
    five2 = alignment_end(rec2) if rec2.is_reverse else alignment_start(rec2)
    adjustment = 1 if five2 >= five1 else -1
    return five2 - five1 + adjustment


def set_mate_info(rec1: pysam.AlignedSegment, rec2: pysam.AlignedSegment) -> None:
    """Rewrite the mate fields, MQ and MC of a primary pair from each other's alignments."""
    if not rec1.is_unmapped and not rec2.is_unmapped:
        for rec, mate in ((rec1, rec2), (rec2, rec1)):
            rec.next_reference_id = mate.reference_id
            rec.next_reference_start = mate.reference_start
            rec.mate_is_reverse = mate.is_reverse
            rec.mate_is_unmapped = False
            rec.set_tag("MQ", mate.mapping_quality, value_type="i")
            rec.set_tag("MC", mate.cigarstring, value_type="Z")
        insert_size = compute_insert_size(rec1, rec2)
        rec1.template_length = insert_size
        rec2.template_length = -insert_size
    elif rec1.is_unmapped and rec2.is_unmapped:
        for rec, mate in ((rec1, rec2), (rec2, rec1)):
            rec.reference_id = -1
            rec.reference_start = -1
            rec.next_reference_id = -1
            rec.next_reference_start = -1
            rec.mate_is_reverse = mate.is_reverse
            rec.mate_is_unmapped = True
            rec.template_length = 0
            rec.set_tag("MQ", None)
            rec.set_tag("MC", None)
    else:
        mapped, unmapped = (rec2, rec1) if rec1.is_unmapped else (rec1, rec2)
        # Place the unmapped read with its mapped mate
        unmapped.reference_id = mapped.reference_id
        unmapped.reference_start = mapped.reference_start

        mapped.next_reference_id = unmapped.reference_id
        mapped.next_reference_start = unmapped.reference_start
        mapped.mate_is_reverse = unmapped.is_reverse
        mapped.mate_is_unmapped = True
        mapped.template_length = 0
        mapped.set_tag("MQ", None)
        mapped.set_tag("MC", None)

        unmapped.next_reference_id = mapped.reference_id
        unmapped.next_reference_start = mapped.reference_start
        unmapped.mate_is_reverse = mapped.is_reverse
        unmapped.mate_is_unmapped = False
        unmapped.template_length = 0
        unmapped.set_tag("MQ", mapped.mapping_quality, value_type="i")
        unmapped.set_tag("MC", mapped.cigarstring, value_type="Z")


def set_mate_info_on_supplementary(
    supp: pysam.AlignedSegment,
    mate: pysam.AlignedSegment,
) -> None:
    """Point a supplementary alignment at the primary record of its mate."""
    supp.next_reference_id = mate.reference_id
    supp.next_reference_start = mate.reference_start
    supp.mate_is_reverse = mate.is_reverse
    supp.mate_is_unmapped = mate.is_unmapped
    supp.template_length = -mate.template_length
    if mate.is_unmapped:
        supp.set_tag("MC", None)
        supp.set_tag("MQ", None)
    else:
        supp.set_tag("MC", mate.cigarstring, value_type="Z")
        supp.set_tag("MQ", mate.mapping_quality, value_type="i")


# ------------------------- PRIMER TRIMMING ENGINE -------------------------- #


class PrimerTrimmer:
    """
    Decides and applies the primer clipping for one template at a time.

    - FR pairs whose insert matches an amplicon within slop: each record is
      clipped at its 5' end by the primer length on its side of the amplicon.
    - FR pairs without a match, and pairs that are unmapped, span contigs or
      are not FR: every record is clipped by the catalog's longest primer.
    - Templates without a primary R1/R2 pair: every record is clipped by the
      longest primer, with no mate fixup.
    """

    def __init__(self, catalog: AmpliconCatalog, config: TrimConfig) -> None:
        self.catalog = catalog
        self.config = config
        self.max_primer_length = catalog.longest_primer_length()
        self.stats = TrimStats()

    def _clip_5prime(self, rec: pysam.AlignedSegment, length: int) -> None:
        clip_5prime_end_of_read(
            rec, length, self.config.clipping_mode, self.config.auto_trim_attributes
        )

    def _clip_3prime(self, rec: pysam.AlignedSegment, length: int) -> None:
        clip_3prime_end_of_alignment(
            rec, length, self.config.clipping_mode, self.config.auto_trim_attributes
        )

    def trim_template(self, template: Template) -> None:
        self.stats.templates += 1
        self.stats.records += len(template.records)
        r1, r2 = template.r1, template.r2
        # Taken before clipping, which clears the flag on records it unmaps
        supplementals = template.supplementals

        if r1 is None or r2 is None:
            self.stats.unpaired += 1
            logger.trace(f"No primary pair for '{template.name}'; clipping reads independently")
            for rec in template.records:
                self._clip_5prime(rec, self.max_primer_length)
            return

        if is_fr_pair(r1, r2):
            left, right = (r2, r1) if r1.is_reverse else (r1, r2)
            start, end = unclipped_start(left), unclipped_end(right)
            amplicon = self.catalog.find_amplicon(
                left.reference_name, start, end, self.config.slop
            )
            match amplicon:
                case Amplicon():
                    self.stats.matched += 1
                    logger.trace(f"'{template.name}' insert {start}-{end} matches {amplicon}")
                    for rec in template.records:
                        if rec.is_read1 == left.is_read1:
                            self._clip_5prime(rec, amplicon.left_primer_length)
                        else:
                            self._clip_5prime(rec, amplicon.right_primer_length)
                case None:
                    self.stats.unmatched += 1
                    logger.trace(f"'{template.name}' insert {start}-{end} matches no amplicon")
                    for rec in template.records:
                        self._clip_5prime(rec, self.max_primer_length)

            self.clip_fully_overlapped_fr_reads(r1, r2)
        else:
            self.stats.ineligible += 1
            for rec in template.records:
                self._clip_5prime(rec, self.max_primer_length)

        set_mate_info(r1, r2)
        for supp in supplementals:
            set_mate_info_on_supplementary(supp, r2 if supp.is_read1 else r1)

    def clip_fully_overlapped_fr_reads(
        self,
        r1: pysam.AlignedSegment,
        r2: pysam.AlignedSegment,
    ) -> None:
        """
        For FR mates that extend past each other, clip the 3' end of each read
        back to its mate's 5' end.
        """
        if r1.is_unmapped or r2.is_unmapped:
            return
        plus, minus = (r2, r1) if r1.is_reverse else (r1, r2)
        if alignment_start(plus) < alignment_end(minus):
            plus_trim = alignment_end(plus) - alignment_end(minus)
            minus_trim = alignment_start(plus) - alignment_start(minus)
            if plus_trim > 0:
                self._clip_3prime(plus, plus_trim)
            if minus_trim > 0:
                self._clip_3prime(minus, minus_trim)
            if plus_trim > 0 or minus_trim > 0:
                self.stats.overlap_trimmed += 1


# ---------------------------- TAG RECALCULATION ---------------------------- #


class ReferenceWalker:
    """Hands out reference contigs, holding the most recently fetched one."""

    def __init__(self, path: str | Path) -> None:
        self._fasta = pysam.FastaFile(str(path))
        self._contig: str | None = None
        self._bases: str = ""

    def get(self, contig: str) -> str:
        if contig != self._contig:
            logger.debug(f"Loading reference contig '{contig}'")
            self._bases = self._fasta.fetch(contig).upper()
            self._contig = contig
        return self._bases

    def close(self) -> None:
        self._fasta.close()


def calculate_md_nm_uq(
    aln: pysam.AlignedSegment,
    ref_bases: str,
) -> tuple[str, int, int | None]:
    """
    Compute the MD string, edit distance and sum of mismatching base qualities
    for a mapped record against its contig. UQ is None without qualities.
    """
    if aln.reference_end > len(ref_bases):
        msg = (
            f"Read '{aln.query_name}' aligns to {aln.reference_name}:{aln.reference_end}, "
            f"past the end of the reference contig ({len(ref_bases)} bp)"
        )
        logger.error(msg)
        raise ValueError(msg)
    seq = aln.query_sequence.upper()
    qual = aln.query_qualities
    md: list[str] = []
    nm = 0
    uq = 0
    matched = 0
    ref_pos = aln.reference_start
    qry_pos = 0
    for op, ln in aln.cigartuples:
        if op in BOTH_CONSUME:
            for i in range(ln):
                ref_base = ref_bases[ref_pos + i]
                if seq[qry_pos + i] == ref_base:
                    matched += 1
                else:
                    md.append(f"{matched}{ref_base}")
                    matched = 0
                    nm += 1
                    if qual is not None:
                        uq += qual[qry_pos + i]
            ref_pos += ln
            qry_pos += ln
        elif op == 1:  # I
            nm += ln
            qry_pos += ln
        elif op == 2:  # D
            md.append(f"{matched}^{ref_bases[ref_pos : ref_pos + ln]}")
            matched = 0
            nm += ln
            ref_pos += ln
        elif op == 3:  # N
            ref_pos += ln
        elif op == SOFT_CLIP:
            qry_pos += ln
    md.append(str(matched))
    return "".join(md), nm, (uq if qual is not None else None)


def recalculate_tags(aln: pysam.AlignedSegment, walker: ReferenceWalker) -> None:
    """Recalculate NM, MD and UQ on a mapped record. Unmapped records are left alone."""
    if aln.is_unmapped or aln.query_sequence is None:
        return
    md, nm, uq = calculate_md_nm_uq(aln, walker.get(aln.reference_name))
    aln.set_tag("MD", md, value_type="Z")
    aln.set_tag("NM", nm, value_type="i")
    if uq is not None:
        aln.set_tag("UQ", uq, value_type="i")


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = "Output/input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    header: pysam.AlignmentHeader | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """Open SAM/BAM/CRAM with the mode implied by the extension. CRAM uses `reference`."""
    mode = _io_mode_from_ext(path, write)

    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        if header is None:
            msg = f"Writing to '{path}' requires a header"
            logger.error(msg)
            raise ValueError(msg)
        return pysam.AlignmentFile(path, mode, header=header, **kwargs)
    return pysam.AlignmentFile(path, mode, **kwargs)


def assert_readable(path: str | Path) -> None:
    path = Path(path)
    if not path.is_file() or not os.access(path, os.R_OK):
        msg = f"File does not exist or is not readable: {path}"
        logger.error(msg)
        raise FileNotFoundError(msg)


def assert_can_write_file(path: str | Path) -> None:
    path = Path(path)
    parent = path.absolute().parent
    if not parent.is_dir():
        msg = f"Output directory does not exist: {parent}"
        logger.error(msg)
        raise FileNotFoundError(msg)
    if (path.exists() and not os.access(path, os.W_OK)) or not os.access(parent, os.W_OK):
        msg = f"Cannot write output file: {path}"
        logger.error(msg)
        raise PermissionError(msg)


def sort_alignment(
    src: str | Path,
    dst: str | Path,
    order: SortOrder,
    reference: str | None = None,
) -> None:
    """Sort `src` into `dst` with samtools; queryname order sorts by read name."""
    args = ["-n"] if order is SortOrder.QUERYNAME else []
    if reference is not None and any(
        str(p).lower().endswith(".cram") for p in (src, dst)
    ):
        args += ["--reference", reference]
    logger.debug(f"Sorting {src} into {order.value} order at {dst}")
    pysam.sort(*args, "--no-PG", "-o", str(dst), str(src))


def build_output_header(
    header: pysam.AlignmentHeader,
    sort_order: SortOrder,
    command_line: str | None = None,
) -> dict:
    """Copy the input header with the output sort order and a @PG record for this tool."""
    out = header.to_dict()
    out["HD"] = {**out.get("HD", {"VN": "1.6"}), "SO": sort_order.value}
    programs = out.setdefault("PG", [])
    ids = {pg.get("ID") for pg in programs}
    pg_id = "trim_primers"
    suffix = 1
    while pg_id in ids:
        pg_id = f"trim_primers.{suffix}"
        suffix += 1
    pg = {"ID": pg_id, "PN": "trim_primers", "VN": __version__}
    if programs:
        pg["PP"] = programs[-1]["ID"]
    if command_line:
        pg["CL"] = command_line
    programs.append(pg)
    return out


# ------------------------------ ORCHESTRATION ------------------------------ #


def _queryname_records(
    inp: pysam.AlignmentFile,
    in_path: str,
    in_order: SortOrder,
    tmp_dir: Path,
    stack: ExitStack,
    reference: str | None,
) -> Iterable[pysam.AlignedSegment]:
    """Records of the input grouped by query name, sorting into a temp file if needed."""
    if in_order is SortOrder.QUERYNAME:
        return inp
    logger.info("Sorting into queryname order.")
    sorted_path = tmp_dir / "queryname.bam"
    sort_alignment(in_path, sorted_path, SortOrder.QUERYNAME, reference)
    return stack.enter_context(open_alignment(str(sorted_path), write=False))


def trim_primers(  # noqa: PLR0913
    in_path: str,
    out_path: str,
    primers: str | Path,
    config: TrimConfig,
    sort_order: SortOrder | None = None,
    reference: str | None = None,
    command_line: str | None = None,
) -> TrimStats:
    """
    Run the whole pipeline:
      a) bring the input into queryname order (sorting if it isn't already)
      b) group records into templates and trim each one
      c) without a reference, write the trimmed records out (sorting only if
         coordinate output was requested)
      d) with a reference, coordinate sort the trimmed records, recalculate
         NM/MD/UQ while draining the sort, then write (sorting again only if a
         queryname output was requested)
    """
    catalog = AmpliconCatalog.load(primers)
    trimmer = PrimerTrimmer(catalog, config)

    with ExitStack() as stack:
        tmp_dir = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="trim_primers.")))
        inp = stack.enter_context(open_alignment(in_path, write=False, reference=reference))
        in_order = SortOrder.from_header(inp.header)
        out_order = sort_order or in_order
        header = build_output_header(inp.header, out_order, command_line)
        logger.debug(f"Input sort order: {in_order.value}; output sort order: {out_order.value}")

        records = _queryname_records(inp, in_path, in_order, tmp_dir, stack, reference)

        # Trimmed records are written in queryname order; go via a temp file
        # whenever another sort has to follow
        if reference is None and out_order is not SortOrder.COORDINATE:
            trimmed_path = out_path
        else:
            trimmed_path = str(tmp_dir / "trimmed.bam")

        with open_alignment(trimmed_path, write=True, header=header) as outp:
            for template in TemplateIterator(records):
                trimmer.trim_template(template)
                for rec in template.records:
                    outp.write(rec)
                if trimmer.stats.templates % PROGRESS_EVERY == 0:
                    logger.debug(
                        f"Progress: trimmed {trimmer.stats.records} records in "
                        f"{trimmer.stats.templates} templates",
                    )

        if reference is None:
            if trimmed_path != out_path:
                sort_alignment(trimmed_path, out_path, out_order)
        else:
            _recalculate_and_write(
                trimmed_path, out_path, header, out_order, reference, tmp_dir
            )

    return trimmer.stats


def _recalculate_and_write(  # noqa: PLR0913
    trimmed_path: str,
    out_path: str,
    header: dict,
    out_order: SortOrder,
    reference: str,
    tmp_dir: Path,
) -> None:
    """Coordinate sort trimmed records and recalculate NM/MD/UQ on the way to the output."""
    logger.info("Sorting into coordinate order to recalculate NM, MD and UQ.")
    coord_path = tmp_dir / "coordinate.bam"
    sort_alignment(trimmed_path, coord_path, SortOrder.COORDINATE)

    needs_final_sort = out_order is SortOrder.QUERYNAME
    dest = str(tmp_dir / "recalculated.bam") if needs_final_sort else out_path
    dest_reference = None if needs_final_sort else reference

    walker = ReferenceWalker(reference)
    written = 0
    try:
        with (
            open_alignment(str(coord_path), write=False) as sorted_in,
            open_alignment(dest, write=True, header=header, reference=dest_reference) as outp,
        ):
            for rec in sorted_in:
                recalculate_tags(rec, walker)
                outp.write(rec)
                written += 1
                if written % PROGRESS_EVERY == 0:
                    logger.debug(f"Progress: written {written} records")
    finally:
        walker.close()

    if needs_final_sort:
        sort_alignment(dest, out_path, out_order, reference)


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Trim amplicon primers from aligned reads in SAM/BAM/CRAM.\n"
            "Pairs matching an amplicon (+/- slop) have that amplicon's primers clipped;\n"
            "all other reads have the longest primer length clipped from their 5' end."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument("-i", "--input", dest="in_path", required=True, help="Input SAM/BAM/CRAM")
    p.add_argument("-o", "--output", dest="out_path", required=True, help="Output SAM/BAM/CRAM")
    p.add_argument(
        "-p",
        "--primers",
        required=True,
        help="Tab-delimited primer file (chrom, left_start, left_end, right_start, right_end)",
    )
    p.add_argument(
        "-r",
        "--ref",
        dest="reference",
        default=None,
        help="Optional reference FASTA for recalculating NM, MD and UQ tags",
    )

    # Trimming
    p.add_argument(
        "-H",
        "--hard-clip",
        action="store_true",
        help="Hard clip reads instead of soft clipping them",
    )
    p.add_argument(
        "-S",
        "--slop",
        type=int,
        default=5,
        help="Match to primer locations +/- this many bases (default: 5)",
    )
    p.add_argument(
        "-s",
        "--sort-order",
        choices=[o.value for o in SortOrder if o is not SortOrder.UNKNOWN],
        default=None,
        help="Sort order of the output (defaults to the input sort order)",
    )
    p.add_argument(
        "-a",
        "--auto-trim-attributes",
        action="store_true",
        help="Trim per-base tags that are the same length as the bases (with --hard-clip)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting primer trimming run.")

    assert_readable(args.in_path)
    assert_readable(args.primers)
    if args.reference is not None:
        assert_readable(args.reference)
    assert_can_write_file(args.out_path)
    _io_mode_from_ext(args.out_path, write=True)

    config = TrimConfig(
        slop=args.slop,
        clipping_mode=ClippingMode.HARD if args.hard_clip else ClippingMode.SOFT,
        auto_trim_attributes=bool(args.auto_trim_attributes),
    )
    logger.debug(f"TrimConfig: {config}")

    command_line = " ".join(["trim_primers.py", *(sys.argv[1:] if argv is None else argv)])
    stats = trim_primers(
        in_path=args.in_path,
        out_path=args.out_path,
        primers=args.primers,
        config=config,
        sort_order=SortOrder(args.sort_order) if args.sort_order else None,
        reference=args.reference,
        command_line=command_line,
    )

    logger.success(
        f"Trimmed {stats.records} records in {stats.templates} templates | "
        f"amplicon matched: {stats.matched} | unmatched: {stats.unmatched} | "
        f"ineligible pairs: {stats.ineligible} | unpaired: {stats.unpaired} | "
        f"overlap trimmed: {stats.overlap_trimmed}",
    )
    logger.info("Primer trimming run complete.")


if __name__ == "__main__":
    main()
