#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Repair BI/BD tags on supplementary alignments in UMI-consensus BAMs.

Some consensus callers copy the BI (base insertion) and BD (base deletion)
quality strings from the pre-consensus read into the consensus record without
trimming them. On supplementary alignments the stored SEQ/QUAL is hard-clipped,
so BI/BD end up longer than QUAL and tools like GATK4 Mutect2 refuse the record.
This script slices both tags down to the hard-clip-free extent of the read and
streams everything else through untouched.

Usage: trim_bi_bd_tags.py input.bam > output.bam
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
HARD_CLIP = 5

# Aux value type for character arrays (SAM "Z")
STRING_TYPE = "Z"

# pysam's name for stdin/stdout
STDIO = "-"

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000

PROG = "doppelganger"

# Quietest to loudest; -v/-q move away from SUCCESS
VERBOSITY_LEVELS = ("CRITICAL", "ERROR", "WARNING", "SUCCESS", "INFO", "DEBUG", "TRACE")
BASE_VERBOSITY = VERBOSITY_LEVELS.index("SUCCESS")

# Run summary sits above CRITICAL so no -q count can hide it
SUMMARY_LEVEL = "SUMMARY"
try:
    logger.level(SUMMARY_LEVEL)
except ValueError:
    logger.level(SUMMARY_LEVEL, no=60, color="<green><bold>")


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class TagPair:
    """The two per-base aux tags that must be trimmed together."""

    first: str = "BI"
    second: str = "BD"

    def names(self) -> tuple[str, str]:
        return (self.first, self.second)


class RewriteOutcome(Enum):
    """What the rewriter did to a single record."""

    UNCHANGED = auto()  # not supplementary, passed through
    REWRITTEN = auto()  # BI/BD sliced to the aligned extent


class AlignedExtent(NamedTuple):
    """Half-open [start, end) range of the stored read that was aligned."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


# --------------------------------- ERRORS ---------------------------------- #


class TagRepairError(RuntimeError):
    """Base class for conditions that must abort the whole stream."""


class MissingAuxTagError(TagRepairError):
    """A supplementary record lacks BI/BD, or carries them with the wrong type."""


class TagRemovalError(TagRepairError):
    """An aux tag that was just read could not be removed from the record."""


class InvalidExtentError(TagRepairError):
    """Hard clips add up to more than the sequence length."""


class TagLengthError(TagRepairError):
    """A per-base tag is too short to cover the aligned extent."""


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Send logs to stderr (stdout carries the alignment stream). The level starts
    at SUCCESS; each -v steps towards TRACE, each -q towards CRITICAL. The
    closing SUMMARY line is emitted at every setting.
    """
    logger.remove()
    index = BASE_VERBOSITY + verbose - quiet
    index = max(0, min(index, len(VERBOSITY_LEVELS) - 1))
    level_str = VERBOSITY_LEVELS[index]
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw (op, len) tuple to CigarOp."""
        op, ln = t
        return CigarOp(op, ln)


class Cigar(list[CigarOp]):
    """A list of CigarOp with hard-clip accounting."""

    @classmethod
    def from_pysam(cls, cig_raw: Iterable[tuple[int, int]] | None) -> Cigar:
        """
        Convert pysam's list[(op, len)] to a Cigar. A missing CIGAR (None)
        becomes an empty Cigar, which has no clips at either end.
        """
        if cig_raw is None:
            return cls()
        return cls(CigarOp.from_tuple(t) for t in cig_raw)

    def leading_hardclips(self) -> int:
        """Total length of the contiguous H runs at the front."""
        total = 0
        for run in self:
            if run.op != HARD_CLIP:
                break
            total += run.length
        return total

    def trailing_hardclips(self) -> int:
        """Total length of the contiguous H runs at the back."""
        total = 0
        for run in reversed(self):
            if run.op != HARD_CLIP:
                break
            total += run.length
        return total


def aligned_extent(
    cigar_ops: Iterable[tuple[int, int]] | None,
    seq_len: int,
) -> AlignedExtent:
    """
    Return the [start, end) slice of a full-length per-base array that lines up
    with the hard-clip-free part of the alignment.

    start = sum of leading H runs
    end   = seq_len - sum of trailing H runs

    Soft clips and every other operation are ignored. Raises InvalidExtentError
    if the clips overlap (start > end) rather than handing back an inverted
    range; nothing is clamped.
    """
    # Positive invariant: lengths are non-negative
    assert seq_len >= 0, f"Sequence length must be non-negative, got {seq_len}"

    cig = cigar_ops if isinstance(cigar_ops, Cigar) else Cigar.from_pysam(cigar_ops)
    start = cig.leading_hardclips()
    end = seq_len - cig.trailing_hardclips()

    if start > end:
        msg = (
            f"Hard clips exceed sequence length: leading={start}, "
            f"trailing={seq_len - end}, seq_len={seq_len}"
        )
        logger.error(msg)
        raise InvalidExtentError(msg)

    return AlignedExtent(start, end)


# ------------------------------ TAG REWRITE -------------------------------- #


def _get_string_tag(aln: pysam.AlignedSegment, tag: str) -> str:
    """Fetch a Z-typed aux tag, raising MissingAuxTagError if absent or mistyped."""
    try:
        value, value_type = aln.get_tag(tag, with_value_type=True)
    except KeyError as err:
        msg = f"Supplementary read '{aln.query_name}' is missing the {tag} tag"
        logger.error(msg)
        raise MissingAuxTagError(msg) from err

    if value_type != STRING_TYPE:
        msg = (
            f"Supplementary read '{aln.query_name}' has {tag} of type "
            f"'{value_type}', expected '{STRING_TYPE}'"
        )
        logger.error(msg)
        raise MissingAuxTagError(msg)
    return value


def _slice_to_extent(
    aln: pysam.AlignedSegment,
    tag: str,
    value: str,
    extent: AlignedExtent,
) -> str:
    """Slice one per-base tag; a tag too short for the extent is fatal."""
    if len(value) < extent.end:
        msg = (
            f"{tag} on '{aln.query_name}' has length {len(value)}, too short "
            f"for aligned extent {extent.start}:{extent.end}"
        )
        logger.error(msg)
        raise TagLengthError(msg)
    return value[extent.start : extent.end]


def _replace_string_tags(
    aln: pysam.AlignedSegment,
    replacements: dict[str, str],
) -> None:
    """
    Remove each tag in `replacements`, then append its new Z value. Only these
    tags are touched; the rest of the aux block is left as stored. Every tag must
    be present before removal and gone after it, otherwise TagRemovalError.
    """
    absent = [tag for tag in replacements if not aln.has_tag(tag)]
    if absent:
        msg = f"{PROG}: unable to delete old {' and '.join(absent)} tags on '{aln.query_name}'"
        logger.error(msg)
        raise TagRemovalError(msg)

    for tag in replacements:
        aln.set_tag(tag, None)

    lingering = [tag for tag in replacements if aln.has_tag(tag)]
    if lingering:
        msg = f"{PROG}: duplicate {' and '.join(lingering)} tags survived removal on '{aln.query_name}'"
        logger.error(msg)
        raise TagRemovalError(msg)

    for tag, value in replacements.items():
        aln.set_tag(tag, value, value_type=STRING_TYPE)


def rewrite_bi_bd_tags(
    aln: pysam.AlignedSegment,
    tags: TagPair = TagPair(),  # noqa: B008
) -> RewriteOutcome:
    """
    Trim BI/BD on a supplementary alignment to its aligned extent, in place.

    Non-supplementary records are returned untouched. For supplementary ones
    the length of BI stands in for the unclipped read length, since both tags
    were copied from the full pre-consensus read.

    Raises:
        MissingAuxTagError: either tag is absent or not a string.
        InvalidExtentError: hard clips are longer than the tag arrays.
        TagLengthError: BD is too short to cover the extent taken from BI.
        TagRemovalError: a tag vanished before removal or survived it.
    """
    if not aln.is_supplementary:
        return RewriteOutcome.UNCHANGED

    first_tag, second_tag = tags.names()
    first = _get_string_tag(aln, first_tag)
    second = _get_string_tag(aln, second_tag)

    extent = aligned_extent(aln.cigartuples, len(first))
    clipped_first = _slice_to_extent(aln, first_tag, first, extent)
    clipped_second = _slice_to_extent(aln, second_tag, second, extent)

    _replace_string_tags(
        aln,
        {first_tag: clipped_first, second_tag: clipped_second},
    )

    logger.debug(
        f"Rewrote {first_tag}/{second_tag} on '{aln.query_name}': "
        f"{len(first)} -> {extent.length} (extent {extent.start}:{extent.end})",
    )
    return RewriteOutcome.REWRITTEN


# ----------------------------- I/O UTILITIES ------------------------------- #


def open_input(path: str, reference: str | None = None) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM for reading, letting htslib detect the format from the
    content ('-' reads stdin). CRAM decoding uses `reference` when given.
    """
    # Positive invariant: path must be a non-empty string
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )

    kwargs = {}
    if reference is not None:
        kwargs["reference_filename"] = reference

    logger.debug(f"Opening for read: {path}")
    inp = pysam.AlignmentFile(path, "r", **kwargs)
    if inp.is_cram and reference is None:
        logger.warning(
            f"Reading CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )
    return inp


def output_mode_for(inp: pysam.AlignmentFile) -> str:
    """Write mode in the input's format family (SAM->SAM, BAM->BAM, CRAM->CRAM)."""
    if inp.is_cram:
        return "wc"
    if inp.is_bam:
        return "wb"
    return "w"


def open_output(
    template: pysam.AlignmentFile,
    path: str = STDIO,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open the output in the same format as `template`, copying its header
    unchanged. Defaults to stdout.
    """
    mode = output_mode_for(template)
    kwargs = {}
    if mode == "wc" and reference is not None:
        kwargs["reference_filename"] = reference

    logger.debug(f"Opening for write: {path} (mode={mode})")
    return pysam.AlignmentFile(path, mode, template=template, **kwargs)


# ------------------------------ CORE LOGIC --------------------------------- #


def process_stream(
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    tags: TagPair = TagPair(),  # noqa: B008
) -> int:
    """
    Stream input -> output one record at a time, repairing BI/BD on
    supplementary alignments. Output order equals input order.

    Any TagRepairError propagates immediately; records already written stay
    written and nothing after the failing record is emitted.

    Returns:
        Number of records whose tags were rewritten.
    """
    seen = 0
    rewritten = 0

    for aln in inp:
        seen += 1
        if seen % DEBUG_EVERY == 0:
            logger.debug(f"Progress: seen={seen}, rewritten={rewritten}")

        outcome = rewrite_bi_bd_tags(aln, tags)
        outp.write(aln)
        if outcome is RewriteOutcome.REWRITTEN:
            rewritten += 1

    # Final invariant: cannot rewrite more than we read
    assert 0 <= rewritten <= seen, (
        f"Counter inconsistency: seen={seen}, rewritten={rewritten}"
    )

    logger.info(f"Process totals: seen={seen}, rewritten={rewritten}")
    return rewritten


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      input           : SAM/BAM/CRAM to repair ('-' for stdin)
      --ref           : reference FASTA for CRAM
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (-v and -q are mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        prog=PROG,
        description=(
            "Trim BI/BD tags on supplementary alignments to the hard-clip-free\n"
            "extent of the read. Writes the repaired stream to stdout in the same\n"
            "format as the input; all other records pass through unchanged."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    p.add_argument(
        "in_path",
        metavar="input",
        nargs="?",
        default=None,
        help="Input SAM/BAM/CRAM (format is detected from content)",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

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
        help="Decrease verbosity (use up to -qqq). The final count is always shown.",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.in_path is None:
        print(f"Usage: {PROG} [input bam] > output.bam")
        return

    configure_logging(args.verbose, args.quiet)
    pysam.set_verbosity(0)  # no complaints about missing indexes we never use
    logger.info(f"Repairing BI/BD tags in {args.in_path}")

    input_alignment = open_input(args.in_path, reference=args.reference)
    try:
        output_alignment = open_output(input_alignment, reference=args.reference)
    except (OSError, ValueError):
        input_alignment.close()
        raise

    try:
        rewritten = process_stream(input_alignment, output_alignment)
    except TagRepairError:
        logger.critical("Aborting: output is incomplete.")
        raise
    finally:
        output_alignment.close()
        input_alignment.close()

    logger.log(
        SUMMARY_LEVEL,
        f"{PROG} processed a total of {rewritten} supplementary reads",
    )


if __name__ == "__main__":
    main()
