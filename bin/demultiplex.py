#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of miseq-demux.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import collections
import contextlib
import dataclasses
import enum
import itertools
import json
import logging
import math
import os
import sys
import time
import typing
from collections.abc import Callable, Iterable, Iterator, Sequence

import numpy as np
import pysam
import xopen
from libdemux import (
    ALPHABET,
    ConfigurationError,
    RESERVED_NAME,
    InvalidBaseError,
    Sample,
    classify_fastq_files,
    logs_runtime,
    read_samples,
    suffix_extract,
)
from version import __version__

UNDETERMINED = -1
UNDETERMINED_NAME = RESERVED_NAME
PROGRESS_INTERVAL = 1_000
# Largest key space (4 ** combined barcode length) stored as a flat array
DENSE_TABLE_LIMIT = 1 << 24
# Keys plus their length marker bit must fit in int64
MAX_COMBINED_LENGTH = 31

DEFAULT_MISMATCHES = 1
DEFAULT_SCORE_MIN = 15
DEFAULT_SCORE_MEAN = 16
MAX_MISMATCHES = 3
MAX_SCORE = 40

# A=0, T=1, C=2, G=3
ENCODE_TABLE = str.maketrans(ALPHABET, "0123")


class QCFailReason(enum.Enum):
    PASS = "pass"
    INDEX1_BAD_MEAN = "index1_bad_mean"
    INDEX2_BAD_MEAN = "index2_bad_mean"
    INDEX1_BAD_MIN = "index1_bad_min"
    INDEX2_BAD_MIN = "index2_bad_min"


# Dataclass for tracking demultiplexing statistics. Counts are in reads,
# i.e. two per read pair.
@dataclasses.dataclass(slots=True)
class ReadCounts:
    count: int = 0
    match: int = 0
    undetermined: int = 0
    index1_bad_mean: int = 0
    index2_bad_mean: int = 0
    index1_bad_min: int = 0
    index2_bad_min: int = 0
    invalid_base: int = 0


class IndexScores(typing.NamedTuple):
    min: float
    mean: float

    @classmethod
    def from_qualities(cls, qualities: Sequence[int]) -> "IndexScores":
        if not len(qualities):
            return cls(0, 0.0)
        return cls(min(qualities), sum(qualities) / len(qualities))

    @classmethod
    def from_record(cls, record, phred: int = 33) -> "IndexScores":
        return cls.from_qualities(record.get_quality_array(phred))


class ReadQuadruple(typing.NamedTuple):
    index1: typing.Any
    index2: typing.Any
    read1: typing.Any
    read2: typing.Any


def permute(barcode: str, mismatches: int, alphabet: str = ALPHABET) -> frozenset[str]:
    """
    Expands a barcode to every sequence within `mismatches` substitutions of it.
    Each round substitutes every position of every word collected so far with every
    letter of the alphabet, so after n rounds the set is the Hamming ball of radius n.
    :param barcode: The barcode sequence
    :param mismatches: Number of substitution rounds, 0 returns the barcode alone
    :param alphabet: Letters to substitute with
    :return: frozenset of all variants, including the barcode itself
    """
    variants = {barcode}
    for _ in range(mismatches):
        variants |= {
            word[:pos] + char + word[pos + 1 :]
            for word in variants
            for pos in range(len(word))
            for char in alphabet
        }
    return frozenset(variants)


def hamming_ball_size(length: int, mismatches: int, alphabet_size: int = 4) -> int:
    return sum(
        math.comb(length, k) * (alphabet_size - 1) ** k
        for k in range(min(mismatches, length) + 1)
    )


def encode_index(seq: str) -> int:
    """
    Encodes a nucleotide sequence as a base-4 integer with A=0, T=1, C=2, G=3.
    :param seq: Sequence of A, T, C and G
    :return: The integer key
    :raises InvalidBaseError: seq is empty or contains any other character
    """
    digits = seq.translate(ENCODE_TABLE)
    if not (seq.isalpha() and digits.isdigit()):
        raise InvalidBaseError(f"Cannot encode index sequence {seq!r}")
    return int(digits, 4)


class FuzzyIndexTable:
    """
    Read-only lookup from combined (forward + reverse) index keys to sample ordinals,
    covering every pair of variants within the mismatch limit of each sample's barcodes.

    When all samples share one combined barcode length and the key space is small,
    keys index straight into a numpy array. Otherwise keys are kept in a sorted numpy
    array and found by binary search.
    If the neighborhoods of two samples overlap, the sample later in the sheet wins.
    """

    def __init__(
        self,
        samples: Sequence[Sample],
        mismatches: int = DEFAULT_MISMATCHES,
        dense_limit: int = DENSE_TABLE_LIMIT,
    ):
        self.mismatches = mismatches
        self.lengths = frozenset(len(s.forward) + len(s.reverse) for s in samples)
        if self.lengths and max(self.lengths) > MAX_COMBINED_LENGTH:
            raise ConfigurationError(
                f"Combined index length {max(self.lengths)} exceeds {MAX_COMBINED_LENGTH}"
            )
        self.collisions = 0
        self.dense = (
            len(self.lengths) == 1
            and len(ALPHABET) ** next(iter(self.lengths)) <= dense_limit
        )
        if self.dense:
            self.table = np.full(
                len(ALPHABET) ** next(iter(self.lengths)), UNDETERMINED, dtype=np.int32
            )
        else:
            self._pending: list[tuple[np.ndarray, int]] = []

        logger = logging.getLogger("FuzzyIndex")
        for sample in samples:
            self.insert(sample)
        if not self.dense:
            self._freeze()
        logger.info(
            "Indexed %d keys for %d samples with %d mismatches (%s table)",
            len(self),
            len(samples),
            mismatches,
            "dense" if self.dense else "sorted",
        )
        if self.collisions:
            logger.warning(
                "%d index keys are shared by more than one sample, later samples take precedence",
                self.collisions,
            )

    def insert(self, sample: Sample):
        forward = permute(sample.forward, self.mismatches)
        reverse = permute(sample.reverse, self.mismatches)
        if len(forward) != len(reverse):
            raise ConfigurationError(
                f"Permutated list sizes differ for sample {sample.name}: "
                f"{len(forward)} != {len(reverse)}"
            )
        shift = len(ALPHABET) ** len(sample.reverse)
        keys = (
            np.array([encode_index(seq) for seq in forward], dtype=np.int64)[:, None]
            * shift
            + np.array([encode_index(seq) for seq in reverse], dtype=np.int64)[None, :]
        ).ravel()
        if self.dense:
            previous = self.table[keys]
            self.collisions += int(
                np.count_nonzero((previous != UNDETERMINED) & (previous != sample.ordinal))
            )
            self.table[keys] = sample.ordinal
        else:
            # Keys carry a marker bit above the sequence so lengths never alias
            keys |= 1 << 2 * (len(sample.forward) + len(sample.reverse))
            self._pending.append((keys, sample.ordinal))

    def _freeze(self):
        """Merges the inserted keys into sorted key and ordinal arrays, last insert wins."""
        if not self._pending:
            self.keys = np.empty(0, dtype=np.int64)
            self.ordinals = np.empty(0, dtype=np.int32)
        else:
            keys = np.concatenate([k for k, _ in reversed(self._pending)])
            ordinals = np.repeat(
                np.array([o for _, o in reversed(self._pending)], dtype=np.int32),
                [len(k) for k, _ in reversed(self._pending)],
            )
            # np.unique keeps the first occurrence, which after reversal is the last insert
            self.keys, first = np.unique(keys, return_index=True)
            self.ordinals = ordinals[first]
            self.collisions += len(keys) - len(self.keys)
        del self._pending

    def get(self, key: int, length: int = None) -> int:
        """
        Looks up a combined index key.
        :param key: Key from encode_index
        :param length: Length of the encoded sequence. Keys of lengths that were never indexed miss.
            May be omitted when all samples share one combined barcode length.
        :return: The sample ordinal, or UNDETERMINED
        """
        if length is None:
            if len(self.lengths) != 1:
                raise ValueError("length is required when barcode lengths differ")
            length = next(iter(self.lengths))
        elif length not in self.lengths:
            return UNDETERMINED
        if self.dense:
            return int(self.table[key]) if 0 <= key < len(self.table) else UNDETERMINED
        key |= 1 << 2 * length
        i = int(np.searchsorted(self.keys, key))
        if i < len(self.keys) and self.keys[i] == key:
            return int(self.ordinals[i])
        return UNDETERMINED

    def match(self, forward: str, reverse: str) -> int:
        seq = forward + reverse
        return self.get(encode_index(seq), len(seq))

    def __len__(self):
        if self.dense:
            return int(np.count_nonzero(self.table != UNDETERMINED))
        return len(self.keys)


@dataclasses.dataclass(frozen=True, slots=True)
class QualityGate:
    scores_min: float = DEFAULT_SCORE_MIN
    scores_mean: float = DEFAULT_SCORE_MEAN

    def check(self, index1: IndexScores, index2: IndexScores) -> QCFailReason:
        """
        Classifies an index pair by quality. Mean scores are checked before minimum scores,
        and only the first failing test is reported.
        """
        if index1.mean < self.scores_mean:
            return QCFailReason.INDEX1_BAD_MEAN
        if index2.mean < self.scores_mean:
            return QCFailReason.INDEX2_BAD_MEAN
        if index1.min < self.scores_min:
            return QCFailReason.INDEX1_BAD_MIN
        if index2.min < self.scores_min:
            return QCFailReason.INDEX2_BAD_MIN
        return QCFailReason.PASS


class StatsCollector:
    """Running counters plus histograms of the raw index sequences of unmatched pairs."""

    def __init__(
        self,
        progress: Callable[["StatsCollector"], None] = None,
        interval: int = PROGRESS_INTERVAL,
    ):
        self.counts = ReadCounts()
        self.unmatched_forward: collections.Counter[str] = collections.Counter()
        self.unmatched_reverse: collections.Counter[str] = collections.Counter()
        self.progress = progress
        self.interval = interval
        self.start()

    def start(self):
        self.time_start = time.monotonic()

    @property
    def elapsed(self) -> str:
        return time.strftime(
            "%H:%M:%S", time.gmtime(time.monotonic() - self.time_start)
        )

    def _tick(self):
        self.counts.count += 2
        if self.progress is not None and self.counts.count % self.interval == 0:
            self.progress(self)

    def record_match(self):
        self.counts.match += 2
        self._tick()

    def record_qc_fail(self, reason: QCFailReason):
        counter = reason.value
        setattr(self.counts, counter, getattr(self.counts, counter) + 2)
        self.counts.undetermined += 2
        self._tick()

    def record_miss(self, forward: str, reverse: str, invalid_base: bool = False):
        if invalid_base:
            self.counts.invalid_base += 2
        self.counts.undetermined += 2
        self.unmatched_forward[forward] += 1
        self.unmatched_reverse[reverse] += 1
        self._tick()

    def prune(self, samples: Iterable[Sample]):
        """Drops histogram entries that are exactly a known sample barcode on the same side."""
        for sample in samples:
            self.unmatched_forward.pop(sample.forward, None)
            self.unmatched_reverse.pop(sample.reverse, None)

    def as_dict(self) -> dict[str, typing.Any]:
        return dataclasses.asdict(self.counts) | {"time": self.elapsed}

    @staticmethod
    def write_histogram(counter: collections.Counter, filename: str):
        with open(filename, "w") as ofp:
            for seq, count in counter.most_common():
                print(count, seq, sep="\t", file=ofp)

    def write_reports(self, output_dir: str):
        self.write_histogram(
            self.unmatched_forward,
            os.path.join(output_dir, f"{UNDETERMINED_NAME}_forward.tsv"),
        )
        self.write_histogram(
            self.unmatched_reverse,
            os.path.join(output_dir, f"{UNDETERMINED_NAME}_reverse.tsv"),
        )
        with open(os.path.join(output_dir, "demux_stats.json"), "w") as ofp:
            json.dump(self.as_dict() | {"version": __version__}, ofp, indent=2)


def log_progress(stats: StatsCollector):
    logging.getLogger("Progress").info(
        "%s",
        " ".join(f"{key}={value}" for key, value in stats.as_dict().items())
    )


class OutputMultiplexer:
    """
    Owns one forward/reverse output pair per sample plus the Undetermined pair.
    Compression follows the file suffix. All files are closed on exit, including on error.
    """

    def __init__(
        self,
        samples: Sequence[Sample],
        output_dir: str,
        suffix1: str,
        suffix2: str,
    ):
        self.output_dir = output_dir
        self.suffixes = (suffix1, suffix2)
        self.exit_stack = contextlib.ExitStack()
        self.sinks: dict[int, tuple[typing.TextIO, typing.TextIO]] = {}
        try:
            for sample in samples:
                self.sinks[sample.ordinal] = self.open_pair(sample.name)
            self.sinks[UNDETERMINED] = self.open_pair(UNDETERMINED_NAME)
        except BaseException:
            self.exit_stack.close()
            raise

    def open_pair(self, name: str) -> tuple[typing.TextIO, typing.TextIO]:
        return tuple(
            self.exit_stack.enter_context(
                xopen.xopen(os.path.join(self.output_dir, f"{name}{suffix}"), "w", threads=0)
            )
            for suffix in self.suffixes
        )

    def write(self, ordinal: int, read1, read2):
        """
        Appends a read pair to the files of a sample
        :param ordinal: Sample ordinal, or UNDETERMINED
        :param read1: Forward read, written in FASTQ format
        :param read2: Reverse read, written in FASTQ format
        """
        forward, reverse = self.sinks[ordinal]
        forward.write(f"{read1}\n")
        reverse.write(f"{read2}\n")

    def __enter__(self):
        return self

    def __exit__(self, *e):
        self.exit_stack.__exit__(*e)


def synchronize(*sources: Iterable, limit: int = None) -> Iterator[ReadQuadruple]:
    """
    Steps through the four record sources together, one record from each per step.
    Iteration stops as soon as any source runs out; sources of unequal length are
    truncated to the shortest without complaint.
    :param sources: index1, index2, read1 and read2 records, in that order
    :param limit: Stop after this many quadruples. None for no limit.
    """
    quadruples = zip(*sources)
    if limit is not None:
        quadruples = itertools.islice(quadruples, limit)
    for quadruple in quadruples:
        yield ReadQuadruple._make(quadruple)


def iter_read_quadruples(
    index1_fn: str,
    index2_fn: str,
    read1_fn: str,
    read2_fn: str,
    *,
    limit: int = None,
) -> Iterator[ReadQuadruple]:
    """
    Opens the four FASTQ files and yields aligned records. Records are recycled
    by pysam and are only valid until the next step.
    """
    with contextlib.ExitStack() as stack:
        sources = [
            stack.enter_context(pysam.FastxFile(fn, persist=False))
            for fn in (index1_fn, index2_fn, read1_fn, read2_fn)
        ]
        yield from synchronize(*sources, limit=limit)


class Demultiplexer:
    def __init__(
        self,
        samples: Sequence[Sample],
        mismatches_max: int = DEFAULT_MISMATCHES,
        scores_min: int = DEFAULT_SCORE_MIN,
        scores_mean: int = DEFAULT_SCORE_MEAN,
        phred: int = 33,
        progress: Callable[[StatsCollector], None] = None,
    ):
        """Initialize a Demultiplexer instance.

        :param samples: Samples in sheet order, as returned by read_samples
        :param mismatches_max: Maximum substitutions allowed in each index read
        :param scores_min: Reject pairs where any index position scores below this
        :param scores_mean: Reject pairs where either index has a mean score below this
        :param phred: ASCII offset of the quality strings
        :param progress: Called with the StatsCollector every PROGRESS_INTERVAL reads
        """
        self.samples = tuple(samples)
        self.phred = phred
        self.table = FuzzyIndexTable(self.samples, mismatches_max)
        self.gate = QualityGate(scores_min, scores_mean)
        self.stats = StatsCollector(progress)

    def demultiplex_read(self, index1, index2) -> int:
        """
        Decides where a read pair goes from its two index records. As a side effect,
        updates the demultiplexing statistics.
        :param index1: Record of the forward index read
        :param index2: Record of the reverse index read
        :return: The sample ordinal, or UNDETERMINED
        """
        qcpass = self.gate.check(
            IndexScores.from_record(index1, self.phred),
            IndexScores.from_record(index2, self.phred),
        )
        if qcpass is not QCFailReason.PASS:
            self.stats.record_qc_fail(qcpass)
            return UNDETERMINED
        forward, reverse = index1.sequence, index2.sequence
        try:
            ordinal = self.table.match(forward, reverse)
        except InvalidBaseError:
            self.stats.record_miss(forward, reverse, invalid_base=True)
            return UNDETERMINED
        if ordinal == UNDETERMINED:
            self.stats.record_miss(forward, reverse)
        else:
            self.stats.record_match()
        return ordinal

    @logs_runtime
    def demultiplex_experiment(
        self, quadruples: Iterable[ReadQuadruple], outputs: OutputMultiplexer
    ) -> ReadCounts:
        """
        Routes every read pair to its sample's output files.
        :param quadruples: Aligned index1, index2, read1, read2 records
        :param outputs: Open output files for every sample and Undetermined
        :return: The final counts. Histograms are left on self.stats.
        """
        self.stats.start()
        for quadruple in quadruples:
            ordinal = self.demultiplex_read(quadruple.index1, quadruple.index2)
            outputs.write(ordinal, quadruple.read1, quadruple.read2)
        self.stats.prune(self.samples)
        return self.stats.counts


class CLI(argparse.Namespace):
    samples_file: str = None
    mismatches_max: int = DEFAULT_MISMATCHES
    scores_min: int = DEFAULT_SCORE_MIN
    scores_mean: int = DEFAULT_SCORE_MEAN
    output_dir: str = None
    compress: str = None
    verbose: bool = False
    limit: int = None
    phred: int = 33
    fastq_files: list[str]

    _parser = argparse.ArgumentParser(
        description="Demultiplexes Illumina paired-end reads using the two index reads. "
        "The samples file has three tab-separated columns: sample name, forward index, "
        "reverse index. Read pairs are written to one pair of files per sample, named "
        "after the sample and the R1/R2 input file suffix. Pairs whose indexes are of "
        "low quality or match no sample go to the Undetermined files, and the unmatched "
        "index sequences are counted in Undetermined_forward.tsv and Undetermined_reverse.tsv.",
    )
    _parser.add_argument(
        "fastq_files",
        nargs="*",
        help="The four FASTQ files (*_I1_*, *_I2_*, *_R1_*, *_R2_*)",
    )
    _parser.add_argument("-m", "--samples_file", help="Path to samples file")
    _parser.add_argument(
        "--mismatches_max",
        type=int,
        default=DEFAULT_MISMATCHES,
        help="Maximum mismatches allowed per index (default: %(default)d)",
    )
    _parser.add_argument(
        "--scores_min",
        type=int,
        default=DEFAULT_SCORE_MIN,
        help="Drop reads if a single position in the index has a quality score below "
        "scores_min (default: %(default)d)",
    )
    _parser.add_argument(
        "--scores_mean",
        type=int,
        default=DEFAULT_SCORE_MEAN,
        help="Drop reads if the mean index quality score is below scores_mean "
        "(default: %(default)d)",
    )
    _parser.add_argument(
        "-o", "--output_dir", help="Output directory (default: current directory)"
    )
    _parser.add_argument(
        "-c",
        "--compress",
        help="Compress output using gzip or bzip2 (default: no compression)",
    )
    _parser.add_argument(
        "--limit",
        type=int,
        help="Stop after this many read pairs (default: process all reads)",
    )
    _parser.add_argument(
        "--phred",
        type=int,
        default=33,
        help="ASCII offset of quality scores (default: %(default)d)",
    )
    _parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Report progress every %d reads" % PROGRESS_INTERVAL,
    )
    _parser.add_argument("--version", action="version", version=__version__)

    def __init__(self, args=None):
        self.__class__._parser.parse_args(args, self)

    def validate(self):
        if not self.samples_file:
            raise ConfigurationError("No samples_file specified.")
        if not os.path.isfile(self.samples_file):
            raise ConfigurationError(f"No such file: {self.samples_file}")
        for name, upper in (
            ("mismatches_max", MAX_MISMATCHES),
            ("scores_min", MAX_SCORE),
            ("scores_mean", MAX_SCORE),
        ):
            value = getattr(self, name)
            if value < 0:
                raise ConfigurationError(f"{name} must be >= 0 - not {value}")
            if value > upper:
                raise ConfigurationError(f"{name} must be <= {upper} - not {value}")
        if self.compress is not None and self.compress not in ("gzip", "bzip2"):
            raise ConfigurationError(f"Bad argument to --compress: {self.compress}")
        if self.limit is not None and self.limit < 0:
            raise ConfigurationError(f"limit must be >= 0 - not {self.limit}")

    def run(self) -> StatsCollector:
        """Validates the configuration, demultiplexes, and writes the reports."""
        logger = logging.getLogger("Demultiplex")
        self.validate()
        files = classify_fastq_files(self.fastq_files)
        suffix1 = suffix_extract(files["R1"], self.compress)
        suffix2 = suffix_extract(files["R2"], self.compress)
        samples = read_samples(self.samples_file)
        demultiplexer = Demultiplexer(
            samples,
            mismatches_max=self.mismatches_max,
            scores_min=self.scores_min,
            scores_mean=self.scores_mean,
            phred=self.phred,
            progress=log_progress if self.verbose else None,
        )
        output_dir = self.output_dir or os.getcwd()
        os.makedirs(output_dir, exist_ok=True)
        with OutputMultiplexer(
            samples, output_dir, suffix1, suffix2
        ) as outputs, contextlib.closing(
            iter_read_quadruples(
                files["I1"], files["I2"], files["R1"], files["R2"], limit=self.limit
            )
        ) as quadruples:
            counts = demultiplexer.demultiplex_experiment(
                quadruples,
                outputs,
                logger=logger,
            )
        demultiplexer.stats.write_reports(output_dir)
        if self.verbose:
            log_progress(demultiplexer.stats)
        logger.info(
            "Processed %d read pairs, %d matched, %d undetermined",
            counts.count // 2,
            counts.match // 2,
            counts.undetermined // 2,
        )
        return demultiplexer.stats

    def main(self):
        logging.basicConfig(
            level=logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        logger = logging.getLogger("Demultiplex")
        try:
            self.run()
        except ConfigurationError as e:
            logger.error("%s", e)
            sys.exit(1)
        except Exception:
            logger.critical("Aborting", exc_info=True)
            sys.exit(1)


def main(args=None):
    CLI(args).main()


if __name__ == "__main__":
    main()
