"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of miseq-demux.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

# Library of functions shared by the demultiplexing scripts

import dataclasses
import functools
import logging
import os
import typing
import uuid

import pandas as pd
import regex

ALPHABET = "ATCG"

SUFFIX_RE = regex.compile(r".+(_S\d+_L\d{3}_R[12]_\d{3}).+$")

COMPRESS_EXTENSIONS = {
    None: ".fastq",
    "gzip": ".fastq.gz",
    "bzip2": ".fastq.bz2",
}

FILE_ROLES = ("I1", "I2", "R1", "R2")

RESERVED_NAME = "Undetermined"


class ConfigurationError(Exception):
    pass


class InvalidBaseError(ValueError):
    pass


@dataclasses.dataclass(frozen=True, slots=True)
class Sample:
    ordinal: int
    name: str
    forward: str
    reverse: str


def wrap_exception(
    catch_exc: type[BaseException] | tuple[type[BaseException], ...],
    wrap_exc: type[BaseException],
    message: str = None,
):
    """Re-raise any `catch_exc` escaping the wrapped function as `wrap_exc`.
    The original exception is chained and its text is kept in the message."""

    def wrapper(func):
        @functools.wraps(func)
        def inner(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except wrap_exc:
                raise
            except catch_exc as e:
                text = f"{message}: {e}" if message else str(e)
                raise wrap_exc(text) from e

        return inner

    return wrapper


def logs_runtime(func):
    """
    Logs start and finish times for the wrapped process.
    Will create a logger with a unique ID for each call to the wrapped function
    Pass a logger via the `logger` kwarg to the wrapped function to use that instead
    """
    logger = logging.getLogger(f"{func.__name__}:{uuid.uuid4().int % 1_000_000_000}")

    @functools.wraps(func)
    def inner(*args, **kwargs):
        my_logger: logging.Logger = kwargs.pop("logger", logger)
        my_logger.info("Begin")
        ret = func(*args, **kwargs)
        my_logger.info("Finish")
        return ret

    return inner


def check_barcode(barcode: str, alphabet: str = ALPHABET) -> str:
    """Raises InvalidBaseError if `barcode` is empty or has a character outside `alphabet`."""
    if not barcode:
        raise InvalidBaseError("Empty barcode")
    bad = set(barcode).difference(alphabet)
    if bad:
        raise InvalidBaseError(
            f"Barcode {barcode!r} contains invalid characters: {''.join(sorted(bad))}"
        )
    return barcode


@wrap_exception(
    (OSError, ValueError, pd.errors.ParserError),
    ConfigurationError,
    "Unable to read samples file",
)
def read_samples(
    fname: str | os.PathLike | typing.TextIO,
) -> tuple[Sample, ...]:
    """Reads the tab separated sample sheet.

    Args:
        fname (str | os.PathLike | typing.TextIO): Filename or handle. The sheet has no
            header and three columns: sample name, forward barcode, reverse barcode.
            Rows whose name starts with '#' are ignored. Names such as NA or
            Plate#1 are kept verbatim.

    Returns:
        tuple[Sample, ...]: One Sample per row, ordinals follow row order.

    Raises:
        ConfigurationError: The file is missing, empty, malformed, or a barcode
            contains characters other than A, T, C and G.
    """
    logger = logging.getLogger("SampleSheet")
    if isinstance(fname, (str, os.PathLike)) and not os.path.isfile(fname):
        raise ConfigurationError(f"No such file: {fname}")
    try:
        df = pd.read_csv(
            fname,
            sep="\t",
            header=None,
            names=["name", "forward", "reverse"],
            usecols=range(3),
            dtype=str,
            keep_default_na=False,
            na_filter=False,
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError:
        raise ConfigurationError(f"Samples file is empty: {fname}")
    df = df.fillna("").apply(lambda column: column.str.strip())
    df = df.loc[~df["name"].str.startswith("#")].reset_index(drop=True)
    if df.empty:
        raise ConfigurationError(f"Samples file is empty: {fname}")
    missing = (df == "").any(axis=1)
    if missing.any():
        row = int(missing.to_numpy().argmax())
        raise ConfigurationError(f"Samples file row {row + 1} has missing columns")
    df["forward"] = df["forward"].str.upper()
    df["reverse"] = df["reverse"].str.upper()
    if df["name"].duplicated().any():
        logger.error("Sample names are not all unique. Cowardly refusing to proceed.")
        raise ConfigurationError(
            "Duplicate sample names: "
            + ", ".join(df.loc[df["name"].duplicated(), "name"].unique())
        )
    if (df["name"] == RESERVED_NAME).any():
        raise ConfigurationError(f"Sample name {RESERVED_NAME} is reserved")
    samples = tuple(
        Sample(i, name, check_barcode(forward), check_barcode(reverse))
        for i, (name, forward, reverse) in enumerate(
            df[["name", "forward", "reverse"]].itertuples(index=False, name=None)
        )
    )
    logger.info("Read %d samples from %s", len(samples), fname)
    return samples


def suffix_extract(filename: str, compress: str = None) -> str:
    """
    Derives the output file suffix from an Illumina style file name
    :param filename: Input file name, eg. Data_S1_L001_R1_001.fastq.gz
    :param compress: None, "gzip" or "bzip2"
    :return: The suffix including extension, eg. _S1_L001_R1_001.fastq.gz
    """
    if compress not in COMPRESS_EXTENSIONS:
        raise ConfigurationError(f"Bad argument to --compress: {compress}")
    m = SUFFIX_RE.match(os.path.basename(filename))
    if m is None:
        raise ConfigurationError(f"Unable to parse file suffix from: {filename}")
    return m[1] + COMPRESS_EXTENSIONS[compress]


def classify_fastq_files(filenames: typing.Sequence[str]) -> dict[str, str]:
    """
    Assigns the four input files to their roles by file name.
    :param filenames: Exactly four file names
    :return: dict mapping I1, I2, R1 and R2 to a file name
    """
    if len(filenames) != 4:
        raise ConfigurationError(f"Expected 4 input files - not {len(filenames)}")
    roles = {}
    for role in FILE_ROLES:
        matches = [f for f in filenames if f"_{role}_" in os.path.basename(f)]
        if len(matches) != 1:
            raise ConfigurationError(
                f"Expected exactly one input file matching _{role}_ - got {len(matches)}"
            )
        roles[role] = matches[0]
    return roles
