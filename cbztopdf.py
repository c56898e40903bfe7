#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# ------------------------------------------------------------------
# cbztopdf  →  convert CBZ comic archives to PDF (single or batch)
# -----------------------------------------------------------
import argparse
import os
import shutil
import subprocess
import sys
import tempfile
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from natsort import natsorted, ns
from PIL import Image
from pypdf import PdfReader, PdfWriter

__version__ = "1.0.0"

ARCHIVE_EXT = ".cbz"
IMAGE_EXTS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff")
DEFAULT_NUM_JOBS = 2  # used when the CPU count cannot be determined
WORKSPACE_PREFIX = "cbz_convert."
FILELIST_NAME = "filelist.txt"
ENGINES = ("magick", "pillow")

INSTALL_HINTS = {
    "magick": "ImageMagick is not installed. Please install it "
    "(e.g., 'pkg install imagemagick' or 'sudo apt-get install imagemagick').",
    "unzip": "unzip is not installed. Please install it "
    "(e.g., 'pkg install unzip' or 'sudo apt-get install unzip').",
}

_VERBOSE = False  # Global flag for standard verbose output
_DEBUG = False  # Global flag for debug-level output


# -----------------------------------------------------------
# Errors
# -----------------------------------------------------------
class ConversionError(Exception):
    """A single archive could not be turned into a PDF."""


class ExtractionFailure(ConversionError):
    pass


class NoImagesFound(ConversionError):
    pass


class ConversionToolFailure(ConversionError):
    pass


class MissingDependency(RuntimeError):
    pass


class NoArchivesFound(RuntimeError):
    pass


# -----------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------
def log_verbose(*args, **kwargs):
    """Prints if --verbose or --debug is set."""
    if _VERBOSE or _DEBUG:
        print(*args, **kwargs)


def log_debug(*args, **kwargs):
    """Prints only if --debug is set."""
    if _DEBUG:
        print(*args, **kwargs)


def log_error(*args):
    print(*args, file=sys.stderr)


def default_jobs() -> int:
    """Number of parallel jobs: one per CPU, or DEFAULT_NUM_JOBS if unknown."""
    return max(1, os.cpu_count() or DEFAULT_NUM_JOBS)


def is_archive(path: str) -> bool:
    return path.lower().endswith(ARCHIVE_EXT)


def natural_sorted(paths: List[str]) -> List[str]:
    """Orders paths so that page2 comes before page10."""
    return natsorted(paths, alg=ns.PATH)


def check_dependencies(engine: str):
    """Raises MissingDependency if an external tool for `engine` is absent."""
    if engine != "magick":
        return
    for tool in ("magick", "unzip"):
        if shutil.which(tool) is None:
            raise MissingDependency(INSTALL_HINTS[tool])
        log_debug(f"  Found {tool}: {shutil.which(tool)}")


# -----------------------------------------------------------
# Data model
# -----------------------------------------------------------
class JobOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ArchiveJob:
    source: str
    output_dir: str = "."
    overwrite: bool = False

    @property
    def base_name(self) -> str:
        name = os.path.basename(self.source)
        if is_archive(name):
            name = name[: -len(ARCHIVE_EXT)]
        return name

    @property
    def destination(self) -> str:
        return os.path.join(self.output_dir, f"{self.base_name}.pdf")


@dataclass
class BatchTally:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: JobOutcome):
        if outcome is JobOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome is JobOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def exit_code(self) -> int:
        return 1 if self.failed > 0 else 0

    def print_summary(self, title: str = "Conversion Summary"):
        print("----------------------------------------")
        print(f"{title}:")
        print(f"  Successfully converted: {self.succeeded}")
        print(f"  Failed conversions:   {self.failed}")
        print(f"  Skipped (already exist): {self.skipped}")
        print("----------------------------------------")


# -----------------------------------------------------------
# Engines: extraction and image → PDF rendering
# -----------------------------------------------------------
def _run_tool(cmd: List[str], what: str, error_cls, timeout: Optional[float]):
    log_debug(f"  Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd, check=True, capture_output=True, text=True, timeout=timeout
        )
    except subprocess.CalledProcessError as e:
        log_debug(f"  {what} stderr: {(e.stderr or '').strip()}")
        raise error_cls(f"{what} exited with status {e.returncode}") from e
    except subprocess.TimeoutExpired as e:
        raise error_cls(f"{what} timed out after {timeout}s") from e
    except OSError as e:
        raise error_cls(f"{what} could not be started: {e}") from e
    if result.stderr:
        log_debug(f"  {what} stderr: {result.stderr.strip()}")


def extract_with_unzip(archive: str, dest_dir: str, timeout: Optional[float] = None):
    _run_tool(
        ["unzip", "-q", archive, "-d", dest_dir], "unzip", ExtractionFailure, timeout
    )


def render_with_magick(
    filelist_path: str, images: List[str], out_path: str, timeout: Optional[float] = None
):
    if all(filelist_entry(p) for p in images):
        sources = [f"@{filelist_path}"]
    else:
        log_debug("  Page names cannot be quoted in a file list, passing them directly.")
        sources = list(images)
    _run_tool(
        ["magick", *sources, out_path],
        "ImageMagick",
        ConversionToolFailure,
        timeout,
    )


def extract_with_zipfile(archive: str, dest_dir: str, timeout: Optional[float] = None):
    try:
        with zipfile.ZipFile(archive, "r") as zf:
            zf.extractall(dest_dir)
    except (zipfile.BadZipFile, OSError, RuntimeError) as e:
        raise ExtractionFailure(str(e)) from e


def render_with_pillow(
    filelist_path: str, images: List[str], out_path: str, timeout: Optional[float] = None
):
    """Writes every image as one PDF page, in the given order."""
    sheets = []
    try:
        for path in images:
            with Image.open(path) as im:
                sheets.append(im.convert("RGB"))
            log_debug(f"    Loaded {os.path.basename(path)}")
        sheets[0].save(out_path, "PDF", save_all=True, append_images=sheets[1:])
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ConversionToolFailure(f"Pillow failed: {e}") from e
    finally:
        for sheet in sheets:
            sheet.close()


EXTRACTORS: Dict[str, Callable] = {
    "magick": extract_with_unzip,
    "pillow": extract_with_zipfile,
}
RENDERERS: Dict[str, Callable] = {
    "magick": render_with_magick,
    "pillow": render_with_pillow,
}


# -----------------------------------------------------------
# Single archive conversion
# -----------------------------------------------------------
def find_images(root: str) -> List[str]:
    """All image files under `root`, naturally sorted by path."""
    found = []
    for dirpath, _, files in os.walk(root):
        for name in files:
            if name.lower().endswith(IMAGE_EXTS):
                found.append(os.path.join(dirpath, name))
    return natural_sorted(found)


def filelist_entry(path: str) -> Optional[str]:
    """
    Quotes `path` for an ImageMagick @file list. The list has no escape
    character, so a path holding both quote characters returns None.
    """
    if '"' not in path:
        return f'"{path}"'
    if "'" not in path:
        return f"'{path}'"
    return None


def write_filelist(images: List[str], path: str):
    with open(path, "w", encoding="utf-8") as fh:
        for img in images:
            fh.write(f"{filelist_entry(img) or img}\n")


def finalize_pdf(rendered: str, destination: str, metadata: Dict[str, str]):
    """
    Copies the rendered PDF next to `destination` with document info set,
    then renames it into place so a failed run never leaves a partial file.
    """
    out_dir = os.path.dirname(destination) or "."
    partial = os.path.join(out_dir, f".{os.path.basename(destination)}.partial")
    try:
        reader = PdfReader(rendered)
        writer = PdfWriter()
        writer.append(reader)
        writer.add_metadata(metadata)
        with open(partial, "wb") as fh:
            writer.write(fh)
        log_verbose(f"  Wrote {len(reader.pages)} pages.")
        os.replace(partial, destination)
    except Exception as e:
        if os.path.exists(partial):
            os.remove(partial)
        raise ConversionToolFailure(f"Could not write '{destination}': {e}") from e


def convert_cbz_to_pdf(
    job: ArchiveJob, engine: str = "magick", timeout: Optional[float] = None
) -> JobOutcome:
    """
    Converts one archive. Never raises: every error is reported and returned
    as JobOutcome.FAILED. The workspace is removed before returning.
    """
    pdf_file = job.destination
    if os.path.exists(pdf_file) and not job.overwrite:
        log_error(
            f"Skipping {job.source}: {pdf_file} already exists. Use --force to overwrite."
        )
        return JobOutcome.SKIPPED

    print(f"Processing '{job.source}'...")
    try:
        with tempfile.TemporaryDirectory(prefix=WORKSPACE_PREFIX) as temp_dir:
            log_verbose(f"  Temporary directory: {temp_dir}")
            log_verbose(f"  Output PDF: {pdf_file}")
            _convert_in_workspace(job, temp_dir, engine, timeout)
            log_verbose(f"  Cleaning up temporary directory: {temp_dir}")
    except ConversionError as e:
        log_error(f"Error: {job.source}: {e}")
        return JobOutcome.FAILED
    except Exception as e:
        log_error(f"Error: unexpected failure converting '{job.source}': {e}")
        return JobOutcome.FAILED

    print(f"Successfully created '{pdf_file}'.")
    return JobOutcome.SUCCEEDED


def _convert_in_workspace(job: ArchiveJob, temp_dir: str, engine: str, timeout):
    extract_dir = os.path.join(temp_dir, "pages")
    os.makedirs(extract_dir)

    log_verbose("  Extracting images...")
    EXTRACTORS[engine](job.source, extract_dir, timeout)

    images = find_images(extract_dir)
    filelist_path = os.path.join(temp_dir, FILELIST_NAME)
    write_filelist(images, filelist_path)
    log_verbose(f"  Found {len(images)} images.")
    if not images:
        raise NoImagesFound(f"No images found in '{job.source}'.")

    log_verbose("  Converting images to PDF...")
    rendered = os.path.join(temp_dir, "rendered.pdf")
    RENDERERS[engine](filelist_path, images, rendered, timeout)
    if not os.path.isfile(rendered):
        raise ConversionToolFailure(f"No PDF was produced for '{job.source}'.")

    os.makedirs(job.output_dir, exist_ok=True)
    finalize_pdf(
        rendered,
        job.destination,
        {"/Title": job.base_name, "/Producer": f"cbztopdf {__version__}"},
    )


# -----------------------------------------------------------
# Batch processing
# -----------------------------------------------------------
def find_archives(search_root: str = ".", recursive: bool = False) -> List[str]:
    """CBZ files under `search_root` (its subdirectories only if recursive)."""
    found = []
    for dirpath, _, files in os.walk(search_root):
        found.extend(os.path.join(dirpath, f) for f in files if is_archive(f))
        if not recursive:
            break
    return sorted(found)


def dispatch(
    jobs: List[ArchiveJob],
    max_workers: int,
    converter: Callable[[ArchiveJob], JobOutcome],
) -> BatchTally:
    """
    Runs `converter` over `jobs` with at most `max_workers` in flight.
    Outcomes are tallied here, on the calling thread, as jobs finish.
    """
    tally = BatchTally()
    claimed = set()
    runnable = []
    for job in jobs:
        dest = os.path.normcase(os.path.abspath(job.destination))
        if dest in claimed:
            log_error(
                f"Error: {job.source}: destination '{job.destination}' is "
                "already produced by another archive in this run."
            )
            tally.record(JobOutcome.FAILED)
            continue
        claimed.add(dest)
        runnable.append(job)

    if not runnable:
        return tally

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(converter, job): job for job in runnable}
        for future in as_completed(futures):
            job = futures[future]
            try:
                outcome = future.result()
            except Exception as e:
                log_error(f"Error: job for '{job.source}' crashed: {e}")
                outcome = JobOutcome.FAILED
            if not isinstance(outcome, JobOutcome):
                log_error(f"Error: job for '{job.source}' returned {outcome!r}")
                outcome = JobOutcome.FAILED
            log_debug(f"  {job.source}: {outcome.value}")
            tally.record(outcome)
    return tally


def run_batch(
    search_root: str = ".",
    recursive: bool = False,
    output_dir: str = ".",
    overwrite: bool = False,
    jobs: Optional[int] = None,
    converter: Optional[Callable[[ArchiveJob], JobOutcome]] = None,
) -> BatchTally:
    """Converts every archive found under `search_root`. Raises NoArchivesFound."""
    print(
        f"Searching for CBZ files in '{search_root}' (Recursive: {str(recursive).lower()})..."
    )
    archives = find_archives(search_root, recursive)
    if not archives:
        raise NoArchivesFound("No CBZ files found.")

    print(f"Found {len(archives)} CBZ file(s). Starting conversion...")
    num_jobs = jobs or default_jobs()
    print(f"Using up to {num_jobs} parallel jobs.")

    tally = dispatch(
        [ArchiveJob(a, output_dir, overwrite) for a in archives],
        num_jobs,
        converter or convert_cbz_to_pdf,
    )
    tally.print_summary("Conversion Summary")
    return tally


# -----------------------------------------------------------
# main
# -----------------------------------------------------------
class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


class _FileAction(argparse.Action):
    """Collects archive paths from both positionals and -f/--file."""

    def __call__(self, parser, namespace, values, option_string=None):
        if option_string:
            log_error("Warning: -f/--file is deprecated. Simply list files as arguments.")
        values = values if isinstance(values, list) else [values]
        if not values:
            return
        files = list(getattr(namespace, "files", None) or [])
        files.extend(values)
        namespace.files = files


def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return value


def _positive_float(text: str) -> float:
    value = float(text)
    if value <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return value


def build_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(
        prog="cbztopdf",
        description="Converts CBZ comic book archive files to PDF.",
        epilog="Examples:\n"
        "  cbztopdf mycomic.cbz another.cbz\n"
        "  cbztopdf --all --recursive\n"
        "  cbztopdf --all --output-dir ./Converted --force",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.set_defaults(files=[])
    p.add_argument(
        "files",
        nargs="*",
        action=_FileAction,
        metavar="file.cbz",
        help="CBZ files to convert.",
    )
    p.add_argument(
        "-f",
        "--file",
        action=_FileAction,
        metavar="FILE",
        help="(DEPRECATED: Just pass files as arguments) Convert a specific CBZ file.",
    )
    p.add_argument(
        "-a",
        "--all",
        action="store_true",
        help="Convert all CBZ files in the current directory. "
        "This is the default action; named files take precedence.",
    )
    p.add_argument(
        "-R",
        "--recursive",
        action="store_true",
        help="When converting all, search subdirectories too.",
    )
    p.add_argument(
        "-o",
        "--output-dir",
        default=".",
        metavar="DIR",
        help="Directory where PDF files will be saved (default: current directory).",
    )
    p.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing PDF files instead of skipping them.",
    )
    p.add_argument(
        "-j",
        "--jobs",
        type=_positive_int,
        default=None,
        metavar="N",
        help=f"Number of parallel jobs (default: CPU count, or {DEFAULT_NUM_JOBS}).",
    )
    p.add_argument(
        "--engine",
        choices=ENGINES,
        default="magick",
        help="'magick' uses unzip + ImageMagick, 'pillow' converts in-process.",
    )
    p.add_argument(
        "--timeout",
        type=_positive_float,
        default=None,
        metavar="SECONDS",
        help="Give up on an external tool call after this many seconds.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable detailed, step-by-step logging.",
    )
    p.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable highly detailed debug-level logging.",
    )
    return p


def validate_files(files: List[str]):
    for f in files:
        if not os.path.isfile(f):
            raise ValueError(f"File '{f}' does not exist.")
        if not is_archive(f):
            raise ValueError(f"File '{f}' is not a .cbz file.")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)

    global _VERBOSE, _DEBUG
    _VERBOSE = args.verbose
    _DEBUG = args.debug

    try:
        check_dependencies(args.engine)
    except MissingDependency as e:
        log_error(f"Error: {e}")
        return 1

    specific = bool(args.files)
    if specific:
        try:
            validate_files(args.files)
        except ValueError as e:
            log_error(f"Error: {e}")
            return 1

    if not os.path.isdir(args.output_dir):
        print(f"Creating output directory: {args.output_dir}")
        try:
            os.makedirs(args.output_dir, exist_ok=True)
        except OSError as e:
            log_error(f"Error: Cannot use output directory '{args.output_dir}': {e}")
            return 1

    def converter(job):
        return convert_cbz_to_pdf(job, engine=args.engine, timeout=args.timeout)

    if specific:
        tally = dispatch(
            [ArchiveJob(f, args.output_dir, args.force) for f in args.files],
            args.jobs or default_jobs(),
            converter,
        )
        tally.print_summary("Individual File Conversion Summary")
        return tally.exit_code()

    try:
        tally = run_batch(
            ".",
            recursive=args.recursive,
            output_dir=args.output_dir,
            overwrite=args.force,
            jobs=args.jobs,
            converter=converter,
        )
    except NoArchivesFound as e:
        log_error(str(e))
        return 1
    return tally.exit_code()


if __name__ == "__main__":
    sys.exit(main())
