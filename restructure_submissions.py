import argparse
import logging
import re
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Sequence
from zipfile import BadZipFile, ZipFile, ZipInfo


MODE_IDENTIFIER = "by-identifier"
MODE_NAME = "by-name"

# e.g. 'cswh1234' as used for course accounts
IDENTIFIER_PATTERN = re.compile(r"cs[a-z]{2}[0-9]+")
# e.g. 'Gurney_Halleck' in 'ita_Assignment_.../Gurney_Halleck_cswh1234/main.c'
NAME_PATTERN = re.compile(r"[A-Z][a-z]+_[A-Z][a-z]+")

UNASSIGNED_DIR = "_unassigned"
SUPPORTED_SUFFIX = ".zip"
ARCHIVE_GLOBS = ("*.zip", "*.tar.gz")

FLAGGED_EXTENSIONS = {".docx", ".exe", ".png"}
FLAGGED_NAMES = {".vscode", ".idea", ".gitignore"}

VERDICT_NONE = "none"
VERDICT_EXTENSION = "flagged-extension"
VERDICT_NAME = "flagged-name"

CHUNK_SIZE = 1024 * 1024

logger = logging.getLogger(__name__)


class RestructureError(Exception):
    """Base class for errors that abort a restructuring run."""


class AmbiguousArchiveError(RestructureError):
    """No single archive could be resolved for extraction."""


class UnsupportedFormatError(RestructureError):
    """The archive type is not handled."""


class ExtractionError(RestructureError):
    """Reading the archive or writing an entry failed."""


@dataclass(frozen=True)
class RestructureConfig:
    """Settings for one restructuring run, fixed before the walk starts."""

    target_root: Path
    mode: str = MODE_NAME
    remove_unwanted: bool = False

    def __post_init__(self) -> None:
        if self.mode not in IDENTITY_MATCHERS:
            raise ValueError(f"Unknown identity mode: {self.mode}")


@dataclass
class UnwantedVerdict:
    kind: str = VERDICT_NONE
    removed: bool = False

    @property
    def flagged(self) -> bool:
        return self.kind != VERDICT_NONE


@dataclass
class RestructureResult:
    files_extracted: int = 0
    nested_archives_expanded: int = 0
    unassigned_entries: int = 0
    skipped_entries: int = 0
    students: set[str] = field(default_factory=set)
    flagged: list[Path] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)
    unreadable_archives: list[Path] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when every nested archive could be expanded."""
        return not self.unreadable_archives


def match_identifier(path: str) -> Optional[str]:
    """Return the first csXXNNNN course identifier found in path."""
    match = IDENTIFIER_PATTERN.search(path)
    return match.group(0) if match else None


def match_name(path: str) -> Optional[str]:
    """Return the first 'Firstname_Lastname' token found in path."""
    match = NAME_PATTERN.search(path)
    return match.group(0) if match else None


IDENTITY_MATCHERS: dict[str, Callable[[str], Optional[str]]] = {
    MODE_IDENTIFIER: match_identifier,
    MODE_NAME: match_name,
}


def match_identity(path: str, mode: str) -> Optional[str]:
    """Derive the student identity from an archive entry path using the given mode."""
    try:
        matcher = IDENTITY_MATCHERS[mode]
    except KeyError:
        raise ValueError(f"Unknown identity mode: {mode}") from None
    return matcher(path)


def sanitize_name(basename: str) -> str:
    """Replace spaces with underscores and collapse repeated underscores."""
    return re.sub(r"_{2,}", "_", basename.replace(" ", "_"))


def evaluate_unwanted(path: Path, remove_enabled: bool, entry_path: str = "") -> UnwantedVerdict:
    """
    Classify an extracted file against the unwanted-file lists.
    A file is flagged by name when its own name or a directory in its archive
    entry_path (e.g. '.vscode/settings.json') is listed. Files flagged by name
    are deleted when remove_enabled is set; files flagged by extension are
    always kept.
    """
    parent_dirs = PurePosixPath(entry_path).parts[:-1]
    if path.name in FLAGGED_NAMES or FLAGGED_NAMES.intersection(parent_dirs):
        verdict = UnwantedVerdict(VERDICT_NAME)
        if remove_enabled:
            path.unlink(missing_ok=True)
            verdict.removed = True
        return verdict
    if path.suffix in FLAGGED_EXTENSIONS:
        return UnwantedVerdict(VERDICT_EXTENSION)
    return UnwantedVerdict()


class ArchiveWalker:
    """Extract zip entries into one flat directory per student."""

    def __init__(self, config: RestructureConfig, log: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.log = log or logger
        self.result = RestructureResult()
        self._last_key: Optional[str] = None

    def walk(self, zip_file: ZipFile) -> RestructureResult:
        """Extract every file entry of zip_file in archive order."""
        for member in zip_file.infolist():
            if member.is_dir():
                continue

            key = match_identity(member.filename, self.config.mode)
            if key is None:
                self.log.warning("No student identity in %s; placing it in %s", member.filename, UNASSIGNED_DIR)
                self.result.unassigned_entries += 1
                directory = UNASSIGNED_DIR
            else:
                self.result.students.add(key)
                directory = key

            if directory != self._last_key:
                self.log.info("Student: %s", directory)
                self._last_key = directory

            student_dir = self.config.target_root / directory
            destination = self._extract_member(zip_file, member, student_dir)
            if destination is not None and destination.suffix == SUPPORTED_SUFFIX:
                self._expand_nested(destination, student_dir)

        return self.result

    def _extract_member(self, zip_file: ZipFile, member: ZipInfo, student_dir: Path) -> Optional[Path]:
        """Write one entry into student_dir and apply the unwanted-file policy."""
        filename = sanitize_name(PurePosixPath(member.filename).name)
        if filename in {"", ".", ".."}:
            self.log.warning("  Skipping entry without a usable file name: %s", member.filename)
            self.result.skipped_entries += 1
            return None

        destination = student_dir / filename
        self.log.debug(
            "\n\tTarget: %s\n\tDirectory: %s\n\tFilename: %s\n\tFull: %s",
            self.config.target_root,
            student_dir.name,
            filename,
            destination,
        )

        # Create the parent of the file path, never the file path itself
        destination.parent.mkdir(parents=True, exist_ok=True)
        # Only a fully copied entry replaces the destination
        partial = destination.with_name(f".{destination.name}.part")
        try:
            with zip_file.open(member) as src, partial.open("wb") as dst:
                shutil.copyfileobj(src, dst, length=CHUNK_SIZE)
        except Exception:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(destination)
        self.result.files_extracted += 1

        verdict = evaluate_unwanted(destination, self.config.remove_unwanted, member.filename)
        if verdict.flagged:
            self.log.warning("  Unwanted file (%s): %s", verdict.kind, destination)
            self.result.flagged.append(destination)
        if verdict.removed:
            self.log.info("  Removed %s", destination)
            self.result.removed.append(destination)
            return None
        return destination

    def _expand_nested(self, archive_path: Path, student_dir: Path) -> None:
        """Flatten a nested zip into student_dir, then delete it. Only one level deep."""
        staged = archive_path.with_name(f".{archive_path.name}.extracting")
        archive_path.replace(staged)
        expanded = False
        current = "archive directory"
        try:
            with ZipFile(staged) as nested:
                self.log.info("  Expanding nested archive %s", archive_path.name)
                for member in nested.infolist():
                    if member.is_dir():
                        continue
                    current = member.filename
                    self._extract_member(nested, member, student_dir)
            expanded = True
        except (BadZipFile, RuntimeError, NotImplementedError) as exc:
            # The student's file stays under its original name
            self.log.warning(
                "  Keeping %s as a plain file, could not read %s: %s", archive_path.name, current, exc
            )
            self.result.unreadable_archives.append(archive_path)
        finally:
            if expanded:
                staged.unlink()
            else:
                staged.replace(archive_path)

        if expanded:
            self.result.nested_archives_expanded += 1


class RestructureEngine:
    """Validate the archive format and drive the walker over it."""

    def __init__(self, config: RestructureConfig, log: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.log = log or logger

    def run(self, archive_path: Path) -> RestructureResult:
        """Restructure archive_path into the configured target root."""
        archive_path = Path(archive_path)
        if archive_path.suffix != SUPPORTED_SUFFIX:
            raise UnsupportedFormatError(f"Archive type {_archive_type(archive_path)} not implemented")
        if not archive_path.is_file():
            raise FileNotFoundError(f"Archive not found: {archive_path}")

        self.log.info("Extracting '%s' to '%s'", archive_path, self.config.target_root)
        walker = ArchiveWalker(self.config, self.log)
        try:
            with ZipFile(archive_path) as zf:
                result = walker.walk(zf)
        except (BadZipFile, OSError, RuntimeError, NotImplementedError) as exc:
            raise ExtractionError(f"Failed to extract {archive_path.name}: {exc}") from exc

        self.log.info(
            "Summary: extracted %d file(s) for %d student(s), expanded %d nested archive(s), "
            "flagged %d file(s), removed %d, %d unassigned, %d unreadable archive(s)",
            result.files_extracted,
            len(result.students),
            result.nested_archives_expanded,
            len(result.flagged),
            len(result.removed),
            result.unassigned_entries,
            len(result.unreadable_archives),
        )
        for unreadable in result.unreadable_archives:
            self.log.error("Could not expand nested archive %s; check it manually.", unreadable)
        return result


def _archive_type(path: Path) -> str:
    """Return the archive type shown in error messages, e.g. '.tar.gz'."""
    suffix = "".join(path.suffixes[-2:]) if path.name.endswith(".tar.gz") else path.suffix
    return suffix or "<none>"


def find_archives(directory: Path) -> list[Path]:
    """Return candidate submission archives in directory, zips first."""
    archives: list[Path] = []
    for pattern in ARCHIVE_GLOBS:
        archives.extend(sorted(path for path in directory.glob(pattern) if path.is_file()))
    return archives


def select_archive(
    directory: Path, choose: Optional[Callable[[Sequence[Path]], int]] = None
) -> Path:
    """
    Resolve the single archive to extract from directory.
    When more than one candidate exists, choose is asked for the index to use.
    """
    archives = find_archives(directory)
    if not archives:
        raise AmbiguousArchiveError(f"No archive found in {directory}")
    if len(archives) == 1:
        return archives[0]

    logger.error("More than one archive found in %s, please specify:", directory)
    if choose is None:
        raise AmbiguousArchiveError(
            "Multiple archives found: " + ", ".join(archive.name for archive in archives)
        )
    try:
        index = choose(archives)
    except (ValueError, EOFError) as exc:
        raise AmbiguousArchiveError(f"No archive selected: {exc}") from exc
    if not isinstance(index, int) or not 0 <= index < len(archives):
        raise AmbiguousArchiveError(f"Invalid archive selection: {index!r}")
    return archives[index]


def prompt_for_archive(archives: Sequence[Path]) -> int:
    """Print numbered candidates and read the chosen index from stdin."""
    for index, archive in enumerate(archives):
        print(f"\t{index}: {archive}")
    return int(input("> "))


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Extract a submission archive into one directory per student.")
    parser.add_argument(
        "directory",
        nargs="?",
        help="Directory containing the submission archive (defaults to current working directory).",
    )
    parser.add_argument("-d", "--dir", dest="dir_option", help="Directory to work in (same as the positional argument).")
    parser.add_argument("-a", "--archive", help="Archive to extract; skips searching the working directory.")
    parser.add_argument(
        "-o",
        "--output-dir",
        default="submissions",
        help="Directory to output unzipped files to (default: './submissions').",
    )
    parser.add_argument(
        "-c",
        "--cs-identifier",
        action="store_true",
        help="Name student directories after their csXXNNNN identifier instead of their name.",
    )
    parser.add_argument(
        "-r",
        "--remove-unwanted",
        action="store_true",
        help="Delete unwanted files such as .gitignore, .idea and .vscode after extraction.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every extracted entry.")
    return parser.parse_args(argv)


def main(args: argparse.Namespace, choose: Optional[Callable[[Sequence[Path]], int]] = None) -> int:
    """Resolve the archive from the parsed arguments and restructure it."""
    try:
        if args.archive:
            archive_path = Path(args.archive).expanduser()
        else:
            directory = args.directory or args.dir_option
            base_dir = Path(directory).expanduser() if directory else Path.cwd()
            if directory:
                logger.info("Working in '%s'", base_dir)
            archive_path = select_archive(base_dir, choose)

        config = RestructureConfig(
            target_root=Path(args.output_dir).expanduser(),
            mode=MODE_IDENTIFIER if args.cs_identifier else MODE_NAME,
            remove_unwanted=args.remove_unwanted,
        )
        result = RestructureEngine(config).run(archive_path)
    except (RestructureError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    return 0 if result.success else 1


def run() -> int:
    """Entry point for CLI usage."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )
    try:
        return main(args, choose=prompt_for_archive)
    except Exception:
        logger.exception("Unhandled error during extraction.")
        return 1


if __name__ == "__main__":
    sys.exit(run())

# Example python3 restructure_submissions.py ~/Downloads/assignment1 -o ~/grading/assignment1
