"""
Migration Verification Module
=============================

Certifies a media unification run by comparing the unified table against
the legacy tables: record counts must add up and a random sample of unified
records must carry their legacy counterpart's checksum byte for byte.

Verification is read-only and takes no lock. Orphaned rows, a missing
completion marker and dimensions on non-image records are reported as
warnings and do not affect the outcome.
"""

import logging
import random
import sqlite3
from dataclasses import dataclass, field
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from ..config import MIGRATION_NAME
from ..errors import StorageIOError, VerificationMismatch
from ..models import LEGACY_TABLES, MediaType
from ..store import MEDIA_TABLE, MIGRATION_TABLE, Store
from .schema import checksum_bytes

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 100


@dataclass
class VerificationResult:
    """Results from a verification check."""

    check_name: str
    passed: bool
    source_count: int = 0
    target_count: int = 0
    discrepancies: list = field(default_factory=list)
    details: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def summary(self) -> str:
        """Human-readable summary of the verification result."""
        status = "✓ PASSED" if self.passed else "✗ FAILED"
        msg = f"{status}: {self.check_name}"
        if not self.passed:
            if self.error:
                msg += f" - Error: {self.error}"
            elif self.source_count != self.target_count:
                msg += f" - Count mismatch: legacy={self.source_count}, unified={self.target_count}"
            elif self.discrepancies:
                msg += f" - {len(self.discrepancies)} discrepancies found"
        return msg


@dataclass
class VerificationReport:
    """Complete verification report for a media unification run."""

    unified_count: int = 0
    legacy_image_count: int = 0
    legacy_doc_count: int = 0
    ok: bool = True
    mismatches: List[str] = field(default_factory=list)
    checks: List[VerificationResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sampled: int = 0

    @property
    def expected_count(self) -> int:
        return self.legacy_image_count + self.legacy_doc_count

    def add_check(self, result: VerificationResult) -> None:
        """Add a check; a failed check makes the report not ok."""
        self.checks.append(result)
        if not result.passed:
            self.ok = False

    def add_warning(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def raise_for_mismatch(self) -> None:
        """
        Raises:
            VerificationMismatch: If the report is not ok
        """
        if self.ok:
            return
        failed = [c.check_name for c in self.checks if not c.passed]
        raise VerificationMismatch(
            f"Verification failed: {', '.join(failed)}",
            mismatches=self.mismatches,
            stage="verify",
        )

    def to_dict(self) -> dict:
        """Convert report to dictionary for serialization."""
        return {
            "ok": self.ok,
            "unified_count": self.unified_count,
            "legacy_image_count": self.legacy_image_count,
            "legacy_doc_count": self.legacy_doc_count,
            "sampled": self.sampled,
            "mismatches": self.mismatches,
            "warnings": self.warnings,
            "checks": [
                {
                    "check_name": c.check_name,
                    "passed": c.passed,
                    "source_count": c.source_count,
                    "target_count": c.target_count,
                    "discrepancies": c.discrepancies[:10],  # Limit for readability
                    "details": c.details,
                    "error": c.error,
                }
                for c in self.checks
            ],
        }

    def print_report(self, console: Optional[Console] = None) -> None:
        """Print formatted verification report."""
        console = console or Console()

        counts = Table(title="Media Migration Verification")
        counts.add_column("Table")
        counts.add_column("Records", justify="right")
        counts.add_row("images", str(self.legacy_image_count))
        counts.add_row("docs", str(self.legacy_doc_count))
        counts.add_row("media", str(self.unified_count))
        console.print(counts)

        checks = Table(show_header=True)
        checks.add_column("Check")
        checks.add_column("Result")
        for check in self.checks:
            checks.add_row(check.check_name, check.summary.split(":", 1)[0])
        console.print(checks)

        for check in self.checks:
            if not check.passed:
                console.print(f"[red]{check.summary}[/red]")
        for name in self.mismatches[:10]:
            console.print(f"  [red]✗[/red] {name}")
        for warning in self.warnings:
            console.print(f"[yellow]⚠ {warning}[/yellow]")

        if self.ok:
            console.print("[green]✓ All verification checks passed! Migration was successful.[/green]")
        else:
            console.print("[red]✗ Verification failed. Migration may have issues.[/red]")


class MigrationVerifier:
    """
    Verifies data integrity after the media unification migration.

    Performs the following checks:
    1. Record count: unified == images + docs
    2. Sample comparison: checksum and name of sampled records
    Informational only:
    3. Orphaned unified records
    4. Width/height set on non-image records
    5. Completion marker present
    """

    def __init__(
        self,
        store: Store,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        rng: Optional[random.Random] = None,
        migration_name: str = MIGRATION_NAME,
    ):
        """
        Initialize the migration verifier.

        Args:
            store: Store to verify
            sample_size: Maximum number of unified records to spot-check
            rng: Random source for sampling (seed it for reproducible runs)
            migration_name: Name of the completion marker to look for
        """
        if sample_size < 1:
            raise ValueError(f"sample_size must be >= 1, got {sample_size}")
        self.store = store
        self.sample_size = sample_size
        self.rng = rng or random.Random()
        self.migration_name = migration_name

    def verify(self) -> VerificationReport:
        """
        Run all verification checks.

        Returns:
            VerificationReport; ``ok`` is False on mismatch, nothing is raised

        Raises:
            SourceUnavailableError: The store file does not exist
            StorageIOError: The store cannot be read
        """
        logger.info("Starting media migration verification...")
        self.store.require(stage="verify")
        report = VerificationReport()

        try:
            with self.store.connect(read_only=True) as conn:
                has_media = Store.has_table(conn, MEDIA_TABLE)
                report.legacy_image_count = Store.count(conn, LEGACY_TABLES[MediaType.IMAGE])
                report.legacy_doc_count = Store.count(conn, LEGACY_TABLES[MediaType.DOCUMENT])
                report.unified_count = Store.count(conn, MEDIA_TABLE)

                if not has_media:
                    report.add_warning("Media table does not exist - migration may not have been run")

                report.add_check(self._check_counts(report))

                if has_media:
                    report.add_check(self._check_sample(conn, report))
                    self._check_orphans(conn, report)
                    self._check_dimensions(conn, report)

                self._check_marker(conn, report)
        except sqlite3.Error as e:
            raise StorageIOError(f"Verification could not read the store: {e}", stage="verify") from e

        if report.ok:
            logger.info("All verification checks passed")
        else:
            logger.warning(f"Verification failed with {len(report.mismatches)} mismatched records")
        return report

    def _check_counts(self, report: VerificationReport) -> VerificationResult:
        logger.info(
            f"Record counts: images={report.legacy_image_count}, "
            f"docs={report.legacy_doc_count}, media={report.unified_count}"
        )
        return VerificationResult(
            check_name="Record count (images + docs = media)",
            passed=report.unified_count == report.expected_count,
            source_count=report.expected_count,
            target_count=report.unified_count,
            details={
                "images": report.legacy_image_count,
                "docs": report.legacy_doc_count,
            },
        )

    def _legacy_row(
        self, conn: sqlite3.Connection, media_type: MediaType, legacy_id: Optional[int], file_name: str
    ) -> Optional[sqlite3.Row]:
        table = LEGACY_TABLES[media_type]
        if not Store.has_table(conn, table):
            return None
        if legacy_id is not None:
            return conn.execute(
                f"SELECT file_name, checksum FROM {table} WHERE id = ?", (legacy_id,)
            ).fetchone()
        return conn.execute(
            f"SELECT file_name, checksum FROM {table} WHERE file_name = ?", (file_name,)
        ).fetchone()

    def _check_sample(self, conn: sqlite3.Connection, report: VerificationReport) -> VerificationResult:
        check_name = "Sampled checksums"
        try:
            ids = [row["id"] for row in conn.execute(f"SELECT id FROM {MEDIA_TABLE} ORDER BY id")]
            sample_ids = self.rng.sample(ids, min(self.sample_size, len(ids)))
            report.sampled = len(sample_ids)
            logger.info(f"Sampling {len(sample_ids)} of {len(ids)} unified records")

            discrepancies = []
            skipped = 0
            for media_id in sample_ids:
                media = conn.execute(
                    f"SELECT legacy_id, file_name, checksum, type FROM {MEDIA_TABLE} WHERE id = ?",
                    (media_id,),
                ).fetchone()
                media_type = MediaType(media["type"])
                if media_type not in LEGACY_TABLES:
                    skipped += 1
                    continue

                legacy = self._legacy_row(conn, media_type, media["legacy_id"], media["file_name"])
                if legacy is None:
                    discrepancies.append({"file_name": media["file_name"], "issue": "no legacy record"})
                elif legacy["file_name"] != media["file_name"]:
                    discrepancies.append({"file_name": media["file_name"], "issue": "file name differs"})
                elif checksum_bytes(legacy["checksum"]) != checksum_bytes(media["checksum"]):
                    discrepancies.append({"file_name": media["file_name"], "issue": "checksum differs"})
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Sample comparison could not run: {e}")
            return VerificationResult(check_name=check_name, passed=False, error=str(e))

        for d in discrepancies:
            logger.error(f"Mismatch for {d['file_name']}: {d['issue']}")
            report.mismatches.append(d["file_name"])

        return VerificationResult(
            check_name=check_name,
            passed=not discrepancies,
            source_count=len(sample_ids),
            target_count=len(sample_ids) - len(discrepancies),
            discrepancies=discrepancies,
            details={"population": len(ids), "skipped_non_legacy": skipped},
        )

    def _check_orphans(self, conn: sqlite3.Connection, report: VerificationReport) -> None:
        orphaned = []
        for media_type, table in LEGACY_TABLES.items():
            if not Store.has_table(conn, table):
                rows = conn.execute(
                    f"SELECT file_name FROM {MEDIA_TABLE} WHERE type = ?", (media_type.value,)
                )
            else:
                rows = conn.execute(
                    f"""
                    SELECT m.file_name FROM {MEDIA_TABLE} m
                    LEFT JOIN {table} l ON l.file_name = m.file_name
                    WHERE m.type = ? AND l.id IS NULL
                    """,
                    (media_type.value,),
                )
            orphaned.extend(row["file_name"] for row in rows)

        if orphaned:
            report.add_warning(f"{len(orphaned)} orphaned media records found: {', '.join(orphaned[:10])}")

        legacy_values = tuple(t.value for t in MediaType.legacy_types())
        other = conn.execute(
            f"SELECT COUNT(*) FROM {MEDIA_TABLE} WHERE type NOT IN (?, ?)", legacy_values
        ).fetchone()[0]
        if other:
            report.add_warning(f"{other} media records have a type with no legacy table")

    def _check_dimensions(self, conn: sqlite3.Connection, report: VerificationReport) -> None:
        rows = conn.execute(
            f"""
            SELECT file_name FROM {MEDIA_TABLE}
            WHERE type != ? AND (width IS NOT NULL OR height IS NOT NULL)
            """,
            (MediaType.IMAGE.value,),
        ).fetchall()
        if rows:
            names = [row["file_name"] for row in rows]
            report.add_warning(f"Width/height set for {len(names)} non-image records: {', '.join(names[:10])}")

    def _check_marker(self, conn: sqlite3.Connection, report: VerificationReport) -> None:
        row = None
        if Store.has_table(conn, MIGRATION_TABLE):
            row = conn.execute(
                f"SELECT completed_at FROM {MIGRATION_TABLE} WHERE name = ?",
                (self.migration_name,),
            ).fetchone()
        if row is None:
            report.add_warning(f"Migration record not found: {self.migration_name}")
        else:
            logger.info(f"Migration record found, completed at {row['completed_at']}")
