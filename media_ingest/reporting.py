import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List

from .models import AlreadyPresent, Failed, Imported, IngestResult, Skipped


@dataclass
class BatchSummary:
    """Tally of per-file outcomes for one ingestion run."""
    imported: int = 0
    already_present: int = 0
    skipped: int = 0
    failed: int = 0
    bytes_imported: int = 0
    failures_by_stage: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: Iterable[IngestResult]) -> "BatchSummary":
        summary = cls()
        for result in results:
            if isinstance(result, Imported):
                summary.imported += 1
                summary.bytes_imported += result.size_bytes
            elif isinstance(result, AlreadyPresent):
                summary.already_present += 1
            elif isinstance(result, Skipped):
                summary.skipped += 1
            elif isinstance(result, Failed):
                summary.failed += 1
                stage = result.stage.value
                summary.failures_by_stage[stage] = summary.failures_by_stage.get(stage, 0) + 1
        return summary

    @property
    def total(self) -> int:
        return self.imported + self.already_present + self.skipped + self.failed

    def summary(self) -> str:
        lines = [
            f"Processed:       {self.total}",
            f"Imported:        {self.imported} ({self.bytes_imported / (1024 * 1024):.1f} MB)",
            f"Already present: {self.already_present}",
            f"Skipped:         {self.skipped}",
            f"Failed:          {self.failed}",
        ]
        for stage, count in sorted(self.failures_by_stage.items()):
            lines.append(f"  - {stage}: {count}")
        return "\n".join(lines)


REPORT_HEADERS = [
    "Source Path",
    "Status",
    "Stage",
    "Content Hash",
    "Thumbnail",
    "Preview",
    "Notes",
]


def result_row(result: IngestResult) -> List[str]:
    path = str(result.path)

    if isinstance(result, Imported):
        artifacts = result.artifacts
        return [path, "Imported", "", result.content_hash.hex,
                str(artifacts.thumbnail_path), str(artifacts.preview_path),
                f"Catalog ID {result.entry_id}" if result.entry_id is not None else ""]

    if isinstance(result, AlreadyPresent):
        if result.existing_id is not None:
            note = f"Duplicate of ID {result.existing_id} ({result.existing_path})"
        elif result.existing_path is not None:
            note = f"Same content as {result.existing_path}"
        else:
            note = ""
        return [path, "Already Present", "", result.content_hash.hex, "", "", note]

    if isinstance(result, Skipped):
        return [path, "Skipped", "", "", "", "", result.reason]

    return [path, "Failed", result.stage.value, "", "", "", result.reason]


def write_csv(results: Iterable[IngestResult], output_csv: Path) -> int:
    """Writes one row per result; returns the number of rows written."""
    count = 0
    with open(output_csv, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(REPORT_HEADERS)
        for result in results:
            writer.writerow(result_row(result))
            count += 1

    logging.info(f"Report written to {output_csv} ({count} rows)")
    return count
