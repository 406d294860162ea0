from __future__ import annotations

import zipfile
from dataclasses import dataclass, field
from pathlib import Path

from digital_people.jobs.models import TaskState, TaskStatus
from digital_people.utils.files import ensure_dir
from digital_people.utils.log import logger


@dataclass(slots=True)
class ArchiveReport:
    path: Path
    added: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


def archive_results(statuses: list[TaskStatus], dest: Path) -> ArchiveReport:
    """
    Zip the result videos of completed tasks into `dest`.

    Tasks that are not completed, or whose result file is gone, are skipped
    and reported rather than failing the archive.
    """
    report = ArchiveReport(path=Path(dest))
    ensure_dir(report.path.parent)
    with zipfile.ZipFile(report.path, "w", compression=zipfile.ZIP_STORED) as zf:
        for st in statuses:
            if st.status is not TaskState.COMPLETED:
                report.skipped[st.task_id] = f"status={st.status.value}"
                continue
            src = Path(st.result_path) if st.result_path else None
            if src is None or not src.is_file():
                report.skipped[st.task_id] = "result file missing"
                continue
            arcname = st.result_video or src.name
            zf.write(src, arcname=arcname)
            report.added.append(arcname)
    logger.info("archive_written", path=str(report.path), added=len(report.added), skipped=len(report.skipped))
    return report
