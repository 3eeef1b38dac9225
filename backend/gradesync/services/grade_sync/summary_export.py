"""
CSV export of per-record retry and failure summaries.
"""

import csv
import io
from typing import Dict, List

from gradesync.schemas.grade_sync import FailureRecord, RetryRecord

SUMMARY_FILENAME = "canvas_upload_error_summary.csv"
SUMMARY_NOTE = (
    'Unless marked "UPDATE FAILED", the students score was successfully updated '
    'but took multiple attempts.'
)
SUMMARY_HEADERS = ["User ID", "Average Score", "Attempts", "Status", "Error"]


def build_summary_csv(retries: List[RetryRecord], failures: List[FailureRecord]) -> str:
    """One row per student that was retried or failed, failed rows flagged."""
    failed_by_id: Dict[str, FailureRecord] = {failure.user_id: failure for failure in failures}
    attempts_by_id: Dict[str, int] = {retry.user_id: retry.attempts for retry in retries}

    user_ids = list(attempts_by_id)
    user_ids.extend(user_id for user_id in failed_by_id if user_id not in attempts_by_id)

    buffer = io.StringIO()
    buffer.write(SUMMARY_NOTE + "\n")
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(SUMMARY_HEADERS)

    for user_id in user_ids:
        failed = failed_by_id.get(user_id)
        writer.writerow([
            user_id,
            failed.average if failed else "",
            attempts_by_id.get(user_id, ""),
            "UPDATE FAILED" if failed else "",
            failed.error if failed else "",
        ])

    return buffer.getvalue()
