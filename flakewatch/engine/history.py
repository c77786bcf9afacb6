"""History aggregation: groups raw execution records into per-test timelines.

Pure and side-effect-free. Timelines are rebuilt on every analysis call from
whatever the record store hands over; nothing derived is cached here.
"""

import logging
from collections.abc import Iterable

from flakewatch.engine.errors import InconsistentProjectError
from flakewatch.engine.models import ExecutionRecord, TestTimeline

logger = logging.getLogger(__name__)

DEFAULT_TIMELINE_LIMIT = 50


def build_timelines(
    project_id: str,
    records: Iterable[ExecutionRecord],
    limit: int = DEFAULT_TIMELINE_LIMIT,
) -> list[TestTimeline]:
    """Group records by test name, newest first, capped at ``limit`` per test.

    Args:
        project_id: Project every record must belong to.
        records: Normalized execution records in any order.
        limit: Maximum records kept per timeline (most recent win).

    Returns:
        One TestTimeline per distinct test name, ordered by test name.

    Raises:
        InconsistentProjectError: If any record belongs to a different project.
    """
    if limit < 1:
        msg = f"Timeline limit must be positive, got {limit}"
        raise ValueError(msg)

    groups: dict[str, list[ExecutionRecord]] = {}
    for record in records:
        if record.project_id != project_id:
            msg = (
                f"Execution record for test '{record.test_name}' belongs to project "
                f"'{record.project_id}', expected '{project_id}'"
            )
            raise InconsistentProjectError(msg)
        groups.setdefault(record.test_name, []).append(record)

    timelines: list[TestTimeline] = []
    for test_name in sorted(groups):
        ordered = sorted(groups[test_name], key=lambda r: r.timestamp, reverse=True)[:limit]
        timelines.append(
            TestTimeline(
                project_id=project_id,
                test_name=test_name,
                suite_name=ordered[0].suite_name,
                records=tuple(ordered),
            )
        )

    logger.debug("Built %d timelines for project %s", len(timelines), project_id)
    return timelines
