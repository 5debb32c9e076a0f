"""
Status Reconciler

Merges a fetched (commit, pipeline) pair into the published list of
BuildRecords and keeps that list in display order.

Display order:
    1. status priority (failed, running, pending, canceled, rotten, other)
    2. project display name, ascending
Equal keys keep their previous relative order (stable sort).
"""

import logging
from datetime import timedelta

from build_monitor.models import BuildRecord
from build_monitor.timeutil import parse_timestamp, time_ago, utcnow

logger = logging.getLogger(__name__)

# No pipeline started in this long => the status is shown as stale
ROTTEN_THRESHOLD = timedelta(days=2)
ROTTEN_STATUS = 'rotten'

STATUS_PRIORITIES = {
    'failed': 1,
    'running': 2,
    'pending': 3,
    'canceled': 4,
    ROTTEN_STATUS: 5,
}
DEFAULT_STATUS_PRIORITY = 6


def status_priority(status):
    """Sort rank of a status; unknown statuses rank last"""
    return STATUS_PRIORITIES.get(status, DEFAULT_STATUS_PRIORITY)


def effective_status(pipeline, now=None):
    """Remote status, overridden with 'rotten' for pipelines started ≥ 2 days ago

    A pipeline without started_at (not started yet) is never rotten.
    """
    now = now or utcnow()
    started_at = parse_timestamp(pipeline.get('started_at'))
    if started_at is not None and now - started_at >= ROTTEN_THRESHOLD:
        return ROTTEN_STATUS
    return pipeline.get('status')


def reconcile(pipelines, pipelines_map, entry, commit, pipeline, now=None):
    """Insert or update the BuildRecord for entry

    An existing record is mutated in place; a new record is appended to
    pipelines and registered in pipelines_map under the entry key.

    Args:
        pipelines: Published list of BuildRecord (mutated)
        pipelines_map: dict key -> BuildRecord (mutated)
        entry: ProjectEntry the fetch was made for
        commit: GitLab commit dict
        pipeline: GitLab pipeline detail dict
        now: Reference time (defaults to the current UTC time)

    Returns:
        BuildRecord: The inserted or updated record
    """
    now = now or utcnow()
    started_at = pipeline.get('started_at')
    status = effective_status(pipeline, now)
    started_from_now = time_ago(parse_timestamp(started_at), now)

    record = pipelines_map.get(entry.key)
    if record is not None:
        record.pipeline_id = pipeline.get('id')
        record.status = status
        record.started_from_now = started_from_now
        record.started_at = started_at
        record.author = commit.get('author_name')
        record.title = commit.get('title')
        record.sha = commit.get('id')
        record.web_url = pipeline.get('web_url')
        logger.debug(f"Updated build record {entry.key}: pipeline {record.pipeline_id} {status}")
        return record

    reference = entry.reference
    record = BuildRecord(
        project=reference.project_name,
        project_path=reference.namespace_path,
        branch=reference.branch,
        pipeline_id=pipeline.get('id'),
        status=status,
        started_at=started_at,
        started_from_now=started_from_now,
        author=commit.get('author_name'),
        title=commit.get('title'),
        sha=commit.get('id'),
        web_url=pipeline.get('web_url'),
    )
    pipelines.append(record)
    pipelines_map[entry.key] = record
    logger.info(f"New build record {entry.key}: pipeline {record.pipeline_id} {status}")
    return record


def sort_pipelines(pipelines):
    """Sort the published list in place by status priority, then project name"""
    pipelines.sort(key=lambda record: (status_priority(record.status), record.project or ''))
    return pipelines
