#!/usr/bin/env python3
"""
Pipeline Aggregation Engine for GitLab Build Monitor

AggregationEngine owns all mutable monitor state:
- the Project Directory (tracked projects, keyed by 'namespace/project/branch')
- the published list of BuildRecords and its key -> record map
- the error channel (latest failure message, replaced on each new failure)
- the 'last run' stamp of the current poll cycle

PollScheduler drives the engine: one bootstrap pass (resolve configured
projects, expand groups, first fetch), then a refresh of every tracked
project on a fixed interval.

Concurrency model: everything runs on a single asyncio event loop. Blocking
GitLab calls execute via asyncio.to_thread and resume on the loop thread,
so state is only mutated between await points and needs no locks. Per-project
fetches are fire-and-forget tasks: no ordering across projects, no cap on
in-flight requests, no cancellation (a slow fetch from an older cycle may
land after a newer one; last writer wins).
"""

import asyncio
import logging

from build_monitor.errors import (
    ConfigurationError,
    MonitorError,
    TransientFetchError,
)
from build_monitor.models import ProjectDirectory, ProjectEntry, RepositoryReference
from build_monitor.reconciler import reconcile, sort_pipelines
from build_monitor.references import parse_repository_references
from build_monitor.timeutil import format_last_run, utcnow

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 60

# Engine states
STATE_BOOTSTRAPPING = 'BOOTSTRAPPING'
STATE_POLLING = 'POLLING'


def is_trackable(project, blacklist):
    """Group member filter: CI enabled, not archived, not blacklisted by name"""
    return bool(project.get('jobs_enabled')) \
        and not project.get('archived') \
        and project.get('name') not in blacklist


class AggregationEngine:
    """Process-lifetime owner of the directory, published pipelines and error channel

    Attributes:
        client: GitLabAPIClient (blocking) used for all lookups
        blacklist: Project names excluded from group discovery
        branch_override: Branch used for explicit references without a branch
        directory: ProjectDirectory of tracked projects
        pipelines: Published list of BuildRecord, in display order after each pass
        pipelines_map: dict key -> BuildRecord
        error: None or {'message': str}
        last_run: Human-readable start time of the latest poll cycle
        state: STATE_BOOTSTRAPPING or STATE_POLLING
    """

    def __init__(self, client, blacklist=None, branch_override=None, clock=utcnow):
        self.client = client
        self.blacklist = set(blacklist or [])
        self.branch_override = branch_override or None
        self.clock = clock
        self.directory = ProjectDirectory()
        self.pipelines = []
        self.pipelines_map = {}
        self.error = None
        self.last_run = format_last_run()
        self.state = STATE_BOOTSTRAPPING
        self._observers = []
        self._tasks = set()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def add_observer(self, callback):
        """Register callback(snapshot), called after every state change"""
        self._observers.append(callback)

    def snapshot(self):
        """Immutable view of the published state"""
        return {
            'pipelines': [record.to_dict() for record in self.pipelines],
            'last_run': self.last_run,
            'error': dict(self.error) if self.error else None,
            'state': self.state,
            'tracked_projects': len(self.directory),
        }

    def publish(self):
        if not self._observers:
            return
        snapshot = self.snapshot()
        for callback in self._observers:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Observer {callback!r} failed: {e}")

    # ------------------------------------------------------------------
    # Error channel
    # ------------------------------------------------------------------

    def report_error(self, error, context=''):
        """Replace the current error with error's user-facing message"""
        if isinstance(error, MonitorError):
            message = error.message
        else:
            message = TransientFetchError().message
            logger.error(f"Unexpected error {context}: {type(error).__name__}: {error}")
        logger.warning(f"{context}: {message}" if context else message)
        self.error = {'message': message}
        self.publish()

    def clear_error(self):
        self.error = None

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def spawn(self, coro):
        """Start coro as a fire-and-forget task on the running loop"""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def in_flight(self):
        return len(self._tasks)

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def resolve_project(self, reference):
        """Look up an explicitly configured project and start tracking it

        An empty branch is back-filled with the branch override, or else the
        project's default branch. A newly tracked project is fetched at once.

        Returns:
            ProjectEntry or None if the lookup failed
        """
        try:
            remote = await self._call(self.client.get_project, reference.namespace_path)
            if not isinstance(remote, dict):
                raise TransientFetchError()
        except Exception as e:
            self.report_error(e, f"project {reference.namespace_path}")
            return None

        reference.with_default_branch(self.branch_override or remote.get('default_branch'))
        entry = ProjectEntry(reference, remote)
        if self.directory.add_if_absent(entry):
            await self.fetch_build(entry)
        return entry

    async def resolve_group(self, group_id):
        """Expand a group into trackable member projects

        Every newly tracked member triggers one build fetch; fetches for the
        members run concurrently.

        Returns:
            list: ProjectEntry objects newly added to the directory
        """
        try:
            group = await self._call(self.client.get_group, group_id)
        except Exception as e:
            self.report_error(e, f"group {group_id}")
            return []

        members = (group.get('projects') or []) if isinstance(group, dict) else []
        added = []
        skipped = 0
        for project in members:
            if not is_trackable(project, self.blacklist):
                skipped += 1
                continue
            reference = RepositoryReference(
                project.get('path_with_namespace'),
                project.get('name'),
                project.get('default_branch') or '',
            )
            entry = ProjectEntry(reference, project)
            if self.directory.add_if_absent(entry):
                added.append(entry)

        logger.info(f"Group {group_id}: {len(members)} projects, {len(added)} newly tracked, {skipped} filtered out")
        if added:
            await asyncio.gather(*(self.spawn(self.fetch_build(entry)) for entry in added))
        return added

    # ------------------------------------------------------------------
    # Build fetch pipeline
    # ------------------------------------------------------------------

    async def fetch_build(self, entry, poll_id=None):
        """Fetch the newest pipeline of entry's branch and reconcile it

        Stage 1 lists pipelines for the branch; stages 2 (commit detail) and
        3 (pipeline detail) both depend only on stage 1 and run concurrently.
        Any failure is reported on the error channel and ends this fetch only.

        Returns:
            BuildRecord or None if nothing was reconciled
        """
        context = f"[poll_id={poll_id}] {entry.key}" if poll_id else entry.key
        project_id = entry.project_id

        try:
            pipelines = await self._call(self.client.get_pipelines, project_id, entry.reference.branch)
            if not isinstance(pipelines, list):
                raise TransientFetchError()
        except Exception as e:
            self.report_error(e, context)
            return None

        if not pipelines:
            logger.debug(f"{context}: no pipelines yet")
            return None

        newest = pipelines[0]
        commit, pipeline = await asyncio.gather(
            self._call(self.client.get_commit, project_id, newest.get('sha')),
            self._call(self.client.get_pipeline, project_id, newest.get('id')),
            return_exceptions=True,
        )
        for result in (commit, pipeline):
            if isinstance(result, Exception):
                self.report_error(result, context)
                return None
            if not isinstance(result, dict):
                self.report_error(TransientFetchError(), context)
                return None

        record = reconcile(self.pipelines, self.pipelines_map, entry, commit, pipeline, self.clock())
        self.publish()
        return record

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _finish_pass(self, tasks, label):
        """Wait for a pass's fetches, then re-sort the published list"""
        if tasks:
            await asyncio.wait(tasks)
        sort_pipelines(self.pipelines)
        logger.info(f"{label} complete: {len(self.pipelines)} pipelines published, {len(self.directory)} projects tracked")
        self.publish()

    def bootstrap(self, references, groups, parse_errors=()):
        """Issue initial discovery and switch to polling without waiting for it

        Must be called from within the running event loop.

        Returns:
            asyncio.Task: Completes once every discovery fetch has finished
        """
        for error in parse_errors:
            self.report_error(error, "configuration")

        logger.info(f"Bootstrapping: {len(references)} projects, {len(groups)} groups")
        tasks = [self.spawn(self.resolve_project(reference)) for reference in references]
        tasks.extend(self.spawn(self.resolve_group(group_id)) for group_id in groups)

        self.state = STATE_POLLING
        self.publish()
        return self.spawn(self._finish_pass(tasks, "Bootstrap"))

    def start_cycle(self, poll_id):
        """Begin a poll cycle: refresh every tracked project

        Groups are not re-enumerated. Earlier cycles are not awaited.

        Returns:
            asyncio.Task: Completes once this cycle's fetches have finished
        """
        self.clear_error()
        self.last_run = format_last_run()
        entries = self.directory.entries()
        logger.info(f"[poll_id={poll_id}] Starting poll cycle for {len(entries)} projects ({self.in_flight} tasks still in flight)")
        tasks = [self.spawn(self.fetch_build(entry, poll_id)) for entry in entries]
        self.publish()
        return self.spawn(self._finish_pass(tasks, f"[poll_id={poll_id}] Poll cycle"))


class PollScheduler:
    """Drives an AggregationEngine: bootstrap once, then poll forever

    Attributes:
        engine: AggregationEngine being driven
        projects: Raw comma-separated project list
        groups: List of group IDs/paths
        poll_interval: Seconds between poll cycles
    """

    def __init__(self, engine, projects, groups=None, poll_interval_sec=DEFAULT_POLL_INTERVAL_SEC):
        self.engine = engine
        self.projects = projects or ''
        self.groups = list(groups or [])
        self.poll_interval = poll_interval_sec
        self.poll_counter = 0
        self.references = None
        self.parse_errors = []
        self._loop = None
        self._stop_event = None

    def prepare(self):
        """Parse configured references; fail fast if nothing can be tracked

        Raises:
            ConfigurationError: If neither a valid project nor a group is configured
        """
        references, errors = parse_repository_references(self.projects)
        if not references and not self.groups:
            if errors:
                raise errors[-1]
            raise ConfigurationError("You need to set projects or groups")
        self.references = references
        self.parse_errors = errors
        return references

    def _generate_poll_id(self):
        """Generate a unique poll cycle identifier"""
        self.poll_counter += 1
        return f"poll-{self.poll_counter}"

    async def run(self):
        """Bootstrap, then start a poll cycle every poll_interval seconds until stopped"""
        if self.references is None:
            self.prepare()
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        self.engine.bootstrap(self.references, self.groups, self.parse_errors)

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                self.engine.start_cycle(self._generate_poll_id())
        logger.info("Poll scheduler stopped")

    def stop(self):
        """Stop the scheduler; safe to call from any thread"""
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)
