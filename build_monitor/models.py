"""
Data model for the aggregation engine

- RepositoryReference: a parsed project identifier (namespace path, name, branch)
- ProjectEntry: a reference paired with the GitLab project it resolved to
- ProjectDirectory: registry of ProjectEntry objects keyed by reference key
- BuildRecord: latest pipeline state for one tracked project+branch
"""

import logging

logger = logging.getLogger(__name__)


def make_key(namespace_path, branch):
    """Stable identity of a tracked project+branch pair"""
    return f"{namespace_path}/{branch}"


class RepositoryReference:
    """Structured project identifier

    Attributes:
        namespace_path: Full project path used to address the GitLab API
        project_name: Short project name (display name)
        branch: Tracked branch, '' until back-filled with the default branch
        key: namespace_path + '/' + branch
    """

    def __init__(self, namespace_path, project_name, branch=''):
        self.namespace_path = namespace_path
        self.project_name = project_name
        self.branch = branch
        self.key = make_key(namespace_path, branch)

    def with_default_branch(self, default_branch):
        """Back-fill an empty branch; the key follows the branch"""
        if not self.branch and default_branch:
            self.branch = default_branch
            self.key = make_key(self.namespace_path, self.branch)
        return self

    def __eq__(self, other):
        if not isinstance(other, RepositoryReference):
            return NotImplemented
        return (self.namespace_path, self.project_name, self.branch) == \
            (other.namespace_path, other.project_name, other.branch)

    def __hash__(self):
        return hash((self.namespace_path, self.project_name, self.branch))

    def __repr__(self):
        return (f"RepositoryReference(namespace_path={self.namespace_path!r}, "
                f"project_name={self.project_name!r}, branch={self.branch!r})")


class ProjectEntry:
    """A RepositoryReference resolved against GitLab

    remote is the GitLab project dict; at least 'id', 'default_branch',
    'path_with_namespace' and 'name' are used.
    """

    def __init__(self, reference, remote):
        self.reference = reference
        self.remote = remote

    @property
    def key(self):
        return self.reference.key

    @property
    def project_id(self):
        return self.remote.get('id')

    def __repr__(self):
        return f"ProjectEntry(key={self.key!r}, project_id={self.project_id!r})"


class ProjectDirectory:
    """In-memory registry of discovered projects

    Entries are never removed. All access happens on the engine's event
    loop thread, so no locking is needed.
    """

    def __init__(self):
        self._entries = {}

    def add_if_absent(self, entry):
        """Register entry unless its key is already known

        Returns:
            bool: True if the entry was added
        """
        if entry.key in self._entries:
            logger.debug(f"Project {entry.key} already tracked, skipping")
            return False
        self._entries[entry.key] = entry
        logger.info(f"Tracking project {entry.key} (id={entry.project_id})")
        return True

    def get(self, key):
        return self._entries.get(key)

    def entries(self):
        """Snapshot list of all entries"""
        return list(self._entries.values())

    def __contains__(self, key):
        return key in self._entries

    def __len__(self):
        return len(self._entries)


class BuildRecord:
    """Latest pipeline state for one tracked project+branch

    A record is created once per key and then updated in place on every
    later successful fetch, so references held elsewhere stay valid.
    """

    def __init__(self, project, project_path, branch, pipeline_id=None, status=None,
                 started_at=None, started_from_now='', author=None, title=None, sha=None,
                 web_url=None):
        self.project = project
        self.project_path = project_path
        self.branch = branch
        self.pipeline_id = pipeline_id
        self.status = status
        self.started_at = started_at
        self.started_from_now = started_from_now
        self.author = author
        self.title = title
        self.sha = sha
        self.web_url = web_url

    def to_dict(self):
        """JSON-ready rendering of the record"""
        return {
            'project': self.project,
            'project_path': self.project_path,
            'branch': self.branch,
            'id': self.pipeline_id,
            'status': self.status,
            'started_at': self.started_at,
            'started_from_now': self.started_from_now,
            'author': self.author,
            'title': self.title,
            'sha1': self.sha,
            'web_url': self.web_url,
        }

    def __repr__(self):
        return (f"BuildRecord(project={self.project!r}, branch={self.branch!r}, "
                f"pipeline_id={self.pipeline_id!r}, status={self.status!r})")
