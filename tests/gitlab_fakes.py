"""
Shared test doubles: an in-memory stand-in for GitLabAPIClient
"""

from datetime import datetime, timedelta, timezone

from build_monitor.errors import TransientFetchError

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def iso(moment):
    return moment.strftime('%Y-%m-%dT%H:%M:%S.000Z')


def hours_ago(hours):
    return iso(NOW - timedelta(hours=hours))


def make_project(project_id, path, default_branch='main', jobs_enabled=True, archived=False):
    return {
        'id': project_id,
        'name': path.split('/')[-1],
        'path_with_namespace': path,
        'default_branch': default_branch,
        'jobs_enabled': jobs_enabled,
        'archived': archived,
    }


class FakeGitLabClient:
    """Serves canned GitLab responses; raises a configured error per call"""

    def __init__(self):
        self.projects = {}
        self.groups = {}
        self.pipelines = {}
        self.commits = {}
        self.pipeline_details = {}
        self.failures = {}
        self.calls = []

    def add_project(self, project):
        self.projects[project['path_with_namespace']] = project
        return project

    def add_build(self, project_id, ref, pipeline_id, sha, status='success', started_at=None,
                  author='Ada Lovelace', title='Fix build'):
        self.pipelines.setdefault((project_id, ref), []).insert(0, {'id': pipeline_id, 'sha': sha, 'ref': ref})
        self.commits[(project_id, sha)] = {'id': sha, 'author_name': author, 'title': title}
        self.pipeline_details[(project_id, pipeline_id)] = {
            'id': pipeline_id,
            'status': status,
            'started_at': started_at or hours_ago(1),
            'web_url': f'https://gitlab.example.com/p/{project_id}/-/pipelines/{pipeline_id}',
        }

    def fail(self, method, *args, error=None):
        self.failures[(method,) + args] = error or TransientFetchError()

    def _lookup(self, method, table, key, *args):
        self.calls.append((method,) + args)
        failure = self.failures.get((method,) + args)
        if failure is not None:
            raise failure
        if key not in table:
            raise TransientFetchError(status_code=404)
        return table[key]

    def get_project(self, path):
        return self._lookup('get_project', self.projects, path, path)

    def get_group(self, group_id):
        return self._lookup('get_group', self.groups, group_id, group_id)

    def get_pipelines(self, project_id, ref):
        self.calls.append(('get_pipelines', project_id, ref))
        failure = self.failures.get(('get_pipelines', project_id, ref))
        if failure is not None:
            raise failure
        return list(self.pipelines.get((project_id, ref), []))

    def get_commit(self, project_id, sha):
        return self._lookup('get_commit', self.commits, (project_id, sha), project_id, sha)

    def get_pipeline(self, project_id, pipeline_id):
        return self._lookup('get_pipeline', self.pipeline_details, (project_id, pipeline_id), project_id, pipeline_id)
