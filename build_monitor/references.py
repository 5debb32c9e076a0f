"""
Repository Reference Parser

Turns the configured project list, e.g.

    "team/api, team/web/develop, org/platform/infra/deployer/main"

into RepositoryReference objects. Segment count decides how a token is read:

    1-2 segments   namespace/project              branch = '' (use default)
    3 segments     namespace/project/branch
    >3 segments    group/sub/.../project/branch   branch is mandatory

For subgroup projects the namespace path keeps the project name appended,
so it can be used directly as the project's full path in API calls.
"""

import logging

from build_monitor.errors import ConfigurationError, WRONG_PROJECTS_FORMAT_MESSAGE
from build_monitor.models import RepositoryReference

logger = logging.getLogger(__name__)


def split_tokens(raw):
    """Split a comma-separated list, trimming whitespace and collapsing duplicates

    Empty tokens are dropped. Order of first occurrence happens to be kept,
    but callers must not rely on it.
    """
    if not raw:
        return []
    return list(dict.fromkeys(token.strip() for token in raw.split(',') if token.strip()))


def parse_reference(token):
    """Parse one slash-separated token into a RepositoryReference

    Raises:
        ConfigurationError: If any segment is empty
    """
    segments = [segment.strip() for segment in token.split('/')]
    if not segments or any(not segment for segment in segments):
        raise ConfigurationError(WRONG_PROJECTS_FORMAT_MESSAGE)

    if len(segments) < 3:
        # No branch given
        return RepositoryReference('/'.join(segments), segments[-1], '')

    if len(segments) == 3:
        branch = segments[-1]
        project_name = segments[-2]
        return RepositoryReference('/'.join(segments[:-1]), project_name, branch)

    # Subgroup project: the branch is always present
    leading = segments[:-1]
    branch = segments[-1]
    project_name = leading.pop()
    namespace_path = '/'.join(leading + [project_name])
    return RepositoryReference(namespace_path, project_name, branch)


def parse_repository_references(raw):
    """Parse the configured project list

    A malformed token does not stop the others from being parsed.

    Args:
        raw: Comma-separated project identifiers (may be None or empty)

    Returns:
        tuple: (list of RepositoryReference, list of ConfigurationError)
    """
    references = []
    errors = []
    for token in split_tokens(raw):
        try:
            references.append(parse_reference(token))
        except ConfigurationError as e:
            logger.error(f"Invalid project reference '{token}': {e}")
            errors.append(e)
    logger.debug(f"Parsed {len(references)} project references ({len(errors)} invalid)")
    return references, errors
