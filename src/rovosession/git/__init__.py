"""Pull request link detection for git push output."""

from rovosession.git.links import (
    DEFAULT_TEMPLATES,
    GitOutputLinkResolver,
    LinkTemplate,
    PRLinkCandidate,
    build_link_from_push_output,
    find_link,
    pushed_branch,
    resolve_push_output,
)

__all__ = [
    "DEFAULT_TEMPLATES",
    "GitOutputLinkResolver",
    "LinkTemplate",
    "PRLinkCandidate",
    "build_link_from_push_output",
    "find_link",
    "pushed_branch",
    "resolve_push_output",
]
