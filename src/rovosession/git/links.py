"""Pull request links from ``git push`` output.

Git hosts print a "create pull request" URL when a new branch is pushed::

    remote: Create a pull request for 'my-branch' on GitHub by visiting:
    remote:      https://github.com/my-org/my-repo/pull/new/my-branch

When the host prints nothing, the link is built from the ``To <remote>``
line and the pushed branch using a per-host template.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass

from rovosession.config.schema import LinksConfig

# https://<host>/<owner>/<repo>/pull/new/<branch>
# https://<host>/<owner>/<repo>/pull-requests/new?source=<branch>
_PR_LINK_RE = re.compile(
    r"https://[^\s/]+/[^\s/]+/[^\s/]+/(?:pull/new/\S+|pull-requests/new\?source=\S+)"
)

# To github.com:owner/repo.git  /  To git@github.com:owner/repo.git
_SCP_REMOTE_RE = re.compile(
    r"^\s*To\s+(?:[\w.+-]+@)?(?P<host>[\w.-]+):(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+?)(?:\.git)?/?\s*$",
    re.MULTILINE,
)

# To https://github.com/owner/repo.git
_URL_REMOTE_RE = re.compile(
    r"^\s*To\s+https?://(?:[^@/\s]+@)?(?P<host>[\w.-]+)(?::\d+)?/(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+?)(?:\.git)?/?\s*$",
    re.MULTILINE,
)

#    4bc73e86..71548ad9  my-branch -> my-branch
# * [new branch]      my-branch -> my-branch
_REF_UPDATE_RE = re.compile(
    r"^\s*(?:[+*!=-]\s+)?(?:\[[^\]]+\]|\S+)\s+(?P<local>[^\s:]+)\s+->\s+(?P<remote>\S+)",
    re.MULTILINE,
)


@dataclass(frozen=True, slots=True)
class LinkTemplate:
    """How to build a pull request URL for hosts matching ``host_pattern`` (a glob)."""

    host_pattern: str
    url_template: str
    name: str = ""

    def matches(self, host: str) -> bool:
        return fnmatch.fnmatchcase(host.lower(), self.host_pattern.lower())

    def render(self, host: str, owner: str, repo: str, branch: str) -> str:
        return self.url_template.format(host=host, owner=owner, repo=repo, branch=branch)


DEFAULT_TEMPLATES: tuple[LinkTemplate, ...] = (
    LinkTemplate("github.com", "https://github.com/{owner}/{repo}/pull/new/{branch}", "GitHub"),
    LinkTemplate(
        "bitbucket.org",
        "https://bitbucket.org/{owner}/{repo}/pull-requests/new?source={branch}",
        "Bitbucket",
    ),
    LinkTemplate(
        "*.bb-inf.net",
        "https://{host}/{owner}/{repo}/pull-requests/new?source={branch}",
        "Bitbucket (staging)",
    ),
)


@dataclass(frozen=True, slots=True)
class PRLinkCandidate:
    host: str
    owner: str
    repo: str
    branch: str
    url: str


class GitOutputLinkResolver:
    """Finds or builds pull request links. Pure functions over text.

    Templates are checked in order; the first whose pattern matches the
    remote host wins.
    """

    def __init__(self, templates: tuple[LinkTemplate, ...] | list[LinkTemplate] = DEFAULT_TEMPLATES) -> None:
        self.templates = tuple(templates)

    @classmethod
    def from_config(cls, config: LinksConfig | None) -> GitOutputLinkResolver:
        """Built-in templates followed by any configured in ``links.hosts``."""
        extra = [
            LinkTemplate(host.pattern, host.template, host.name)
            for host in (config.hosts if config else [])
        ]
        return cls((*DEFAULT_TEMPLATES, *extra))

    def find_link(self, output: str) -> str | None:
        """Return the first pull request URL printed in output, verbatim."""
        if not output:
            return None
        match = _PR_LINK_RE.search(output)
        return match.group(0) if match else None

    def resolve_push_output(self, output: str, branch: str) -> PRLinkCandidate | None:
        """Build a candidate from the ``To <remote>`` line of push output."""
        if not output or not branch:
            return None
        match = _SCP_REMOTE_RE.search(output) or _URL_REMOTE_RE.search(output)
        if match is None:
            return None

        host, owner, repo = match.group("host"), match.group("owner"), match.group("repo")
        for template in self.templates:
            if template.matches(host):
                url = template.render(host=host, owner=owner, repo=repo, branch=branch)
                return PRLinkCandidate(host=host, owner=owner, repo=repo, branch=branch, url=url)
        return None

    def build_link_from_push_output(self, output: str, branch: str) -> str | None:
        candidate = self.resolve_push_output(output, branch)
        return candidate.url if candidate else None

    def pushed_branch(self, output: str) -> str | None:
        """Remote branch name from the ref update line (``local -> remote``)."""
        if not output:
            return None
        match = _REF_UPDATE_RE.search(output)
        return match.group("remote") if match else None


_default_resolver = GitOutputLinkResolver()


def find_link(output: str) -> str | None:
    """Module-level find_link using the built-in templates."""
    return _default_resolver.find_link(output)


def resolve_push_output(output: str, branch: str) -> PRLinkCandidate | None:
    return _default_resolver.resolve_push_output(output, branch)


def build_link_from_push_output(output: str, branch: str) -> str | None:
    return _default_resolver.build_link_from_push_output(output, branch)


def pushed_branch(output: str) -> str | None:
    return _default_resolver.pushed_branch(output)
