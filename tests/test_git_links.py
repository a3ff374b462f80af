"""Tests for pull request link detection in git push output."""

from __future__ import annotations

import pytest

from rovosession.config import LinkHostConfig, LinksConfig
from rovosession.git import (
    GitOutputLinkResolver,
    LinkTemplate,
    build_link_from_push_output,
    find_link,
    pushed_branch,
    resolve_push_output,
)

REF_LINE = "   4bc73e86..71548ad9  FLOW-729-boysenberry-pr-create-messaging -> FLOW-729-boysenberry-pr-create-messaging\n   "


def push_output(remote: str) -> str:
    return f"remote:      some demo text\nTo {remote}\n{REF_LINE}"


# =============================================================================
# find_link
# =============================================================================


class TestFindLink:
    """Tests for links printed by the git host."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/my-org/my-repo/pull/new/my-branch",
            "https://bitbucket.org/my-org/my-repo/pull-requests/new?source=my-branch",
            "https://integration.bb-inf.net/my-org/my-repo/pull-requests/new?source=my-branch",
            "https://example.com/my-org/my-repo/pull/new/my-branch",
        ],
        ids=["github", "bitbucket", "bitbucket-staging", "generic"],
    )
    def test_link_in_push_output(self, url: str) -> None:
        output = f"\n                remote:      {url}\n                remote:\n"
        assert find_link(output) == url

    def test_first_link_wins(self) -> None:
        output = (
            "remote: https://github.com/a/b/pull/new/one\n"
            "remote: https://github.com/a/b/pull/new/two\n"
        )
        assert find_link(output) == "https://github.com/a/b/pull/new/one"

    def test_empty_output(self) -> None:
        assert find_link("") is None

    def test_odd_links_ignored(self) -> None:
        output = "\n                remote:      https://example.com/my-org/my-repo/not-a-pr-link\n"
        assert find_link(output) is None


# =============================================================================
# build_link_from_push_output
# =============================================================================


class TestBuildLink:
    """Tests for links built from the remote line."""

    @pytest.mark.parametrize(
        ("remote", "expected"),
        [
            ("github.com:atlassian/atlascode.git", "https://github.com/atlassian/atlascode/pull/new/my-branch"),
            (
                "bitbucket.org:atlassian/atlascode.git",
                "https://bitbucket.org/atlassian/atlascode/pull-requests/new?source=my-branch",
            ),
            (
                "integration.bb-inf.net:atlassian/atlascode.git",
                "https://integration.bb-inf.net/atlassian/atlascode/pull-requests/new?source=my-branch",
            ),
            ("git@github.com:atlassian/atlascode.git", "https://github.com/atlassian/atlascode/pull/new/my-branch"),
            ("https://github.com/atlassian/atlascode.git", "https://github.com/atlassian/atlascode/pull/new/my-branch"),
            ("github.com:atlassian/atlascode", "https://github.com/atlassian/atlascode/pull/new/my-branch"),
        ],
        ids=["github", "bitbucket", "bitbucket-staging", "scp-user", "https-remote", "no-dot-git"],
    )
    def test_known_hosts(self, remote: str, expected: str) -> None:
        assert build_link_from_push_output(push_output(remote), "my-branch") == expected

    def test_unknown_host(self) -> None:
        output = push_output("unknown-host.com:atlassian/atlascode.git")
        assert build_link_from_push_output(output, "my-branch") is None

    def test_empty_output(self) -> None:
        assert build_link_from_push_output("", "my-branch") is None
        assert build_link_from_push_output("", "x") is None

    def test_output_without_remote(self) -> None:
        output = f"remote:      some demo text\n{REF_LINE}"
        assert build_link_from_push_output(output, "my-branch") is None

    def test_candidate_fields(self) -> None:
        candidate = resolve_push_output(push_output("bitbucket.org:team/service.git"), "feature/x")
        assert candidate is not None
        assert (candidate.host, candidate.owner, candidate.repo, candidate.branch) == (
            "bitbucket.org",
            "team",
            "service",
            "feature/x",
        )

    @pytest.mark.parametrize("remote", ["github.com:org/repo.git", "bitbucket.org:org/repo.git"])
    def test_built_link_is_found_again(self, remote: str) -> None:
        """A built link has the shape find_link recognises."""
        url = build_link_from_push_output(push_output(remote), "my-branch")
        assert find_link(f"remote: {url}\n") == url


class TestPushedBranch:
    def test_ref_update_line(self) -> None:
        assert pushed_branch(push_output("github.com:a/b.git")) == "FLOW-729-boysenberry-pr-create-messaging"

    def test_new_branch_line(self) -> None:
        output = "To github.com:a/b.git\n * [new branch]      my-branch -> my-branch\n"
        assert pushed_branch(output) == "my-branch"

    def test_no_ref_line(self) -> None:
        assert pushed_branch("Everything up-to-date\n") is None
        assert pushed_branch("") is None


class TestResolverTemplates:
    """Tests for configured host templates."""

    def test_config_templates_appended(self) -> None:
        resolver = GitOutputLinkResolver.from_config(
            LinksConfig(
                hosts=[
                    LinkHostConfig(
                        pattern="git.example.com",
                        template="https://{host}/{owner}/{repo}/compare/{branch}",
                        name="Example",
                    )
                ]
            )
        )
        output = push_output("git@git.example.com:org/repo.git")
        assert resolver.build_link_from_push_output(output, "dev") == "https://git.example.com/org/repo/compare/dev"
        assert resolver.templates[0].name == "GitHub"

    def test_template_glob_is_case_insensitive(self) -> None:
        template = LinkTemplate("*.bb-inf.net", "https://{host}/{owner}")
        assert template.matches("Staging.BB-INF.net")
        assert not template.matches("bb-inf.net.evil.com")

    def test_empty_branch(self) -> None:
        resolver = GitOutputLinkResolver()
        assert resolver.resolve_push_output(push_output("github.com:a/b.git"), "") is None
