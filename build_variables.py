"""Variables exported to builds and expanded in status/comment messages.

The mapping from pull-request field to exported variable name is an
explicit table.  Bump :data:`BUILD_VARIABLES_VERSION` whenever a name is
added, renamed or removed so build scripts can detect the change.
"""

from __future__ import annotations

from collections.abc import Mapping
from string import Template

from models import TrackedPullRequest

BUILD_VARIABLES_VERSION = 1

BUILD_VARIABLES: dict[str, str] = {
    "sha1": "PRGATE_SHA1",
    "actual_commit": "PRGATE_ACTUAL_COMMIT",
    "pull_id": "PRGATE_PULL_ID",
    "target_branch": "PRGATE_TARGET_BRANCH",
    "source_branch": "PRGATE_SOURCE_BRANCH",
    "author_login": "PRGATE_PULL_AUTHOR_LOGIN",
    "author_login_mention": "PRGATE_PULL_AUTHOR_LOGIN_MENTION",
    "author_email": "PRGATE_PULL_AUTHOR_EMAIL",
    "title": "PRGATE_PULL_TITLE",
    "title_short": "PRGATE_PULL_TITLE_SHORT",
    "link": "PRGATE_PULL_LINK",
    "description": "PRGATE_PULL_DESCRIPTION",
    "comment_body": "PRGATE_COMMENT_BODY",
    "trigger_author_login": "PRGATE_TRIGGER_AUTHOR_LOGIN",
    "trigger_author_login_mention": "PRGATE_TRIGGER_AUTHOR_LOGIN_MENTION",
    "author_repo_git_url": "PRGATE_AUTHOR_REPO_GIT_URL",
    "repository": "PRGATE_GH_REPOSITORY",
    "mergeable": "PRGATE_MERGEABLE",
    "version": "PRGATE_VARIABLES_VERSION",
}

SHORT_TITLE_LENGTH = 30


def merge_ref(pull_id: int) -> str:
    """Ref of the merge commit GitHub prepares for *pull_id*."""
    return f"origin/pr/{pull_id}/merge"


def abbreviate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[: max(length - 3, 0)] + "..."


def _escape_newlines(text: str) -> str:
    return text.replace("\r", "").replace("\n", "\\n")


def _mention(login: str) -> str:
    return f"@{login}" if login else ""


def pull_fields(
    repo: str, pull: TrackedPullRequest, *, merge: bool
) -> dict[str, str]:
    """Collect every exported field of *pull* keyed by field name."""
    return {
        "sha1": merge_ref(pull.number) if merge else pull.head_sha,
        "actual_commit": pull.head_sha,
        "pull_id": str(pull.number),
        "target_branch": pull.target,
        "source_branch": pull.source,
        "author_login": pull.author,
        "author_login_mention": _mention(pull.author),
        "author_email": pull.author_email,
        "title": pull.title,
        "title_short": abbreviate(pull.title, SHORT_TITLE_LENGTH),
        "link": pull.url,
        "description": _escape_newlines(pull.body),
        "comment_body": _escape_newlines(pull.comment_body),
        "trigger_author_login": pull.trigger_sender,
        "trigger_author_login_mention": _mention(pull.trigger_sender),
        "author_repo_git_url": pull.author_repo_url,
        "repository": repo,
        "mergeable": "true" if merge else "false",
        "version": str(BUILD_VARIABLES_VERSION),
    }


def export_variables(fields: Mapping[str, str]) -> dict[str, str]:
    """Rename *fields* to their exported variable names."""
    return {
        BUILD_VARIABLES[name]: value
        for name, value in fields.items()
        if name in BUILD_VARIABLES
    }


def build_variables(
    repo: str, pull: TrackedPullRequest, *, merge: bool
) -> dict[str, str]:
    """Return the exported variables for a build of *pull*."""
    return export_variables(pull_fields(repo, pull, merge=merge))


def expand_macros(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``$NAME``/``${NAME}`` macros; unknown macros are kept as-is."""
    if not template or "$" not in template:
        return template
    return Template(template).safe_substitute(variables)
