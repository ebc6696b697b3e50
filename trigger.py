"""
Turn an issue_comment webhook into a PullRequestTrigger and decide whether it
may start a profiling run.

The event itself only carries the pull request's API URL, so the head commit
and clone URL come from one extra GET of that URL.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Sequence

import requests

from config import ServerConfig

log = logging.getLogger("trigger")

TRIGGER_COMMAND = "profile"


class TriggerError(Exception):
    """The event cannot produce a trigger; the run stops without a comment."""


class MalformedEvent(TriggerError):
    pass


class UpstreamFetchError(TriggerError):
    pass


class UpstreamParseError(TriggerError):
    pass


@dataclass(frozen=True)
class PullRequestTrigger:
    report_url: str
    clone_url: str
    head_commit: str
    command_text: str
    commenter_id: str


def _string_at(doc: Any, path: Sequence[str], what: str) -> str:
    node = doc
    for key in path:
        if not isinstance(node, dict) or key not in node:
            raise MalformedEvent(f"couldn't find {what} ({'.'.join(path)})")
        node = node[key]
    if not isinstance(node, str) or not node:
        raise MalformedEvent(f"{what} ({'.'.join(path)}) is not a non-empty string")
    return node


def extract_trigger(event: Dict[str, Any], github) -> PullRequestTrigger:
    """
    Build a trigger from the webhook body.

    Raises MalformedEvent before any network call if the comment fields are
    missing; UpstreamFetchError / UpstreamParseError if the pull request
    lookup fails; MalformedEvent if the pull request lacks head information.
    """
    pr_url = _string_at(event, ("issue", "pull_request", "url"), "PR url")
    comments_url = _string_at(event, ("issue", "comments_url"), "comments url")
    comment = _string_at(event, ("comment", "body"), "comment body")
    commenter = _string_at(event, ("comment", "user", "login"), "commenter")

    try:
        raw = github.get_pull_request(pr_url)
    except requests.RequestException as e:
        raise UpstreamFetchError(f"couldn't download PR information: {e}") from e

    try:
        pull = json.loads(raw)
    except ValueError as e:
        raise UpstreamParseError(f"couldn't parse PR information: {e}") from e

    head_sha = _string_at(pull, ("head", "sha"), "PR head sha")
    clone_url = _string_at(pull, ("head", "repo", "clone_url"), "PR head clone url")

    return PullRequestTrigger(
        report_url=comments_url,
        clone_url=clone_url,
        head_commit=head_sha,
        command_text=comment,
        commenter_id=commenter,
    )


def is_authorized(trigger: PullRequestTrigger, config: ServerConfig) -> bool:
    # Rejections only go to the operator log, never back to the pull request.
    if trigger.command_text != TRIGGER_COMMAND:
        log.info("ignoring comment that is not a trigger: %r", trigger.command_text[:80])
        return False
    if trigger.commenter_id.lower() not in config.allowed_commenters:
        log.info("ignoring trigger from %s: not in allow-list (%d entries)",
                 trigger.commenter_id, len(config.allowed_commenters))
        return False
    return True
