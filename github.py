import requests
import certifi
import os
from typing import Any, Dict, Optional


class PublishError(Exception):
    """Posting the report comment failed."""


def _ca_bundle() -> str:
    return (
        os.getenv("REQUESTS_CA_BUNDLE")
        or os.getenv("SSL_CERT_FILE")
        or certifi.where()
    )


class GitHubClient:
    def __init__(self, token: str, timeout: Optional[int] = None):
        self.timeout = timeout
        self.session = requests.Session()
        self.session.verify = _ca_bundle()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "User-Agent": "pr-profile-bot",
        })
        if token:
            self.session.headers["Authorization"] = f"token {token}"

    def get_pull_request(self, url: str) -> str:
        """GET the pull request resource and return the raw body; decoding is up to the caller."""
        r = self.session.get(url, timeout=self.timeout)
        r.raise_for_status()
        return r.text

    def post_issue_comment(self, comments_url: str, body: str) -> Dict[str, Any]:
        try:
            r = self.session.post(comments_url, json={"body": body}, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise PublishError(f"POST {comments_url} failed: {e}") from e
        try:
            data = r.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
