"""X/Twitter mention feed backed by tweepy's v2 client."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import requests
import tweepy

from app.core.errors import FeedRateLimited, UpstreamUnavailable
from app.core.logging import get_logger
from app.schemas.candidate import CandidateMessage
from app.services.ingestion.feed_client import FeedClient

logger = get_logger(__name__)


class TwitterFeedClient(FeedClient):
    """Searches recent posts mentioning the bot.

    The search endpoint returns newest first; ``poll`` reverses each
    batch so callers see delivery order. It always pages to the end of
    the result set: the caller moves its cursor to the newest id, so any
    older page left unread would never be fetched again. Recent search
    only reaches back seven days, which bounds the walk, and a failure
    part way through raises before anything is returned.

    Usernames from the ``author_id`` expansion are remembered, so
    ``resolve_authors`` rarely needs a second request.
    """

    feed_name: str = "twitter"

    def __init__(
        self,
        client: tweepy.Client,
        query: str,
        page_size: int = 100,
    ) -> None:
        self.client = client
        self.query = query
        # API accepts 10..100
        self.page_size = max(10, min(page_size, 100))
        self._known_authors: dict[str, str] = {}

    @classmethod
    def from_bearer_token(
        cls, bearer_token: str, query: str, page_size: int = 100
    ) -> "TwitterFeedClient":
        client = tweepy.Client(bearer_token=bearer_token, wait_on_rate_limit=False)
        return cls(client, query, page_size)

    # ── Public API ───────────────────────────────────────────────────

    def poll(self, since_cursor: Optional[str]) -> List[CandidateMessage]:
        messages: List[CandidateMessage] = []
        next_token: Optional[str] = None
        pages = 0

        while True:
            params: dict[str, Any] = {
                "query": self.query,
                "max_results": self.page_size,
                "expansions": ["author_id", "referenced_tweets.id"],
                "tweet_fields": ["author_id", "referenced_tweets", "created_at"],
                "user_fields": ["username"],
            }
            if since_cursor:
                params["since_id"] = since_cursor
            if next_token:
                params["next_token"] = next_token
            response = self._call(self.client.search_recent_tweets, **params)
            pages += 1
            self._remember_users((response.includes or {}).get("users", []))

            for tweet in response.data or []:
                candidate = self._to_candidate(tweet)
                if candidate is not None:
                    messages.append(candidate)

            next_token = (response.meta or {}).get("next_token")
            if not next_token:
                break

        messages.reverse()
        logger.info(
            "Feed poll since=%s returned %d posts in %d pages",
            since_cursor,
            len(messages),
            pages,
        )
        return messages

    def resolve_authors(self, author_refs: Iterable[str]) -> dict[str, str]:
        refs = {str(ref) for ref in author_refs}
        missing = [ref for ref in refs if ref not in self._known_authors]
        # get_users accepts up to 100 ids per request
        for start in range(0, len(missing), 100):
            response = self._call(
                self.client.get_users,
                ids=missing[start : start + 100],
                user_fields=["username"],
            )
            self._remember_users(response.data or [])
        return {ref: self._known_authors[ref] for ref in refs if ref in self._known_authors}

    # ── Private helpers ──────────────────────────────────────────────

    def _call(self, method, **kwargs: Any):
        try:
            return method(**kwargs)
        except tweepy.TooManyRequests as exc:
            retry_after = _reset_header(exc)
            raise FeedRateLimited(
                "Feed rate limit reached", retry_after=retry_after
            ) from exc
        except (tweepy.TweepyException, requests.RequestException) as exc:
            raise UpstreamUnavailable(f"Feed request failed: {exc}") from exc

    def _remember_users(self, users: Iterable[Any]) -> None:
        for user in users:
            self._known_authors[str(user.id)] = user.username

    @staticmethod
    def _to_candidate(tweet: Any) -> Optional[CandidateMessage]:
        """Map one tweepy ``Tweet`` to a candidate; None if it's unusable."""
        if tweet.id is None or tweet.author_id is None:
            logger.warning("Skipping malformed post without id/author: %r", tweet)
            return None
        kinds = {ref.type for ref in (tweet.referenced_tweets or [])}
        return CandidateMessage(
            external_id=str(tweet.id),
            author_ref=str(tweet.author_id),
            text=tweet.text or "",
            is_retweet="retweeted" in kinds,
            is_quote="quoted" in kinds,
            observed_at=_naive_utc(tweet.created_at),
        )


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _reset_header(exc: tweepy.TooManyRequests) -> Optional[int]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("x-rate-limit-reset")
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None
